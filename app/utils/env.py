"""Lightweight .env loader for local configuration."""

from __future__ import annotations

import os
from pathlib import Path


def default_env_path() -> Path:
  """Return the .env path at the project root (or SLABFLOW_ENV_FILE when set)."""

  override = os.getenv("SLABFLOW_ENV_FILE")
  if override:
    return Path(override).expanduser()

  return Path(__file__).resolve().parents[2] / ".env"


def _unquote(value: str) -> str:
  if len(value) >= 2 and value[0] == value[-1] and value[0] in {'"', "'"}:
    return value[1:-1]
  return value


def load_env_file(path: Path, *, override: bool = False) -> None:
  """Load key=value pairs from a .env file into the process environment."""

  if not path.is_file():
    return

  for raw_line in path.read_text(encoding="utf-8").splitlines():
    line = raw_line.strip()
    # Skip blanks, comments and shell-only lines.
    if not line or line.startswith("#"):
      continue
    if line.startswith("export "):
      line = line[len("export ") :].lstrip()
    if "=" not in line:
      continue

    key, value = line.split("=", 1)
    key = key.strip()
    if not key:
      continue

    # Real environment variables win unless the caller asks otherwise.
    if not override and key in os.environ:
      continue
    os.environ[key] = _unquote(value.strip())
