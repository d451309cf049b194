import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from urllib.parse import urlparse

from app.config import Settings
from app.core.logging import _initialize_logging
from app.jobs.errors import ConfigurationError
from app.services.storage_client import build_storage_client
from fastapi import FastAPI


def validate_runtime_settings(settings: Settings) -> None:
  """Refuse to serve generation traffic without provider, database and session credentials."""
  missing = []
  if not settings.worldlabs_api_key:
    missing.append("WORLDLABS_API_KEY")
  if not settings.pg_dsn:
    missing.append("SLABFLOW_PG_DSN")
  if not settings.session_secret:
    missing.append("SLABFLOW_SESSION_SECRET")
  if missing:
    raise ConfigurationError(f"Missing required configuration: {', '.join(missing)}")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
  """Initialize logging, validate configuration and prepare the artifact bucket."""
  from app.config import get_settings

  settings = get_settings()
  logger = logging.getLogger("app.core.lifespan")

  _initialize_logging(settings)
  logger.info("Startup environment=%s database=%s provider=%s", settings.environment, _redact_dsn(settings.pg_dsn), settings.worldlabs_base_url)

  try:
    validate_runtime_settings(settings)
  except ConfigurationError:
    # Fail fast; a half-configured service would accept jobs it can never bill or poll.
    logger.error("Configuration check failed; refusing to start the service.", exc_info=True)
    raise

  # Bucket creation only matters for the local emulator; failures surface again on first archive.
  try:
    storage_client = build_storage_client(settings)
    await storage_client.ensure_bucket()
    logger.info("Artifact bucket ensured: %s", storage_client.bucket_name)
  except Exception as exc:  # noqa: BLE001
    logger.warning("Failed to ensure artifact bucket at startup: %s", exc)

  yield


def _redact_dsn(raw: str | None) -> str:
  """Redact credentials from a DSN while keeping host/db visible."""
  if not raw:
    return "<unset>"

  parsed = urlparse(raw)
  if not parsed.scheme:
    return "<invalid>"

  host = parsed.hostname or ""
  port = f":{parsed.port}" if parsed.port else ""
  netloc = f"{parsed.username}@{host}{port}" if parsed.username else f"{host}{port}"
  database = parsed.path.lstrip("/")
  return f"{parsed.scheme}://{netloc}/{database}" if database else f"{parsed.scheme}://{netloc}"
