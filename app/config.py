"""Application configuration loaded from environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from functools import lru_cache

from app.utils.env import default_env_path, load_env_file

load_env_file(default_env_path(), override=False)

_DEFAULT_WORLDLABS_BASE_URL = "https://api.worldlabs.ai"


@dataclass(frozen=True)
class Settings:
  """Typed settings for the SlabFlow generation service."""

  environment: str
  allowed_origins: tuple[str, ...]
  debug: bool
  log_max_bytes: int
  log_backup_count: int
  log_http_4xx: bool
  log_http_bodies: bool
  log_http_body_bytes: int
  pg_dsn: str | None
  pg_connect_timeout: int
  worldlabs_api_key: str | None
  worldlabs_base_url: str
  provider_timeout_seconds: float
  storage_bucket: str
  storage_public_base_url: str | None
  gcs_storage_host: str | None
  gcp_project_id: str | None
  archive_timeout_seconds: float
  max_poll_attempts: int
  mini_expected_seconds: int
  mini_timeout_seconds: int
  plus_expected_seconds: int
  plus_timeout_seconds: int
  finalize_claim_ttl_seconds: int
  idempotency_window_seconds: int
  default_tenant_budget: Decimal
  default_user_credit: Decimal
  default_billing_scope: str
  session_secret: str | None
  session_cookie_name: str


@dataclass(frozen=True)
class DatabaseSettings:
  """Typed settings for database connectivity."""

  debug: bool
  pg_dsn: str | None
  pg_connect_timeout: int


def _parse_origins(raw: str | None) -> tuple[str, ...]:
  if not raw:
    raise ValueError("SLABFLOW_ALLOWED_ORIGINS must be set to one or more origins.")

  origins = [origin.strip() for origin in raw.split(",") if origin.strip()]

  if not origins:
    raise ValueError("SLABFLOW_ALLOWED_ORIGINS must include at least one origin.")

  if "*" in origins:
    raise ValueError("SLABFLOW_ALLOWED_ORIGINS must not include wildcard origins.")

  return tuple(origins)


def _parse_bool(raw: str | None) -> bool:
  """Parse a boolean-ish string from environment variables."""

  if raw is None:
    return False

  normalized = raw.strip().lower()
  return normalized in {"1", "true", "yes", "on"}


def _parse_positive_int(name: str, default: str) -> int:
  value = int(os.getenv(name, default))
  if value <= 0:
    raise ValueError(f"{name} must be a positive integer.")
  return value


def _parse_positive_float(name: str, default: str) -> float:
  value = float(os.getenv(name, default))
  if value <= 0:
    raise ValueError(f"{name} must be a positive number.")
  return value


def _parse_money(name: str, default: str) -> Decimal:
  raw = os.getenv(name, default)
  try:
    value = Decimal(raw.strip())
  except InvalidOperation as exc:
    raise ValueError(f"{name} must be a decimal amount.") from exc

  if value < 0:
    raise ValueError(f"{name} must not be negative.")

  return value.quantize(Decimal("0.01"))


@lru_cache(maxsize=1)
def get_settings() -> Settings:
  """Load settings once per process."""

  environment = os.getenv("SLABFLOW_ENV", "development").lower()

  # Toggle verbose error output and diagnostics in non-production environments.
  debug = _parse_bool(os.getenv("SLABFLOW_DEBUG"))

  log_max_bytes = _parse_positive_int("SLABFLOW_LOG_MAX_BYTES", "5242880")  # 5MB default

  log_backup_count = int(os.getenv("SLABFLOW_LOG_BACKUP_COUNT", "10"))
  if log_backup_count < 0:
    raise ValueError("SLABFLOW_LOG_BACKUP_COUNT must be zero or a positive integer.")

  # Allow opt-in logging of 4xx HTTPExceptions for diagnostics.
  log_http_4xx = _parse_bool(os.getenv("SLABFLOW_LOG_HTTP_4XX"))
  # Allow opt-in logging of HTTP request/response bodies with a size cap.
  log_http_bodies = _parse_bool(os.getenv("SLABFLOW_LOG_HTTP_BODIES"))
  log_http_body_bytes = _parse_positive_int("SLABFLOW_LOG_HTTP_BODY_BYTES", "2048")

  # Polling limits bound how long a job may stay open before it is timed out.
  max_poll_attempts = _parse_positive_int("SLABFLOW_MAX_POLL_ATTEMPTS", "120")
  mini_expected_seconds = _parse_positive_int("SLABFLOW_MINI_EXPECTED_SECONDS", "45")
  mini_timeout_seconds = _parse_positive_int("SLABFLOW_MINI_TIMEOUT_SECONDS", "600")
  plus_expected_seconds = _parse_positive_int("SLABFLOW_PLUS_EXPECTED_SECONDS", "300")
  plus_timeout_seconds = _parse_positive_int("SLABFLOW_PLUS_TIMEOUT_SECONDS", "1800")
  if mini_timeout_seconds < mini_expected_seconds or plus_timeout_seconds < plus_expected_seconds:
    raise ValueError("Model timeouts must not be shorter than the expected generation time.")

  default_billing_scope = os.getenv("SLABFLOW_DEFAULT_BILLING_SCOPE", "user").strip().lower()
  if default_billing_scope not in {"user", "tenant"}:
    raise ValueError("SLABFLOW_DEFAULT_BILLING_SCOPE must be 'user' or 'tenant'.")

  return Settings(
    environment=environment,
    allowed_origins=_parse_origins(os.getenv("SLABFLOW_ALLOWED_ORIGINS")),
    debug=debug,
    log_max_bytes=log_max_bytes,
    log_backup_count=log_backup_count,
    log_http_4xx=log_http_4xx,
    log_http_bodies=log_http_bodies,
    log_http_body_bytes=log_http_body_bytes,
    pg_dsn=os.getenv("SLABFLOW_PG_DSN") or os.getenv("DATABASE_URL"),
    pg_connect_timeout=_parse_positive_int("SLABFLOW_PG_CONNECT_TIMEOUT", "5"),
    worldlabs_api_key=_optional_str(os.getenv("WORLDLABS_API_KEY")),
    worldlabs_base_url=(os.getenv("WORLDLABS_BASE_URL") or _DEFAULT_WORLDLABS_BASE_URL).strip().rstrip("/"),
    provider_timeout_seconds=_parse_positive_float("SLABFLOW_PROVIDER_TIMEOUT_SECONDS", "30"),
    storage_bucket=os.getenv("SLABFLOW_STORAGE_BUCKET", "slabflow-artifacts"),
    storage_public_base_url=_optional_str(os.getenv("SLABFLOW_STORAGE_PUBLIC_URL")),
    gcs_storage_host=_optional_str(os.getenv("GCS_STORAGE_HOST")),
    gcp_project_id=_optional_str(os.getenv("GCP_PROJECT_ID")),
    archive_timeout_seconds=_parse_positive_float("SLABFLOW_ARCHIVE_TIMEOUT_SECONDS", "120"),
    max_poll_attempts=max_poll_attempts,
    mini_expected_seconds=mini_expected_seconds,
    mini_timeout_seconds=mini_timeout_seconds,
    plus_expected_seconds=plus_expected_seconds,
    plus_timeout_seconds=plus_timeout_seconds,
    finalize_claim_ttl_seconds=_parse_positive_int("SLABFLOW_FINALIZE_CLAIM_TTL_SECONDS", "300"),
    idempotency_window_seconds=_parse_positive_int("SLABFLOW_IDEMPOTENCY_WINDOW_SECONDS", "86400"),
    default_tenant_budget=_parse_money("SLABFLOW_DEFAULT_TENANT_BUDGET", "50.00"),
    default_user_credit=_parse_money("SLABFLOW_DEFAULT_USER_CREDIT", "10.00"),
    default_billing_scope=default_billing_scope,
    session_secret=_optional_str(os.getenv("SLABFLOW_SESSION_SECRET")),
    session_cookie_name=os.getenv("SLABFLOW_SESSION_COOKIE", "user_session"),
  )


@lru_cache(maxsize=1)
def get_database_settings() -> DatabaseSettings:
  """Load database settings without requiring web-runtime configuration like CORS."""
  # Keep database configuration isolated so offline scripts don't require unrelated env vars.
  debug = _parse_bool(os.getenv("SLABFLOW_DEBUG"))
  pg_connect_timeout = _parse_positive_int("SLABFLOW_PG_CONNECT_TIMEOUT", "5")
  pg_dsn = os.getenv("SLABFLOW_PG_DSN") or os.getenv("DATABASE_URL")

  return DatabaseSettings(debug=debug, pg_dsn=pg_dsn, pg_connect_timeout=pg_connect_timeout)


def _optional_str(raw: str | None) -> str | None:
  if raw is None:
    return None
  value = raw.strip()
  if value == "":
    return None
  return value
