"""Retry transient database failures around short balance and job transactions."""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# SQLSTATE codes that indicate a conflict worth replaying the whole transaction for.
_RETRYABLE_SQLSTATES = {"40001": "serialization_conflict", "40P01": "deadlock"}
_CONNECTIVITY_MARKERS = ("connection", "timeout", "reset", "broken pipe", "terminating")


@dataclass(frozen=True)
class DBFailureClassification:
  retryable: bool
  category: str
  sqlstate: str | None


def _extract_sqlstate(exc: Exception) -> str | None:
  """Extract the Postgres SQLSTATE from a wrapped driver exception."""
  if not isinstance(exc, DBAPIError):
    return None
  orig = getattr(exc, "orig", None)
  # asyncpg exposes sqlstate on the cause; the SQLAlchemy adapter may wrap it once more.
  for candidate in (orig, getattr(orig, "__cause__", None)):
    sqlstate = getattr(candidate, "sqlstate", None) or getattr(candidate, "pgcode", None)
    if sqlstate:
      return str(sqlstate)
  return None


def classify_db_failure(exc: Exception) -> DBFailureClassification:
  """Classify a failure as retryable (conflicts, dropped connections) or permanent."""
  sqlstate = _extract_sqlstate(exc)
  if sqlstate in _RETRYABLE_SQLSTATES:
    return DBFailureClassification(retryable=True, category=_RETRYABLE_SQLSTATES[sqlstate], sqlstate=sqlstate)

  if isinstance(exc, IntegrityError) or (sqlstate and sqlstate.startswith("23")):
    return DBFailureClassification(retryable=False, category="integrity_error", sqlstate=sqlstate)

  if isinstance(exc, OperationalError) and any(marker in str(exc).lower() for marker in _CONNECTIVITY_MARKERS):
    return DBFailureClassification(retryable=True, category="connectivity_error", sqlstate=sqlstate)

  return DBFailureClassification(retryable=False, category=type(exc).__name__, sqlstate=sqlstate)


async def execute_with_retry(*, operation_name: str, func: Callable[[], Awaitable[T]], max_attempts: int = 3, initial_backoff_ms: int = 50, max_backoff_ms: int = 1000) -> T:
  """Run func, replaying it on retryable failures with jittered exponential backoff.

  func must open its own transaction so each attempt starts clean.
  """
  attempt = 0
  while True:
    attempt += 1
    try:
      return await func()
    except (DBAPIError, OperationalError) as exc:
      classification = classify_db_failure(exc)
      logger.warning("DB operation failed operation=%s attempt=%d/%d category=%s sqlstate=%s retryable=%s", operation_name, attempt, max_attempts, classification.category, classification.sqlstate or "none", classification.retryable)
      if not classification.retryable or attempt >= max_attempts:
        raise

      backoff_ms = min(initial_backoff_ms * (2 ** (attempt - 1)), max_backoff_ms)
      backoff_ms += random.uniform(-backoff_ms * 0.25, backoff_ms * 0.25)
      await asyncio.sleep(backoff_ms / 1000.0)
