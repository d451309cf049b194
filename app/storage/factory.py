from app.config import Settings
from app.storage.balance_repo import BalanceRepository
from app.storage.jobs_repo import GenerationJobsRepository
from app.storage.postgres_balance_repo import PostgresBalanceRepository
from app.storage.postgres_jobs_repo import PostgresGenerationJobsRepository


def _require_postgres(settings: Settings) -> None:
  if not settings.pg_dsn:
    raise ValueError("SLABFLOW_PG_DSN must be set to enable Postgres persistence.")


def _get_jobs_repo(settings: Settings) -> GenerationJobsRepository:
  """Return the active generation jobs repository."""
  _require_postgres(settings)
  return PostgresGenerationJobsRepository()


def _get_balance_repo(settings: Settings) -> BalanceRepository:
  """Return the active balance repository."""
  _require_postgres(settings)
  return PostgresBalanceRepository()
