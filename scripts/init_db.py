"""Database initialization helper.

Creates the configured database when it is missing, then creates the generation
tables. Intended for local/dev environments.
"""

import asyncio
import os
import re
import sys

from sqlalchemy import text
from sqlalchemy.engine.url import make_url
from sqlalchemy.ext.asyncio import create_async_engine

# Add the project root to the path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))


_DB_NAME_PATTERN = re.compile(r"^[A-Za-z0-9_]+$")


def _validate_database_name(db_name: str) -> str:
  """Validate a PostgreSQL database name used as an identifier.

  CREATE DATABASE cannot take a bind parameter, so only plain identifiers pass.
  """
  if not db_name:
    raise ValueError("Target database name is empty.")
  if not _DB_NAME_PATTERN.fullmatch(db_name):
    raise ValueError("Target database name contains invalid characters (allowed: A-Z, a-z, 0-9, _).")
  return db_name


async def create_database_if_not_exists(dsn: str) -> None:
  """Create the configured database if it does not already exist."""
  url = make_url(dsn)
  target_db = _validate_database_name(url.database or "")

  # Connect to the maintenance database with the async driver.
  postgres_url = url.set(database="postgres", drivername="postgresql+asyncpg")
  engine = create_async_engine(postgres_url, isolation_level="AUTOCOMMIT")
  try:
    async with engine.connect() as conn:
      result = await conn.execute(text("SELECT 1 FROM pg_database WHERE datname = :name"), {"name": target_db})
      if result.scalar() == 1:
        print(f"Database '{target_db}' already exists.")
        return
      await conn.execute(text(f'CREATE DATABASE "{target_db}"'))
      print(f"Database '{target_db}' created.")
  finally:
    await engine.dispose()


async def create_tables() -> None:
  """Create generation tables on the configured database."""
  from app.core.database import Base, get_db_engine
  from app.schema import generation  # noqa: F401

  engine = get_db_engine()
  if engine is None:
    raise RuntimeError("Database engine unavailable.")
  async with engine.begin() as conn:
    await conn.run_sync(Base.metadata.create_all)
  await engine.dispose()
  print("Generation tables ensured.")


async def main() -> int:
  # Import after path setup so the script works when run directly.
  from app.config import get_database_settings

  dsn = get_database_settings().pg_dsn
  if not dsn:
    print("Error: SLABFLOW_PG_DSN is not set.")
    return 1

  await create_database_if_not_exists(dsn)
  await create_tables()
  return 0


if __name__ == "__main__":
  sys.exit(asyncio.run(main()))
