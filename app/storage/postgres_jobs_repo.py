"""Postgres-backed repository for generation jobs using SQLAlchemy."""

from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError

from app.core.database import require_session_factory
from app.jobs.models import TERMINAL_STATES, Asset, BillingScope, GenerationJobRecord, JobState
from app.schema.generation import GenerationJob
from app.storage.jobs_repo import GenerationJobsRepository

logger = logging.getLogger(__name__)

_OPEN_STATES = ("submitted", "in_progress")


class PostgresGenerationJobsRepository(GenerationJobsRepository):
  """Persist generation jobs to Postgres using SQLAlchemy."""

  def __init__(self) -> None:
    self._session_factory = require_session_factory()

  async def create_job(self, record: GenerationJobRecord) -> GenerationJobRecord:
    async with self._session_factory() as session:
      session.add(self._record_to_model(record))
      try:
        await session.commit()
      except IntegrityError:
        await session.rollback()
        # A concurrent submit with the same idempotency key won the insert.
        if record.idempotency_key is None:
          raise
        stmt = select(GenerationJob).where(GenerationJob.tenant_id == record.tenant_id, GenerationJob.idempotency_key == record.idempotency_key)
        existing = (await session.execute(stmt)).scalar_one()
        logger.info("Idempotent submit reused job_id=%s tenant_id=%s", existing.job_id, record.tenant_id)
        return self._model_to_record(existing)
    return record

  async def get_job(self, job_id: str) -> GenerationJobRecord | None:
    async with self._session_factory() as session:
      row = await session.get(GenerationJob, job_id)
      if row is None:
        return None
      return self._model_to_record(row)

  async def find_by_idempotency_key(self, tenant_id: str, idempotency_key: str) -> GenerationJobRecord | None:
    async with self._session_factory() as session:
      stmt = select(GenerationJob).where(GenerationJob.tenant_id == tenant_id, GenerationJob.idempotency_key == idempotency_key)
      row = (await session.execute(stmt)).scalar_one_or_none()
      if row is None:
        return None
      return self._model_to_record(row)

  async def update_job(
    self,
    job_id: str,
    *,
    state: JobState | None = None,
    progress: int | None = None,
    poll_attempts: int | None = None,
    last_polled_at: datetime | None = None,
    completed_at: datetime | None = None,
    error: str | None = None,
    asset: Asset | None = None,
    backed_up: bool | None = None,
    balance_after: Decimal | None = None,
    claim_stale_before: datetime | None = None,
  ) -> GenerationJobRecord | None:
    async with self._session_factory() as session:
      async with session.begin():
        # Lock the row so concurrent resolves apply their updates one at a time.
        stmt = select(GenerationJob).where(GenerationJob.job_id == job_id).with_for_update()
        row = (await session.execute(stmt)).scalar_one_or_none()
        if row is None:
          return None
        if row.state in TERMINAL_STATES:
          return self._model_to_record(row)
        if claim_stale_before is not None and row.finalize_claimed_at is not None and row.finalize_claimed_at >= claim_stale_before:
          return self._model_to_record(row)

        if state is not None:
          row.state = state
        if progress is not None:
          row.progress = max(int(row.progress), int(progress))
        if poll_attempts is not None:
          row.poll_attempts = max(int(row.poll_attempts), int(poll_attempts))
        if last_polled_at is not None:
          row.last_polled_at = last_polled_at
        if completed_at is not None:
          row.completed_at = completed_at
        if error is not None:
          row.error = error
        if asset is not None:
          previous = row.asset_json or {}
          merged = asset.to_dict()
          # An archived URL, once recorded, is never replaced.
          if previous.get("archived_url"):
            merged["archived_url"] = previous["archived_url"]
          row.asset_json = merged
        if backed_up is not None:
          row.backed_up = backed_up
        if balance_after is not None:
          row.balance_after = balance_after
        if row.state in TERMINAL_STATES:
          row.finalize_claimed_at = None
      return self._model_to_record(row)

  async def claim_finalization(self, job_id: str, *, now: datetime, stale_before: datetime) -> bool:
    async with self._session_factory() as session:
      stmt = (
        update(GenerationJob)
        .where(GenerationJob.job_id == job_id, GenerationJob.state.in_(_OPEN_STATES), or_(GenerationJob.finalize_claimed_at.is_(None), GenerationJob.finalize_claimed_at < stale_before))
        .values(finalize_claimed_at=now)
      )
      result = await session.execute(stmt)
      await session.commit()
      return result.rowcount == 1

  async def release_finalization(self, job_id: str) -> None:
    async with self._session_factory() as session:
      await session.execute(update(GenerationJob).where(GenerationJob.job_id == job_id).values(finalize_claimed_at=None))
      await session.commit()

  def _record_to_model(self, record: GenerationJobRecord) -> GenerationJob:
    return GenerationJob(
      job_id=record.job_id,
      tenant_id=record.tenant_id,
      user_id=record.user_id,
      order_id=record.order_id,
      photo_id=record.photo_id,
      model=record.model,
      state=record.state,
      progress=record.progress,
      billing_scope_kind=record.billing_scope.kind,
      billing_scope_id=record.billing_scope.scope_id,
      action=record.action,
      cost=record.cost,
      cost_table_version=record.cost_table_version,
      poll_attempts=record.poll_attempts,
      error=record.error,
      asset_json=record.asset.to_dict() if record.asset else None,
      backed_up=record.backed_up,
      balance_after=record.balance_after,
      idempotency_key=record.idempotency_key,
      created_at=record.created_at,
      last_polled_at=record.last_polled_at,
      completed_at=record.completed_at,
      finalize_claimed_at=record.finalize_claimed_at,
    )

  def _model_to_record(self, row: GenerationJob) -> GenerationJobRecord:
    return GenerationJobRecord(
      job_id=row.job_id,
      tenant_id=row.tenant_id,
      user_id=row.user_id,
      order_id=row.order_id,
      photo_id=row.photo_id,
      model=row.model,  # type: ignore[arg-type]
      state=row.state,  # type: ignore[arg-type]
      progress=int(row.progress),
      billing_scope=BillingScope(kind=row.billing_scope_kind, scope_id=row.billing_scope_id),  # type: ignore[arg-type]
      action=row.action,
      cost=Decimal(row.cost),
      cost_table_version=row.cost_table_version,
      poll_attempts=int(row.poll_attempts),
      error=row.error,
      asset=Asset.from_dict(row.asset_json) if row.asset_json else None,
      backed_up=bool(row.backed_up),
      balance_after=Decimal(row.balance_after) if row.balance_after is not None else None,
      idempotency_key=row.idempotency_key,
      created_at=row.created_at,
      last_polled_at=row.last_polled_at,
      completed_at=row.completed_at,
      finalize_claimed_at=row.finalize_claimed_at,
    )
