"""Storage interfaces for generation jobs."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Protocol

from app.jobs.models import Asset, GenerationJobRecord, JobState


class GenerationJobsRepository(Protocol):
  """Repository contract for generation job persistence."""

  async def create_job(self, record: GenerationJobRecord) -> GenerationJobRecord:
    """Persist a new job; if its idempotency key already exists for the tenant, return the stored job instead."""

  async def get_job(self, job_id: str) -> GenerationJobRecord | None:
    """Fetch a job by identifier."""

  async def find_by_idempotency_key(self, tenant_id: str, idempotency_key: str) -> GenerationJobRecord | None:
    """Return the job the tenant created with this key, if any."""

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
    """Apply partial updates to a non-terminal job.

    Progress is only ever raised. Updates against a terminal job are ignored and
    the stored record is returned unchanged. With ``claim_stale_before`` set, the
    update is also skipped while a finalization claim newer than that instant is held.
    """

  async def claim_finalization(self, job_id: str, *, now: datetime, stale_before: datetime) -> bool:
    """Atomically mark a non-terminal job as being finalized; False if another caller holds the claim."""

  async def release_finalization(self, job_id: str) -> None:
    """Drop a finalization claim so a later resolve can retry."""
