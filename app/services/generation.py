"""Generation job orchestration: admission, provider polling, finalization and billing."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime, timedelta
from decimal import Decimal

from app.ai.providers.worldlabs import ESTIMATED_TIMES, PollResult, ServiceStatus, WorldLabsClient, build_scene_prompt
from app.config import Settings
from app.jobs.errors import ArchiveFailed, InsufficientBalance, InvalidInput, JobNotFound, ResultNotFound
from app.jobs.models import MODEL_MINI, MODEL_PLUS, SUPPORTED_MODELS, BillingScope, BillingScopeKind, GenerationJobRecord, JobView, ModelName, build_job_view, next_progress
from app.services.archiver import ArtifactArchiver
from app.services.cost_meter import CostMeter
from app.services.cost_table import ACTION_WORLD_GENERATE, ACTION_WORLD_RECONSTRUCT
from app.storage.jobs_repo import GenerationJobsRepository

logger = logging.getLogger(__name__)

_DEFAULT_TAGS = ("slabflow",)


def _utc_now() -> datetime:
  return datetime.now(UTC)


@dataclass(frozen=True)
class ModelLimits:
  expected_seconds: int
  timeout_seconds: int


@dataclass(frozen=True)
class OrchestratorLimits:
  """Polling budget and per-model deadlines."""

  max_poll_attempts: int = 120
  finalize_claim_ttl_seconds: int = 300
  idempotency_window_seconds: int = 86400
  models: dict[str, ModelLimits] = field(default_factory=lambda: {MODEL_MINI: ModelLimits(45, 600), MODEL_PLUS: ModelLimits(300, 1800)})

  @classmethod
  def from_settings(cls, settings: Settings) -> OrchestratorLimits:
    return cls(
      max_poll_attempts=settings.max_poll_attempts,
      finalize_claim_ttl_seconds=settings.finalize_claim_ttl_seconds,
      idempotency_window_seconds=settings.idempotency_window_seconds,
      models={
        MODEL_MINI: ModelLimits(settings.mini_expected_seconds, settings.mini_timeout_seconds),
        MODEL_PLUS: ModelLimits(settings.plus_expected_seconds, settings.plus_timeout_seconds),
      },
    )

  def timeout_for(self, model: str) -> timedelta:
    return timedelta(seconds=self.models[model].timeout_seconds)


@dataclass(frozen=True)
class StartRequest:
  """Caller intent for a new generation."""

  tenant_id: str
  model: str = MODEL_MINI
  user_id: str | None = None
  image_base64: str | None = None
  image_url: str | None = None
  prompt: str | None = None
  order_id: str | None = None
  photo_id: str | None = None
  billing_scope: BillingScopeKind | None = None
  idempotency_key: str | None = None
  room_type: str | None = None
  stone_name: str | None = None
  display_name: str | None = None
  seed: int | None = None


@dataclass(frozen=True)
class StartResult:
  job_id: str
  estimated_time: str
  cost: Decimal
  model: ModelName
  reused: bool = False


def estimated_time_for(model: str) -> str:
  return ESTIMATED_TIMES.get(model, "a few minutes")


class GenerationOrchestrator:
  """Owns the job state machine.

  Callers drive progress by calling ``resolve``; every call does at most one
  provider poll. Finalization (fetch, archive, debit) runs under a per-job
  claim so it happens once even when several callers resolve concurrently.
  """

  def __init__(self, *, client: WorldLabsClient, archiver: ArtifactArchiver, meter: CostMeter, repo: GenerationJobsRepository, limits: OrchestratorLimits | None = None, default_scope: BillingScopeKind = "user", clock: Callable[[], datetime] = _utc_now) -> None:
    self._client = client
    self._archiver = archiver
    self._meter = meter
    self._repo = repo
    self._limits = limits or OrchestratorLimits()
    self._default_scope = default_scope
    self._clock = clock

  def _view(self, record: GenerationJobRecord) -> JobView:
    return build_job_view(record, estimated_time=estimated_time_for(record.model))

  def _billing_scope(self, request: StartRequest) -> tuple[BillingScope, str]:
    """Pick the balance to charge and the matching cost-table action."""
    kind = request.billing_scope or self._default_scope
    if kind == "tenant":
      return BillingScope(kind="tenant", scope_id=request.tenant_id), ACTION_WORLD_RECONSTRUCT
    if not request.user_id:
      raise InvalidInput("A signed-in user is required to charge personal credits.")
    return BillingScope(kind="user", scope_id=request.user_id), ACTION_WORLD_GENERATE

  def _validate(self, request: StartRequest) -> None:
    if request.model not in SUPPORTED_MODELS:
      raise InvalidInput(f"Unsupported model '{request.model}'. Use one of: {', '.join(SUPPORTED_MODELS)}.")
    if not request.image_base64 and not request.image_url and not request.prompt:
      raise InvalidInput("An image or a text prompt is required.")

  async def start(self, request: StartRequest) -> StartResult:
    """Admit, submit to the provider and persist a submitted job."""
    self._validate(request)
    now = self._clock()

    # Replay of a recent submit with the same key returns the original job untouched.
    if request.idempotency_key:
      existing = await self._repo.find_by_idempotency_key(request.tenant_id, request.idempotency_key)
      if existing is not None:
        if now - existing.created_at > timedelta(seconds=self._limits.idempotency_window_seconds):
          raise InvalidInput("This idempotency key has expired; send a new key to start another generation.")
        logger.info("Reusing job_id=%s for idempotency_key=%s tenant_id=%s", existing.job_id, request.idempotency_key, request.tenant_id)
        return StartResult(job_id=existing.job_id, estimated_time=estimated_time_for(existing.model), cost=existing.cost, model=existing.model, reused=True)

    scope, action = self._billing_scope(request)
    reservation = await self._meter.check_and_reserve(scope, action, request.model)
    if not reservation.allowed:
      raise InsufficientBalance(balance=reservation.balance_before, required=reservation.cost)

    prompt = request.prompt
    if not prompt and request.room_type:
      prompt = build_scene_prompt(request.room_type, request.stone_name)
    tags = [*_DEFAULT_TAGS, request.room_type] if request.room_type else list(_DEFAULT_TAGS)

    job_id = await self._client.start_job(image_base64=request.image_base64, image_url=request.image_url, prompt=prompt, model=request.model, tags=tags, display_name=request.display_name, seed=request.seed)  # type: ignore[arg-type]

    record = GenerationJobRecord(
      job_id=job_id,
      tenant_id=request.tenant_id,
      user_id=request.user_id,
      order_id=request.order_id,
      photo_id=request.photo_id,
      model=request.model,  # type: ignore[arg-type]
      state="submitted",
      progress=0,
      billing_scope=scope,
      action=reservation.action,
      cost=reservation.cost,
      cost_table_version=reservation.cost_table_version,
      created_at=now,
      idempotency_key=request.idempotency_key,
    )
    stored = await self._repo.create_job(record)
    if stored.job_id != job_id:
      # Lost an idempotency race after submitting; the orphaned provider job is never billed.
      logger.warning("Discarding provider job_id=%s; idempotency_key=%s already maps to job_id=%s", job_id, request.idempotency_key, stored.job_id)
      return StartResult(job_id=stored.job_id, estimated_time=estimated_time_for(stored.model), cost=stored.cost, model=stored.model, reused=True)

    logger.info("Generation submitted job_id=%s tenant_id=%s model=%s scope=%s cost=%s", job_id, request.tenant_id, request.model, scope, reservation.cost)
    return StartResult(job_id=job_id, estimated_time=estimated_time_for(request.model), cost=reservation.cost, model=request.model)  # type: ignore[arg-type]

  async def get_job(self, job_id: str, *, tenant_id: str) -> GenerationJobRecord:
    record = await self._repo.get_job(job_id)
    # Other tenants' jobs are indistinguishable from unknown ones.
    if record is None or record.tenant_id != tenant_id:
      raise JobNotFound("Job not found.")
    return record

  async def resolve(self, job_id: str, *, tenant_id: str) -> JobView:
    """Advance a job by at most one provider poll and return its current view."""
    record = await self.get_job(job_id, tenant_id=tenant_id)
    if record.is_terminal:
      return self._view(record)

    now = self._clock()
    if record.finalize_claimed_at is not None:
      # The provider already reported completion, so the deadline no longer applies.
      if self._claim_is_fresh(record, now):
        return self._view(record)
    elif now - record.created_at > self._limits.timeout_for(record.model):
      logger.warning("Generation timed out by deadline job_id=%s attempts=%s", job_id, record.poll_attempts)
      return await self._close(record, state="timed_out", now=now, error="Generation timed out.")

    try:
      poll = await self._client.poll_job(job_id)
    except JobNotFound:
      logger.error("Provider lost operation job_id=%s", job_id)
      return await self._close(record, state="failed", now=now, error="The provider no longer knows this job.")

    attempts = record.poll_attempts + 1
    if not poll.done:
      return await self._record_progress(record, poll, attempts=attempts, now=now)
    if poll.error:
      logger.warning("Generation failed job_id=%s error=%s", job_id, poll.error)
      return await self._close(record, state="failed", now=now, error=poll.error, poll_attempts=attempts)
    if not poll.result_id:
      return await self._close(record, state="failed", now=now, error="The provider finished without a result.", poll_attempts=attempts)
    return await self._finalize(record, poll.result_id, attempts=attempts, now=now)

  async def _record_progress(self, record: GenerationJobRecord, poll: PollResult, *, attempts: int, now: datetime) -> JobView:
    progress = next_progress(record.progress, poll.progress)
    if attempts >= self._limits.max_poll_attempts:
      logger.warning("Generation timed out by poll budget job_id=%s attempts=%s", record.job_id, attempts)
      return await self._close(record, state="timed_out", now=now, error="Generation timed out.", poll_attempts=attempts, progress=progress)

    updated = await self._repo.update_job(record.job_id, state="in_progress", progress=progress, poll_attempts=attempts, last_polled_at=now)
    return self._view(updated or record)

  def _claim_stale_before(self, now: datetime) -> datetime:
    return now - timedelta(seconds=self._limits.finalize_claim_ttl_seconds)

  def _claim_is_fresh(self, record: GenerationJobRecord, now: datetime) -> bool:
    return record.finalize_claimed_at is not None and record.finalize_claimed_at >= self._claim_stale_before(now)

  async def _close(self, record: GenerationJobRecord, *, state: str, now: datetime, error: str, poll_attempts: int | None = None, progress: int | None = None, holds_claim: bool = False) -> JobView:
    # Non-success closes never overwrite a finalization another resolve is running.
    claim_stale_before = None if holds_claim else self._claim_stale_before(now)
    updated = await self._repo.update_job(record.job_id, state=state, error=error, completed_at=now, poll_attempts=poll_attempts, progress=progress, last_polled_at=now if poll_attempts is not None else None, claim_stale_before=claim_stale_before)  # type: ignore[arg-type]
    return self._view(updated or record)

  async def _finalize(self, record: GenerationJobRecord, result_id: str, *, attempts: int, now: datetime) -> JobView:
    """Fetch, archive and bill a completed job exactly once."""
    claimed = await self._repo.claim_finalization(record.job_id, now=now, stale_before=self._claim_stale_before(now))
    if not claimed:
      # Another resolve is finalizing; report what is stored so far.
      current = await self._repo.get_job(record.job_id)
      return self._view(current or record)

    try:
      asset = await self._client.fetch_result(result_id)
    except ResultNotFound as exc:
      return await self._close(record, state="failed", now=now, error=exc.message, poll_attempts=attempts, holds_claim=True)
    except Exception:
      await self._repo.release_finalization(record.job_id)
      raise

    backed_up = False
    if asset.provider_url:
      try:
        archived_url = await self._archiver.archive(tenant_id=record.tenant_id, job_id=record.job_id, provider_url=asset.provider_url, order_id=record.order_id)
        asset = replace(asset, archived_url=archived_url)
        backed_up = True
      except ArchiveFailed as exc:
        logger.warning("Archive failed job_id=%s; keeping provider URL: %s", record.job_id, exc)
      except Exception:  # noqa: BLE001
        logger.exception("Archive raised unexpectedly job_id=%s; keeping provider URL", record.job_id)

    current = await self._repo.get_job(record.job_id)
    if current is not None and current.is_terminal:
      logger.warning("Job closed during finalization job_id=%s state=%s; not billing", record.job_id, current.state)
      return self._view(current)

    try:
      balance = await self._meter.commit_debit(record.billing_scope, record.cost, action=record.action, job_id=record.job_id, cost_table_version=record.cost_table_version)
    except Exception:
      await self._repo.release_finalization(record.job_id)
      raise

    updated = await self._repo.update_job(record.job_id, state="succeeded", progress=100, poll_attempts=attempts, last_polled_at=now, completed_at=now, asset=asset, backed_up=backed_up, balance_after=balance)
    logger.info("Generation succeeded job_id=%s backed_up=%s balance=%s", record.job_id, backed_up, balance)
    return self._view(updated or record)

  async def check_service(self) -> ServiceStatus:
    return await self._client.check_service()
