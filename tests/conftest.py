"""Shared fixtures: in-memory repositories and scripted provider doubles."""

from __future__ import annotations

import asyncio
import os
from collections import deque
from dataclasses import replace
from datetime import UTC, datetime, timedelta
from decimal import Decimal

# Ensure required settings are available before importing the app.
os.environ.setdefault("SLABFLOW_ALLOWED_ORIGINS", "http://localhost")
os.environ.setdefault("SLABFLOW_SESSION_SECRET", "test-session-secret-with-enough-length")
os.environ.setdefault("WORLDLABS_API_KEY", "wl-test-key")

import pytest  # noqa: E402

from app.ai.providers.worldlabs import PollResult, ServiceStatus  # noqa: E402
from app.jobs.errors import ArchiveFailed, InsufficientBalance  # noqa: E402
from app.jobs.models import TERMINAL_STATES, Asset, BillingScope, GenerationJobRecord  # noqa: E402
from app.services.cost_meter import CostMeter  # noqa: E402
from app.services.cost_table import to_money  # noqa: E402
from app.services.generation import GenerationOrchestrator, OrchestratorLimits  # noqa: E402
from app.storage.balance_repo import DebitResult  # noqa: E402

START_TIME = datetime(2025, 3, 1, 12, 0, tzinfo=UTC)


@pytest.fixture
def anyio_backend() -> str:
  return "asyncio"


class FakeClock:
  def __init__(self, now: datetime = START_TIME) -> None:
    self.now = now

  def __call__(self) -> datetime:
    return self.now

  def advance(self, seconds: float) -> None:
    self.now = self.now + timedelta(seconds=seconds)


class InMemoryJobsRepo:
  """In-memory generation jobs repository mirroring the Postgres semantics."""

  def __init__(self) -> None:
    self.jobs: dict[str, GenerationJobRecord] = {}
    self._lock = asyncio.Lock()

  async def create_job(self, record: GenerationJobRecord) -> GenerationJobRecord:
    async with self._lock:
      if record.idempotency_key:
        for existing in self.jobs.values():
          if existing.tenant_id == record.tenant_id and existing.idempotency_key == record.idempotency_key:
            return existing
      self.jobs[record.job_id] = record
      return record

  async def get_job(self, job_id: str) -> GenerationJobRecord | None:
    return self.jobs.get(job_id)

  async def find_by_idempotency_key(self, tenant_id: str, idempotency_key: str) -> GenerationJobRecord | None:
    for record in self.jobs.values():
      if record.tenant_id == tenant_id and record.idempotency_key == idempotency_key:
        return record
    return None

  async def update_job(self, job_id: str, **kwargs: object) -> GenerationJobRecord | None:
    async with self._lock:
      record = self.jobs.get(job_id)
      if record is None:
        return None
      if record.state in TERMINAL_STATES:
        return record
      claim_stale_before = kwargs.pop("claim_stale_before", None)
      if claim_stale_before is not None and record.finalize_claimed_at is not None and record.finalize_claimed_at >= claim_stale_before:
        return record

      changes = {key: value for key, value in kwargs.items() if value is not None}
      if "progress" in changes:
        changes["progress"] = max(record.progress, int(changes["progress"]))
      if "asset" in changes and record.asset is not None and record.asset.archived_url:
        changes["asset"] = replace(changes["asset"], archived_url=record.asset.archived_url)
      updated = replace(record, **changes)
      if updated.state in TERMINAL_STATES:
        updated = replace(updated, finalize_claimed_at=None)
      self.jobs[job_id] = updated
      return updated

  async def claim_finalization(self, job_id: str, *, now: datetime, stale_before: datetime) -> bool:
    async with self._lock:
      record = self.jobs.get(job_id)
      if record is None or record.state in TERMINAL_STATES:
        return False
      if record.finalize_claimed_at is not None and record.finalize_claimed_at >= stale_before:
        return False
      self.jobs[job_id] = replace(record, finalize_claimed_at=now)
      return True

  async def release_finalization(self, job_id: str) -> None:
    async with self._lock:
      record = self.jobs.get(job_id)
      if record is not None:
        self.jobs[job_id] = replace(record, finalize_claimed_at=None)


class InMemoryBalanceRepo:
  """In-memory balances with a per-repo lock standing in for row locks."""

  def __init__(self) -> None:
    self.balances: dict[tuple[str, str], Decimal] = {}
    self.ledger: list[dict[str, object]] = []
    self._lock = asyncio.Lock()

  def seed(self, scope: BillingScope, amount: str) -> None:
    self.balances[(scope.kind, scope.scope_id)] = to_money(amount)

  async def get_balance(self, scope: BillingScope, *, opening: Decimal) -> Decimal:
    return self.balances.get((scope.kind, scope.scope_id), to_money(opening))

  async def debit(self, scope: BillingScope, amount: Decimal, *, opening: Decimal, action: str, job_id: str | None = None, cost_table_version: str | None = None, require_sufficient: bool = False) -> DebitResult:
    async with self._lock:
      key = (scope.kind, scope.scope_id)
      before = self.balances.get(key, to_money(opening))
      # Yield inside the critical section so unsynchronized callers would interleave.
      await asyncio.sleep(0)
      if job_id is not None and any(entry["job_id"] == job_id and entry["action"] == action and entry["scope"] == key for entry in self.ledger):
        return DebitResult(balance_before=before, balance_after=before, charged=Decimal("0.00"), replayed=True)
      charge = to_money(amount)
      if require_sufficient and before < charge:
        raise InsufficientBalance(balance=before, required=charge)
      after = max(Decimal("0.00"), before - charge)
      self.balances[key] = after
      self.ledger.append({"scope": key, "action": action, "amount": charge, "balance_after": after, "job_id": job_id, "cost_table_version": cost_table_version})
      return DebitResult(balance_before=before, balance_after=after, charged=before - after)


class FakeProvider:
  """Scripted stand-in for WorldLabsClient."""

  def __init__(self) -> None:
    self.start_calls: list[dict[str, object]] = []
    self.poll_calls: list[str] = []
    self.fetch_calls: list[str] = []
    self.poll_script: deque[PollResult | Exception] = deque()
    self.default_poll = PollResult(done=False, progress=10)
    self.asset = Asset(world_id="world-1", provider_url="https://cdn.worldlabs.ai/world-1/full.spz", thumbnail_url="https://cdn.worldlabs.ai/world-1/thumb.jpg", caption="A kitchen", marble_url="https://marble.worldlabs.ai/world/world-1")
    self.fetch_error: Exception | None = None
    self.fetch_delay = 0.0
    self.fetch_gate: asyncio.Event | None = None
    self._counter = 0

  async def start_job(self, **kwargs: object) -> str:
    self._counter += 1
    self.start_calls.append(kwargs)
    return f"op-{self._counter}"

  async def poll_job(self, job_id: str) -> PollResult:
    self.poll_calls.append(job_id)
    if self.poll_script:
      item = self.poll_script.popleft()
      if isinstance(item, Exception):
        raise item
      return item
    return self.default_poll

  async def fetch_result(self, result_id: str) -> Asset:
    self.fetch_calls.append(result_id)
    if self.fetch_delay:
      await asyncio.sleep(self.fetch_delay)
    if self.fetch_gate is not None:
      await self.fetch_gate.wait()
    if self.fetch_error is not None:
      raise self.fetch_error
    return self.asset

  async def check_service(self) -> ServiceStatus:
    return ServiceStatus(available=True)


class FakeArchiver:
  def __init__(self) -> None:
    self.calls: list[dict[str, object]] = []
    self.fail = False
    self.error: Exception | None = None

  async def archive(self, *, tenant_id: str, job_id: str, provider_url: str, order_id: str | None = None) -> str:
    self.calls.append({"tenant_id": tenant_id, "job_id": job_id, "provider_url": provider_url, "order_id": order_id})
    if self.fail:
      raise ArchiveFailed("bucket unavailable")
    if self.error is not None:
      raise self.error
    key = order_id or f"jobs/{job_id}"
    return f"https://storage.example.com/{tenant_id}/splats/{key}.spz"


@pytest.fixture
def clock() -> FakeClock:
  return FakeClock()


@pytest.fixture
def jobs_repo() -> InMemoryJobsRepo:
  return InMemoryJobsRepo()


@pytest.fixture
def balance_repo() -> InMemoryBalanceRepo:
  return InMemoryBalanceRepo()


@pytest.fixture
def provider() -> FakeProvider:
  return FakeProvider()


@pytest.fixture
def archiver() -> FakeArchiver:
  return FakeArchiver()


@pytest.fixture
def meter(balance_repo: InMemoryBalanceRepo) -> CostMeter:
  return CostMeter(balance_repo, opening_balances={"tenant": Decimal("50.00"), "user": Decimal("10.00")})


@pytest.fixture
def orchestrator(provider: FakeProvider, archiver: FakeArchiver, meter: CostMeter, jobs_repo: InMemoryJobsRepo, clock: FakeClock) -> GenerationOrchestrator:
  return GenerationOrchestrator(client=provider, archiver=archiver, meter=meter, repo=jobs_repo, limits=OrchestratorLimits(), clock=clock)  # type: ignore[arg-type]
