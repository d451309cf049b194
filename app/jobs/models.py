"""Domain models for asynchronous 3D world generation jobs."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Literal

JobState = Literal["submitted", "in_progress", "succeeded", "failed", "timed_out"]
ModelName = Literal["Marble 0.1-mini", "Marble 0.1-plus"]
BillingScopeKind = Literal["tenant", "user"]

MODEL_MINI: ModelName = "Marble 0.1-mini"
MODEL_PLUS: ModelName = "Marble 0.1-plus"
SUPPORTED_MODELS: tuple[ModelName, ...] = (MODEL_MINI, MODEL_PLUS)

TERMINAL_STATES: frozenset[str] = frozenset({"succeeded", "failed", "timed_out"})

# Progress stays below 100 until the provider reports completion.
MAX_OPEN_PROGRESS = 99


@dataclass(frozen=True)
class BillingScope:
  """Owner of the balance a job is charged against."""

  kind: BillingScopeKind
  scope_id: str

  def __str__(self) -> str:
    return f"{self.kind}:{self.scope_id}"


@dataclass(frozen=True)
class Asset:
  """Generated world artifacts; archived_url is set once archiving succeeds."""

  world_id: str
  provider_url: str | None
  archived_url: str | None = None
  thumbnail_url: str | None = None
  caption: str | None = None
  marble_url: str | None = None
  pano_url: str | None = None

  @property
  def best_url(self) -> str | None:
    """Prefer the tenant-durable copy over the expiring provider link."""
    return self.archived_url or self.provider_url

  def to_dict(self) -> dict[str, str | None]:
    return {
      "world_id": self.world_id,
      "provider_url": self.provider_url,
      "archived_url": self.archived_url,
      "thumbnail_url": self.thumbnail_url,
      "caption": self.caption,
      "marble_url": self.marble_url,
      "pano_url": self.pano_url,
    }

  @classmethod
  def from_dict(cls, payload: dict[str, str | None]) -> Asset:
    return cls(
      world_id=str(payload.get("world_id") or ""),
      provider_url=payload.get("provider_url"),
      archived_url=payload.get("archived_url"),
      thumbnail_url=payload.get("thumbnail_url"),
      caption=payload.get("caption"),
      marble_url=payload.get("marble_url"),
      pano_url=payload.get("pano_url"),
    )


@dataclass
class GenerationJobRecord:
  """Represents one provider-backed generation job and its billing context."""

  job_id: str
  tenant_id: str
  model: ModelName
  state: JobState
  progress: int
  billing_scope: BillingScope
  action: str
  cost: Decimal
  cost_table_version: str
  created_at: datetime
  user_id: str | None = None
  order_id: str | None = None
  photo_id: str | None = None
  poll_attempts: int = 0
  last_polled_at: datetime | None = None
  completed_at: datetime | None = None
  error: str | None = None
  asset: Asset | None = None
  backed_up: bool = False
  balance_after: Decimal | None = None
  finalize_claimed_at: datetime | None = None
  idempotency_key: str | None = None

  @property
  def is_terminal(self) -> bool:
    return self.state in TERMINAL_STATES


@dataclass(frozen=True)
class JobView:
  """Read model returned to callers polling a job."""

  job_id: str
  state: JobState
  progress: int
  model: ModelName
  cost: Decimal
  poll_attempts: int
  estimated_time: str
  asset: Asset | None = None
  backed_up: bool = False
  error: str | None = None
  balance: Decimal | None = None


def next_progress(previous: int, reported: int | float | None, *, done: bool = False) -> int:
  """Return the progress to store after a poll; never lower than before."""
  if done:
    return 100
  candidate = int(reported or 0)
  candidate = max(0, min(candidate, MAX_OPEN_PROGRESS))
  return max(previous, candidate)


def build_job_view(record: GenerationJobRecord, *, estimated_time: str) -> JobView:
  """Project a stored job record into the caller-facing view."""
  return JobView(
    job_id=record.job_id,
    state=record.state,
    progress=record.progress,
    model=record.model,
    cost=record.cost,
    poll_attempts=record.poll_attempts,
    estimated_time=estimated_time,
    asset=record.asset,
    backed_up=record.backed_up,
    error=record.error,
    balance=record.balance_after,
  )
