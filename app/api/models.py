from __future__ import annotations

from decimal import Decimal
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field, PlainSerializer, StrictStr, model_validator

from app.jobs.models import Asset, JobView

# Inline images above ~15 MB are rejected before they reach the provider.
MAX_IMAGE_BASE64_CHARS = 20_000_000

Money = Annotated[Decimal, PlainSerializer(lambda value: float(value), return_type=float, when_used="json")]
ModelChoice = Literal["Marble 0.1-mini", "Marble 0.1-plus"]
ScopeChoice = Literal["user", "tenant"]


class GenerateRequest(BaseModel):
  """Request payload for starting a 3D world generation from a photo."""

  image_base64: StrictStr | None = Field(default=None, min_length=1, max_length=MAX_IMAGE_BASE64_CHARS, description="Image as base64, optionally with a data:image/...;base64, prefix.")
  image_url: StrictStr | None = Field(default=None, min_length=1, max_length=2048, description="Publicly reachable image URL, used instead of image_base64.")
  prompt: StrictStr | None = Field(default=None, min_length=1, max_length=2000, description="Optional text prompt; a scene prompt is derived from room_type when omitted.")
  model: ModelChoice = Field(default="Marble 0.1-mini", description="Fast preview (mini) or high quality (plus).")
  order_id: StrictStr | None = Field(default=None, description="Order the generated world belongs to; determines the archive path.")
  photo_id: StrictStr | None = Field(default=None, description="Order photo the world was generated from.")
  billing_scope: ScopeChoice | None = Field(default=None, description="Charge the user's credits or the tenant's monthly budget.")
  idempotency_key: StrictStr | None = Field(default=None, min_length=8, max_length=128, description="Optional client key; repeats within the window return the original job.")
  room_type: Literal["kitchen", "bathroom", "other"] | None = None
  stone_name: StrictStr | None = Field(default=None, max_length=200)
  display_name: StrictStr | None = Field(default=None, max_length=200)
  seed: int | None = Field(default=None, ge=0)
  model_config = ConfigDict(extra="forbid")

  @model_validator(mode="after")
  def _require_single_source(self) -> GenerateRequest:
    if self.image_base64 and self.image_url:
      raise ValueError("Provide either image_base64 or image_url, not both.")
    if not (self.image_base64 or self.image_url or self.prompt):
      raise ValueError("An image or a text prompt is required.")
    return self


class GenerateResponse(BaseModel):
  job_id: str
  estimated_time: str
  cost: Money
  model: str
  reused: bool = False


class AssetResponse(BaseModel):
  world_id: str
  url: str | None = Field(description="Archived URL when available, otherwise the provider URL.")
  archived_url: str | None = None
  provider_url: str | None = None
  thumbnail_url: str | None = None
  caption: str | None = None
  marble_url: str | None = None
  pano_url: str | None = None

  @classmethod
  def from_asset(cls, asset: Asset) -> AssetResponse:
    return cls(world_id=asset.world_id, url=asset.best_url, archived_url=asset.archived_url, provider_url=asset.provider_url, thumbnail_url=asset.thumbnail_url, caption=asset.caption, marble_url=asset.marble_url, pano_url=asset.pano_url)


class JobViewResponse(BaseModel):
  """Current state of a generation job."""

  job_id: str
  state: Literal["submitted", "in_progress", "succeeded", "failed", "timed_out"]
  done: bool
  progress: int = Field(ge=0, le=100)
  model: str
  estimated_time: str
  poll_attempts: int
  cost: Money
  backed_up: bool
  asset: AssetResponse | None = None
  error: str | None = None
  balance: Money | None = None

  @classmethod
  def from_view(cls, view: JobView) -> JobViewResponse:
    return cls(
      job_id=view.job_id,
      state=view.state,
      done=view.state in {"succeeded", "failed", "timed_out"},
      progress=view.progress,
      model=view.model,
      estimated_time=view.estimated_time,
      poll_attempts=view.poll_attempts,
      cost=view.cost,
      backed_up=view.backed_up,
      asset=AssetResponse.from_asset(view.asset) if view.asset else None,
      error=view.error,
      balance=view.balance,
    )


class ServiceStatusResponse(BaseModel):
  available: bool
  error: str | None = None


class BalanceResponse(BaseModel):
  balance: Money
  scope: ScopeChoice


class BalanceActionRequest(BaseModel):
  """Debit a synchronous action (chat message, image) from a balance."""

  action: StrictStr = Field(min_length=1, max_length=64, examples=["chat.message", "chat_message"])
  model: StrictStr | None = None
  scope: ScopeChoice | None = None
  model_config = ConfigDict(extra="forbid")


class BalanceActionResponse(BaseModel):
  balance: Money
  cost: Money
  action: str
