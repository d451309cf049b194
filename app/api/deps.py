"""Shared FastAPI dependencies that wire the generation services."""

from __future__ import annotations

from fastapi import Depends

from app.ai.providers.worldlabs import WorldLabsClient
from app.config import Settings, get_settings
from app.services.archiver import ArtifactArchiver
from app.services.cost_meter import CostMeter
from app.services.generation import GenerationOrchestrator, OrchestratorLimits
from app.services.storage_client import build_storage_client
from app.storage.factory import _get_balance_repo, _get_jobs_repo


def build_cost_meter(settings: Settings) -> CostMeter:
  return CostMeter.from_settings(_get_balance_repo(settings), settings)


def build_orchestrator(settings: Settings) -> GenerationOrchestrator:
  """Assemble the orchestrator from Postgres repositories, World Labs and GCS."""
  archiver = ArtifactArchiver(build_storage_client(settings), timeout_seconds=settings.archive_timeout_seconds)
  return GenerationOrchestrator(
    client=WorldLabsClient.from_settings(settings),
    archiver=archiver,
    meter=build_cost_meter(settings),
    repo=_get_jobs_repo(settings),
    limits=OrchestratorLimits.from_settings(settings),
    default_scope=settings.default_billing_scope,  # type: ignore[arg-type]
  )


async def get_cost_meter(settings: Settings = Depends(get_settings)) -> CostMeter:  # noqa: B008
  """Dependency returning the cost meter for balance routes."""
  return build_cost_meter(settings)


async def get_orchestrator(settings: Settings = Depends(get_settings)) -> GenerationOrchestrator:  # noqa: B008
  """Dependency returning the generation orchestrator."""
  return build_orchestrator(settings)
