import logging

from fastapi import APIRouter, Depends, Query

from app.api.deps import get_orchestrator
from app.api.models import GenerateRequest, GenerateResponse, JobViewResponse, ServiceStatusResponse
from app.core.security import SessionPrincipal, get_current_principal
from app.services.generation import GenerationOrchestrator, StartRequest

router = APIRouter()
logger = logging.getLogger("app.api.routes.generate")


@router.post("", response_model=GenerateResponse)
async def start_generation(  # noqa: B008
  request: GenerateRequest,
  principal: SessionPrincipal = Depends(get_current_principal),  # noqa: B008
  orchestrator: GenerationOrchestrator = Depends(get_orchestrator),  # noqa: B008
) -> GenerateResponse:
  """Admit, bill-check and submit a 3D world generation."""
  start_request = StartRequest(
    tenant_id=principal.tenant_id,
    user_id=principal.user_id,
    model=request.model,
    image_base64=request.image_base64,
    image_url=request.image_url,
    prompt=request.prompt,
    order_id=request.order_id,
    photo_id=request.photo_id,
    billing_scope=request.billing_scope,
    idempotency_key=request.idempotency_key,
    room_type=request.room_type,
    stone_name=request.stone_name,
    display_name=request.display_name,
    seed=request.seed,
  )
  result = await orchestrator.start(start_request)
  return GenerateResponse(job_id=result.job_id, estimated_time=result.estimated_time, cost=result.cost, model=result.model, reused=result.reused)


@router.get("", response_model=JobViewResponse)
async def resolve_generation(  # noqa: B008
  job_id: str = Query(min_length=1, max_length=256),
  principal: SessionPrincipal = Depends(get_current_principal),  # noqa: B008
  orchestrator: GenerationOrchestrator = Depends(get_orchestrator),  # noqa: B008
) -> JobViewResponse:
  """Advance the job by one provider poll and return its state."""
  view = await orchestrator.resolve(job_id, tenant_id=principal.tenant_id)
  return JobViewResponse.from_view(view)


@router.get("/service", response_model=ServiceStatusResponse, dependencies=[Depends(get_current_principal)])
async def generation_service_status(orchestrator: GenerationOrchestrator = Depends(get_orchestrator)) -> ServiceStatusResponse:  # noqa: B008
  """Report whether the generation provider is reachable."""
  status = await orchestrator.check_service()
  if not status.available:
    logger.warning("Generation provider unavailable: %s", status.error)
  return ServiceStatusResponse(available=status.available, error=status.error)
