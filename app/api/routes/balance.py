from fastapi import APIRouter, Depends, HTTPException, Query, status

from app.api.deps import get_cost_meter
from app.api.models import BalanceActionRequest, BalanceActionResponse, BalanceResponse
from app.core.security import SessionPrincipal, get_current_principal
from app.jobs.models import BillingScope
from app.services.cost_meter import CostMeter

router = APIRouter()


def _scope_for(principal: SessionPrincipal, kind: str | None, default_kind: str) -> BillingScope:
  """Resolve the caller's balance; tenant budgets are keyed by tenant, credits by user."""
  resolved = kind or default_kind
  if resolved == "tenant":
    return BillingScope(kind="tenant", scope_id=principal.tenant_id)
  if principal.user_id is None:
    raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail={"error": "USER_SCOPE_UNAVAILABLE", "message": "Personal credits require a storefront user session."})
  return BillingScope(kind="user", scope_id=principal.user_id)


@router.get("", response_model=BalanceResponse)
async def get_balance(  # noqa: B008
  scope: str | None = Query(default=None, pattern="^(user|tenant)$"),
  principal: SessionPrincipal = Depends(get_current_principal),  # noqa: B008
  meter: CostMeter = Depends(get_cost_meter),  # noqa: B008
) -> BalanceResponse:
  """Return the current balance for the caller's user credits or tenant budget."""
  billing_scope = _scope_for(principal, scope, "user" if principal.user_id else "tenant")
  balance = await meter.get_balance(billing_scope)
  return BalanceResponse(balance=balance, scope=billing_scope.kind)


@router.post("", response_model=BalanceActionResponse)
async def charge_action(  # noqa: B008
  request: BalanceActionRequest,
  principal: SessionPrincipal = Depends(get_current_principal),  # noqa: B008
  meter: CostMeter = Depends(get_cost_meter),  # noqa: B008
) -> BalanceActionResponse:
  """Debit a priced action; 402 when the balance cannot cover it."""
  priced = meter.price(request.action, request.model)
  billing_scope = _scope_for(principal, request.scope, priced.default_scope)
  result = await meter.charge(billing_scope, request.action, request.model)
  return BalanceActionResponse(balance=result.balance, cost=result.cost, action=result.action)
