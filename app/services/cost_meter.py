"""Admission checks and serialized debits against tenant budgets and user credits."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal

from app.config import Settings
from app.jobs.models import BillingScope, BillingScopeKind
from app.services.cost_table import CURRENT_COST_TABLE, CostTable, ResolvedAction, to_money
from app.storage.balance_repo import BalanceRepository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Reservation:
  """Outcome of an admission check. Nothing is held; the name mirrors the call site."""

  allowed: bool
  cost: Decimal
  balance_before: Decimal
  action: str
  model: str | None
  cost_table_version: str


@dataclass(frozen=True)
class ChargeResult:
  balance: Decimal
  cost: Decimal
  action: str


class CostMeter:
  """Prices actions from the cost table and moves money through the balance repository."""

  def __init__(self, repo: BalanceRepository, *, opening_balances: dict[BillingScopeKind, Decimal], table: CostTable = CURRENT_COST_TABLE) -> None:
    self._repo = repo
    self._opening = {kind: to_money(amount) for kind, amount in opening_balances.items()}
    self._table = table

  @classmethod
  def from_settings(cls, repo: BalanceRepository, settings: Settings, *, table: CostTable = CURRENT_COST_TABLE) -> CostMeter:
    return cls(repo, opening_balances={"tenant": settings.default_tenant_budget, "user": settings.default_user_credit}, table=table)

  @property
  def table(self) -> CostTable:
    return self._table

  def price(self, action: str, model: str | None = None) -> ResolvedAction:
    return self._table.resolve(action, model)

  def _opening_for(self, scope: BillingScope) -> Decimal:
    return self._opening.get(scope.kind, Decimal("0.00"))

  async def get_balance(self, scope: BillingScope) -> Decimal:
    return await self._repo.get_balance(scope, opening=self._opening_for(scope))

  async def check_and_reserve(self, scope: BillingScope, action: str, model: str | None = None) -> Reservation:
    """Read-only admission check; allowed is False when the balance cannot cover the cost."""
    priced = self.price(action, model)
    balance = await self.get_balance(scope)
    allowed = balance >= priced.cost
    if not allowed:
      logger.info("Admission denied scope=%s action=%s balance=%s cost=%s", scope, priced.action, balance, priced.cost)
    return Reservation(allowed=allowed, cost=priced.cost, balance_before=balance, action=priced.action, model=priced.model, cost_table_version=priced.version)

  async def commit_debit(self, scope: BillingScope, cost: Decimal, *, action: str, job_id: str | None = None, cost_table_version: str | None = None) -> Decimal:
    """Subtract cost (clamped at zero) after a successful admission check and return the new balance."""
    result = await self._repo.debit(scope, cost, opening=self._opening_for(scope), action=action, job_id=job_id, cost_table_version=cost_table_version or self._table.version)
    if result.replayed:
      logger.warning("Debit already recorded scope=%s action=%s job_id=%s", scope, action, job_id)
    else:
      logger.info("Debited scope=%s action=%s job_id=%s charged=%s balance=%s", scope, action, job_id, result.charged, result.balance_after)
    return result.balance_after

  async def charge(self, scope: BillingScope, action: str, model: str | None = None) -> ChargeResult:
    """Admission and debit in one locked step for synchronous actions; raises InsufficientBalance."""
    priced = self.price(action, model)
    result = await self._repo.debit(scope, priced.cost, opening=self._opening_for(scope), action=priced.action, cost_table_version=priced.version, require_sufficient=True)
    logger.info("Charged scope=%s action=%s cost=%s balance=%s", scope, priced.action, priced.cost, result.balance_after)
    return ChargeResult(balance=result.balance_after, cost=priced.cost, action=priced.action)
