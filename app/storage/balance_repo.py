"""Storage interfaces for prepaid balances."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Protocol

from app.jobs.models import BillingScope


@dataclass(frozen=True)
class DebitResult:
  balance_before: Decimal
  balance_after: Decimal
  charged: Decimal
  replayed: bool = False


class BalanceRepository(Protocol):
  """Repository contract for balance reads and serialized debits."""

  async def get_balance(self, scope: BillingScope, *, opening: Decimal) -> Decimal:
    """Return the scope's balance, or the opening amount when no row exists yet."""

  async def debit(self, scope: BillingScope, amount: Decimal, *, opening: Decimal, action: str, job_id: str | None = None, cost_table_version: str | None = None, require_sufficient: bool = False) -> DebitResult:
    """Subtract amount under a per-scope lock, clamping at zero, and append a ledger entry.

    A debit already recorded for the same job and action is not applied twice.
    With require_sufficient, raise InsufficientBalance instead of clamping.
    """
