"""Postgres-backed balances with row-locked debits and an append-only ledger."""

from __future__ import annotations

from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import require_session_factory
from app.jobs.errors import InsufficientBalance
from app.jobs.models import BillingScope
from app.schema.generation import Balance, BalanceLedgerEntry
from app.services.cost_table import to_money
from app.storage.balance_repo import BalanceRepository, DebitResult
from app.utils.db_retry import execute_with_retry


class PostgresBalanceRepository(BalanceRepository):
  """Persist balances to Postgres; debits serialize on the scope's balance row."""

  def __init__(self) -> None:
    self._session_factory = require_session_factory()

  async def get_balance(self, scope: BillingScope, *, opening: Decimal) -> Decimal:
    async with self._session_factory() as session:
      stmt = select(Balance.amount).where(Balance.scope_kind == scope.kind, Balance.scope_id == scope.scope_id)
      amount = (await session.execute(stmt)).scalar_one_or_none()
      return to_money(amount if amount is not None else opening)

  async def _lock_balance_row(self, session: AsyncSession, scope: BillingScope, opening: Decimal) -> Balance:
    """Return the scope's balance row locked FOR UPDATE, creating it on first use."""
    stmt = select(Balance).where(Balance.scope_kind == scope.kind, Balance.scope_id == scope.scope_id).with_for_update()
    row = (await session.execute(stmt)).scalar_one_or_none()
    if row is not None:
      return row

    # Seed the opening balance; a concurrent seed of the same scope is a no-op.
    seed = insert(Balance).values(scope_kind=scope.kind, scope_id=scope.scope_id, amount=to_money(opening)).on_conflict_do_nothing(constraint="ux_balances_scope")
    await session.execute(seed)
    return (await session.execute(stmt)).scalar_one()

  async def debit(self, scope: BillingScope, amount: Decimal, *, opening: Decimal, action: str, job_id: str | None = None, cost_table_version: str | None = None, require_sufficient: bool = False) -> DebitResult:
    charge = to_money(amount)

    async def _run() -> DebitResult:
      async with self._session_factory() as session:
        async with session.begin():
          row = await self._lock_balance_row(session, scope, opening)
          before = to_money(row.amount)

          # A ledger row for this job and action means the debit already happened.
          if job_id is not None:
            replay_stmt = select(BalanceLedgerEntry).where(BalanceLedgerEntry.scope_kind == scope.kind, BalanceLedgerEntry.scope_id == scope.scope_id, BalanceLedgerEntry.job_id == job_id, BalanceLedgerEntry.action == action).limit(1)
            previous = (await session.execute(replay_stmt)).scalar_one_or_none()
            if previous is not None:
              return DebitResult(balance_before=before, balance_after=before, charged=Decimal("0.00"), replayed=True)

          if require_sufficient and before < charge:
            raise InsufficientBalance(balance=before, required=charge)

          after = max(Decimal("0.00"), before - charge)
          row.amount = after
          session.add(BalanceLedgerEntry(scope_kind=scope.kind, scope_id=scope.scope_id, action=action, amount=charge, balance_after=after, job_id=job_id, cost_table_version=cost_table_version))
          return DebitResult(balance_before=before, balance_after=after, charged=before - after)

    return await execute_with_retry(operation_name=f"balance_debit:{action}", func=_run)
