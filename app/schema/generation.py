"""SQLAlchemy models for generation jobs and prepaid balances."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import Boolean, DateTime, Index, Integer, Numeric, String, Text, UniqueConstraint, func, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database import Base

MONEY = Numeric(12, 2)


class GenerationJob(Base):
  __tablename__ = "generation_jobs"
  __table_args__ = (
    Index("ux_generation_jobs_tenant_idempotency", "tenant_id", "idempotency_key", unique=True, postgresql_where=text("idempotency_key IS NOT NULL")),
    Index("ix_generation_jobs_tenant_created", "tenant_id", "created_at"),
  )

  job_id: Mapped[str] = mapped_column(String, primary_key=True)
  tenant_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
  user_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
  order_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
  photo_id: Mapped[str | None] = mapped_column(String, nullable=True)
  model: Mapped[str] = mapped_column(String, nullable=False)
  state: Mapped[str] = mapped_column(String, nullable=False, index=True)
  progress: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
  billing_scope_kind: Mapped[str] = mapped_column(String, nullable=False)
  billing_scope_id: Mapped[str] = mapped_column(String, nullable=False)
  action: Mapped[str] = mapped_column(String, nullable=False)
  cost: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
  cost_table_version: Mapped[str] = mapped_column(String, nullable=False)
  poll_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
  error: Mapped[str | None] = mapped_column(Text, nullable=True)
  asset_json: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
  backed_up: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
  balance_after: Mapped[Decimal | None] = mapped_column(MONEY, nullable=True)
  idempotency_key: Mapped[str | None] = mapped_column(String, nullable=True)
  created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
  last_polled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
  completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
  finalize_claimed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class Balance(Base):
  __tablename__ = "balances"
  __table_args__ = (UniqueConstraint("scope_kind", "scope_id", name="ux_balances_scope"),)

  id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
  scope_kind: Mapped[str] = mapped_column(String, nullable=False)
  scope_id: Mapped[str] = mapped_column(String, nullable=False)
  amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
  updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())


class BalanceLedgerEntry(Base):
  __tablename__ = "balance_ledger"

  id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
  scope_kind: Mapped[str] = mapped_column(String, nullable=False, index=True)
  scope_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
  action: Mapped[str] = mapped_column(String, nullable=False)
  amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
  balance_after: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
  job_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
  cost_table_version: Mapped[str | None] = mapped_column(String, nullable=True)
  created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
