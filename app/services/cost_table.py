"""Versioned per-action cost table shared by admission checks and debits."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Final

from app.jobs.errors import InvalidInput
from app.jobs.models import MODEL_MINI, MODEL_PLUS, BillingScopeKind

CENT: Final[Decimal] = Decimal("0.01")

ACTION_WORLD_GENERATE: Final[str] = "world.generate"
ACTION_WORLD_RECONSTRUCT: Final[str] = "world.reconstruct"
ACTION_RENDER: Final[str] = "render.generate"
ACTION_IMAGE: Final[str] = "image.generate"
ACTION_CHAT: Final[str] = "chat.message"

# Action names accepted by the balance endpoint before actions were namespaced.
LEGACY_ACTIONS: Final[dict[str, tuple[str, str | None]]] = {
  "chat_message": (ACTION_CHAT, None),
  "image_generation": (ACTION_IMAGE, None),
  "3d_quick": (ACTION_WORLD_GENERATE, MODEL_MINI),
  "3d_high": (ACTION_WORLD_GENERATE, MODEL_PLUS),
}


def to_money(value: Decimal | int | str) -> Decimal:
  """Quantize an amount to cents."""
  return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class CostEntry:
  action: str
  model: str | None
  amount: Decimal
  default_scope: BillingScopeKind


@dataclass(frozen=True)
class ResolvedAction:
  """Result of a table lookup; carries the version it was priced under."""

  action: str
  model: str | None
  cost: Decimal
  default_scope: BillingScopeKind
  version: str


class CostTable:
  """Immutable price list keyed by (action, model)."""

  def __init__(self, version: str, entries: list[CostEntry]) -> None:
    self.version = version
    self._entries: dict[tuple[str, str | None], CostEntry] = {}
    for entry in entries:
      key = (entry.action, entry.model)
      if key in self._entries:
        raise ValueError(f"Duplicate cost entry for {key}")
      self._entries[key] = CostEntry(action=entry.action, model=entry.model, amount=to_money(entry.amount), default_scope=entry.default_scope)

  def actions(self) -> list[str]:
    return sorted({action for action, _ in self._entries})

  def resolve(self, action: str, model: str | None = None) -> ResolvedAction:
    """Look up the price for an action, translating legacy names first."""
    normalized = (action or "").strip()
    if normalized in LEGACY_ACTIONS:
      normalized, legacy_model = LEGACY_ACTIONS[normalized]
      model = model or legacy_model

    # Model-specific prices win over the action-wide price.
    entry = self._entries.get((normalized, model)) or self._entries.get((normalized, None))
    if entry is None:
      if any(key_action == normalized for key_action, _ in self._entries):
        raise InvalidInput(f"Action '{normalized}' is not priced for model '{model}'.")
      raise InvalidInput(f"Unknown billable action '{action}'.")
    return ResolvedAction(action=normalized, model=entry.model, cost=entry.amount, default_scope=entry.default_scope, version=self.version)


COST_TABLE_2025_01: Final[CostTable] = CostTable(
  "2025-01",
  [
    CostEntry(ACTION_WORLD_GENERATE, MODEL_MINI, Decimal("0.50"), "user"),
    CostEntry(ACTION_WORLD_GENERATE, MODEL_PLUS, Decimal("2.00"), "user"),
    CostEntry(ACTION_WORLD_RECONSTRUCT, MODEL_MINI, Decimal("1.26"), "tenant"),
    CostEntry(ACTION_WORLD_RECONSTRUCT, MODEL_PLUS, Decimal("1.26"), "tenant"),
    CostEntry(ACTION_RENDER, None, Decimal("0.40"), "user"),
    CostEntry(ACTION_IMAGE, None, Decimal("0.15"), "user"),
    CostEntry(ACTION_CHAT, None, Decimal("0.02"), "user"),
  ],
)

CURRENT_COST_TABLE: Final[CostTable] = COST_TABLE_2025_01
