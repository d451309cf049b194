from decimal import Decimal

import pytest
from app.jobs.errors import InvalidInput
from app.services.cost_table import CURRENT_COST_TABLE, CostEntry, CostTable, to_money


def test_model_specific_prices():
  assert CURRENT_COST_TABLE.resolve("world.generate", "Marble 0.1-mini").cost == Decimal("0.50")
  assert CURRENT_COST_TABLE.resolve("world.generate", "Marble 0.1-plus").cost == Decimal("2.00")
  assert CURRENT_COST_TABLE.resolve("world.reconstruct", "Marble 0.1-plus").default_scope == "tenant"


def test_model_independent_action_ignores_model():
  resolved = CURRENT_COST_TABLE.resolve("render.generate", "anything")

  assert resolved.cost == Decimal("0.40")
  assert resolved.model is None


def test_legacy_action_names_are_translated():
  resolved = CURRENT_COST_TABLE.resolve("3d_high")

  assert resolved.action == "world.generate"
  assert resolved.model == "Marble 0.1-plus"
  assert resolved.version == "2025-01"


def test_world_generation_requires_a_priced_model():
  with pytest.raises(InvalidInput, match="not priced"):
    CURRENT_COST_TABLE.resolve("world.generate")


def test_unknown_action():
  with pytest.raises(InvalidInput, match="Unknown billable action"):
    CURRENT_COST_TABLE.resolve("teleport")


def test_duplicate_entries_are_rejected():
  with pytest.raises(ValueError):
    CostTable("test", [CostEntry("a", None, Decimal("1"), "user"), CostEntry("a", None, Decimal("2"), "user")])


def test_amounts_are_quantized_to_cents():
  table = CostTable("test", [CostEntry("a", None, Decimal("0.125"), "user")])

  assert table.resolve("a").cost == Decimal("0.13")
  assert to_money("1") == Decimal("1.00")
  assert "chat.message" in CURRENT_COST_TABLE.actions()
