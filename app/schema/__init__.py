"""Schema package exports."""

from .generation import Balance, BalanceLedgerEntry, GenerationJob

__all__ = ["Balance", "BalanceLedgerEntry", "GenerationJob"]
