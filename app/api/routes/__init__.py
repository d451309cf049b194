from . import balance, generate

__all__ = ["balance", "generate"]
