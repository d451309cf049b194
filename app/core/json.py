"""JSON responses that render Decimal money values as numbers."""

from __future__ import annotations

import json
from decimal import Decimal
from typing import Any

from fastapi.responses import JSONResponse


class DecimalJSONEncoder(json.JSONEncoder):
  """Encode Decimal balances and costs without losing their two-digit form."""

  def default(self, obj: Any) -> Any:
    if isinstance(obj, Decimal):
      # Integral amounts stay ints so 10.00 renders as 10, fractional ones as floats.
      return int(obj) if obj % 1 == 0 else float(obj)
    return super().default(obj)


class DecimalJSONResponse(JSONResponse):
  """JSONResponse variant used as the application's default response class."""

  def render(self, content: Any) -> bytes:
    return json.dumps(content, ensure_ascii=False, allow_nan=False, indent=None, separators=(",", ":"), cls=DecimalJSONEncoder).encode("utf-8")
