"""Error taxonomy shared by the provider client, billing and orchestration layers."""

from __future__ import annotations

from decimal import Decimal
from typing import Any


class GenerationError(Exception):
  """Base class for failures surfaced to API callers."""

  status_code = 500
  code = "GENERATION_ERROR"

  def __init__(self, message: str) -> None:
    super().__init__(message)
    self.message = message

  def to_detail(self) -> dict[str, Any]:
    return {"error": self.code, "message": self.message}


class ConfigurationError(GenerationError):
  """Raised when required credentials or endpoints are not configured."""

  status_code = 503
  code = "CONFIGURATION_ERROR"


class InvalidInput(GenerationError):
  """Raised when a request is missing an image/prompt or names an unknown model or action."""

  status_code = 400
  code = "INVALID_INPUT"


class InsufficientBalance(GenerationError):
  """Raised when the billing scope cannot cover the action's cost."""

  status_code = 402
  code = "INSUFFICIENT_BALANCE"

  def __init__(self, *, balance: Decimal, required: Decimal) -> None:
    super().__init__("Insufficient credits")
    self.balance = balance
    self.required = required

  def to_detail(self) -> dict[str, Any]:
    return {"error": self.code, "message": self.message, "balance": self.balance, "required": self.required}


class JobNotFound(GenerationError):
  """Raised when a job id is unknown or owned by another tenant."""

  status_code = 404
  code = "JOB_NOT_FOUND"


class ResultNotFound(GenerationError):
  """Raised when the provider no longer has the generated world."""

  status_code = 410
  code = "RESULT_NOT_FOUND"


class ProviderUnavailable(GenerationError):
  """Transient provider failure: network error, timeout or 5xx."""

  status_code = 503
  code = "PROVIDER_UNAVAILABLE"


class ProviderRequestError(GenerationError):
  """Provider rejected the request for a non-transient reason."""

  status_code = 502
  code = "PROVIDER_ERROR"


class ProviderAuthError(ProviderRequestError):
  """Provider rejected our API key."""

  code = "PROVIDER_AUTH_FAILED"


class InsufficientProviderCredit(ProviderRequestError):
  """Our provider account is out of credits."""

  code = "PROVIDER_CREDITS_EXHAUSTED"


class ArchiveFailed(Exception):
  """Archiving a provider artifact failed; callers fall back to the provider URL."""
