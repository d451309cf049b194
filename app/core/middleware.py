import json
import logging
import re
import time
import uuid
from typing import Any

from app.config import get_settings
from starlette.datastructures import MutableHeaders
from starlette.types import ASGIApp, Message, Receive, Scope, Send

logger = logging.getLogger("app.core.middleware")

# Keys whose values never reach the log: credentials, PII and inline image payloads.
_SENSITIVE_KEYS = {"password", "token", "key", "authorization", "cookie", "secret", "email", "phone", "address", "image_base64", "data_base64"}
_REQUEST_ID_PATTERN = re.compile(r"^[A-Za-z0-9._-]{8,64}$")


def _redact_sensitive_keys(data: Any) -> Any:
  """Redact sensitive keys from a dictionary or list recursively."""
  if isinstance(data, dict):
    return {k: ("***" if k.lower() in _SENSITIVE_KEYS else _redact_sensitive_keys(v)) for k, v in data.items()}
  if isinstance(data, list):
    return [_redact_sensitive_keys(item) for item in data]
  return data


def _header(scope: Scope, name: bytes) -> str | None:
  for key, value in scope.get("headers", []):
    if key.lower() == name:
      return value.decode("latin-1")
  return None


def _resolve_request_id(scope: Scope) -> str:
  """Reuse a well-formed inbound x-request-id so client and server logs line up."""
  inbound = _header(scope, b"x-request-id")
  if inbound and _REQUEST_ID_PATTERN.match(inbound):
    return inbound
  return str(uuid.uuid4())


def _format_body_for_log(body: bytes, content_type: str | None, max_bytes: int) -> str:
  """Format a JSON body for logging with redaction and a size cap."""
  if not body:
    return "<empty>"

  if not content_type or "json" not in content_type.lower():
    return f"<non-json body {len(body)} bytes>"

  # Avoid parsing truncated JSON to prevent misleading logs.
  if len(body) > max_bytes:
    return f"{body[:max_bytes].decode('utf-8', errors='replace')}...(truncated)"

  text = body.decode("utf-8", errors="replace")
  try:
    parsed = json.loads(text)
  except json.JSONDecodeError:
    return text
  return json.dumps(_redact_sensitive_keys(parsed), ensure_ascii=True)


class RequestLoggingMiddleware:
  """Log request/response metadata and tag every response with x-request-id."""

  def __init__(self, app: ASGIApp) -> None:
    self.app = app

  async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
    if scope["type"] != "http":
      await self.app(scope, receive, send)
      return

    settings = get_settings()
    request_id = _resolve_request_id(scope)
    scope.setdefault("state", {})["request_id"] = request_id

    start_time = time.perf_counter()
    method = scope.get("method", "UNKNOWN")
    path = scope.get("path", "")
    logger.info("Incoming request request_id=%s %s %s", request_id, method, path)

    receive_wrapper = receive
    if settings.log_http_bodies:
      # Drain the body once so it can be logged, then replay it downstream.
      chunks: list[bytes] = []
      more_body = True
      while more_body:
        message = await receive()
        if message.get("type") != "http.request":
          break
        chunks.append(message.get("body", b""))
        more_body = message.get("more_body", False)
      request_body = b"".join(chunks)
      logger.info("Request body request_id=%s body=%s", request_id, _format_body_for_log(request_body, _header(scope, b"content-type"), settings.log_http_body_bytes))

      replayed = False

      async def receive_wrapper() -> Message:
        nonlocal replayed
        if replayed:
          return await receive()
        replayed = True
        return {"type": "http.request", "body": request_body, "more_body": False}

    status_code = 0

    async def send_wrapper(message: Message) -> None:
      nonlocal status_code
      if message["type"] == "http.response.start":
        status_code = message["status"]
        headers = MutableHeaders(scope=message)
        if "x-request-id" not in headers:
          headers["x-request-id"] = request_id
      await send(message)

    await self.app(scope, receive_wrapper, send_wrapper)

    elapsed_ms = (time.perf_counter() - start_time) * 1000
    logger.info("Response request_id=%s status=%s (took %.2fms)", request_id, status_code, elapsed_ms)


class SecurityHeadersMiddleware:
  """Strip server-identifying headers and set baseline browser protections."""

  def __init__(self, app: ASGIApp) -> None:
    self.app = app

  async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
    if scope["type"] != "http":
      await self.app(scope, receive, send)
      return

    async def send_wrapper(message: Message) -> None:
      if message["type"] == "http.response.start":
        headers = MutableHeaders(scope=message)
        for header in ("x-powered-by", "server"):
          if header in headers:
            del headers[header]
        headers.setdefault("x-content-type-options", "nosniff")
      await send(message)

    await self.app(scope, receive, send_wrapper)
