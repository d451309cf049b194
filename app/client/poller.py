"""Client-side poll loop for the generation API.

The loop is stateless: it submits once, then asks the server to resolve the
job on a fixed interval until the job is terminal or the attempt cap is hit.
Stopping the loop (cap reached or task cancelled) never touches the server
job, which keeps running and can be resolved again later.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from typing import Any

import httpx
from app.api.models import GenerateResponse, JobViewResponse

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_SECONDS = 5.0
DEFAULT_MAX_ATTEMPTS = 120

ProgressCallback = Callable[[JobViewResponse], Awaitable[None] | None]


class PollError(Exception):
  """Base class for poll loop failures."""


class PollTimeoutError(PollError):
  """The attempt cap was reached before the job became terminal."""

  def __init__(self, job_id: str, attempts: int) -> None:
    super().__init__(f"Job {job_id} did not finish after {attempts} polls")
    self.job_id = job_id
    self.attempts = attempts


class PollRequestError(PollError):
  """The server rejected a request in a way retrying will not fix."""

  def __init__(self, status_code: int, detail: Any) -> None:
    super().__init__(f"Request failed with {status_code}: {detail}")
    self.status_code = status_code
    self.detail = detail


def _is_transient(response: httpx.Response) -> bool:
  return response.status_code >= 500 or response.status_code == 429


def _detail(response: httpx.Response) -> Any:
  try:
    payload = response.json()
  except ValueError:
    return response.text[:500]
  return payload.get("detail") if isinstance(payload, dict) else payload


class GenerationPoller:
  """Submits generation jobs and polls them to completion."""

  def __init__(
    self,
    base_url: str,
    *,
    session_token: str | None = None,
    interval_seconds: float = DEFAULT_INTERVAL_SECONDS,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    request_timeout_seconds: float = 30.0,
    transport: httpx.AsyncBaseTransport | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
  ) -> None:
    if max_attempts <= 0:
      raise ValueError("max_attempts must be positive")
    headers = {"authorization": f"Bearer {session_token}"} if session_token else {}
    self._client = httpx.AsyncClient(base_url=base_url.rstrip("/"), headers=headers, timeout=request_timeout_seconds, transport=transport)
    self._interval = interval_seconds
    self._max_attempts = max_attempts
    self._sleep = sleep

  async def __aenter__(self) -> GenerationPoller:
    return self

  async def __aexit__(self, *exc_info: object) -> None:
    await self.aclose()

  async def aclose(self) -> None:
    await self._client.aclose()

  async def submit(self, payload: dict[str, Any]) -> GenerateResponse:
    """Start a job. Not retried: without an idempotency key a retry is a second charge."""
    response = await self._client.post("/v1/generate", json=payload)
    if response.status_code >= 400:
      raise PollRequestError(response.status_code, _detail(response))
    return GenerateResponse.model_validate(response.json())

  async def _resolve_once(self, job_id: str) -> JobViewResponse | None:
    """Return the job view, or None after a transient failure."""
    try:
      response = await self._client.get("/v1/generate", params={"job_id": job_id})
    except httpx.RequestError as exc:
      logger.warning("Poll request failed job_id=%s: %s", job_id, exc)
      return None

    if _is_transient(response):
      logger.warning("Poll returned %s job_id=%s; retrying next interval", response.status_code, job_id)
      return None
    if response.status_code >= 400:
      raise PollRequestError(response.status_code, _detail(response))
    return JobViewResponse.model_validate(response.json())

  async def wait(self, job_id: str, on_progress: ProgressCallback | None = None) -> JobViewResponse:
    """Poll until the job is terminal; raises PollTimeoutError at the attempt cap."""
    for attempt in range(1, self._max_attempts + 1):
      await self._sleep(self._interval)
      view = await self._resolve_once(job_id)
      if view is None:
        continue

      if on_progress is not None:
        outcome = on_progress(view)
        if inspect.isawaitable(outcome):
          await outcome
      if view.done:
        logger.info("Job finished job_id=%s state=%s attempts=%d", job_id, view.state, attempt)
        return view

    raise PollTimeoutError(job_id, self._max_attempts)

  async def run(self, payload: dict[str, Any], on_progress: ProgressCallback | None = None) -> JobViewResponse:
    """Submit a job and wait for it."""
    submitted = await self.submit(payload)
    logger.info("Submitted job_id=%s estimated_time=%s", submitted.job_id, submitted.estimated_time)
    return await self.wait(submitted.job_id, on_progress)
