"""World Labs Marble client: request shaping and response parsing for world generation."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Final

import httpx
from app.config import Settings
from app.jobs.errors import ConfigurationError, InsufficientProviderCredit, InvalidInput, JobNotFound, ProviderAuthError, ProviderRequestError, ProviderUnavailable, ResultNotFound
from app.jobs.models import MODEL_MINI, MODEL_PLUS, Asset, ModelName

logger = logging.getLogger(__name__)

API_PREFIX: Final[str] = "/marble/v1"
API_KEY_HEADER: Final[str] = "WLT-Api-Key"

ESTIMATED_TIMES: Final[dict[str, str]] = {MODEL_MINI: "30-45 seconds", MODEL_PLUS: "4-5 minutes"}

_DATA_URL_PATTERN = re.compile(r"^data:image/(\w+);base64,(.+)$", re.DOTALL)
_RETRYABLE_STATUS: Final[frozenset[int]] = frozenset({408, 425, 429})


@dataclass(frozen=True)
class ImagePayload:
  """Image prompt normalized into the provider's image_prompt shape."""

  data_base64: str | None = None
  extension: str | None = None
  uri: str | None = None

  def to_prompt(self) -> dict[str, str]:
    if self.uri:
      return {"source": "uri", "uri": self.uri}
    prompt = {"source": "data_base64", "data_base64": self.data_base64 or ""}
    if self.extension:
      prompt["extension"] = self.extension
    return prompt


@dataclass(frozen=True)
class PollResult:
  """Snapshot of a provider operation."""

  done: bool
  progress: int
  error: str | None = None
  result_id: str | None = None


@dataclass(frozen=True)
class ServiceStatus:
  available: bool
  error: str | None = None


def parse_image(image_base64: str | None = None, image_url: str | None = None) -> ImagePayload | None:
  """Strip any data-URL prefix and infer the file extension."""
  if image_url:
    return ImagePayload(uri=image_url.strip())
  if not image_base64:
    return None

  raw = image_base64.strip()
  match = _DATA_URL_PATTERN.match(raw)
  if match is None:
    return ImagePayload(data_base64=raw)

  extension = match.group(1).lower()
  if extension == "jpeg":
    extension = "jpg"
  return ImagePayload(data_base64=match.group(2), extension=extension)


def build_scene_prompt(room_type: str, stone_name: str | None = None) -> str:
  """Default text prompt used when a countertop photo is submitted without one."""
  if stone_name:
    return f"A photorealistic {room_type} with {stone_name} countertops. Modern interior design, professional photography, high quality."
  return f"A photorealistic modern {room_type} interior. Professional photography, high quality."


def build_generate_body(*, image: ImagePayload | None, prompt: str | None, model: ModelName, tags: list[str] | None = None, display_name: str | None = None, seed: int | None = None) -> dict[str, Any]:
  """Assemble the worlds:generate request body."""
  if image is None and not prompt:
    raise InvalidInput("Either an image or a text prompt is required.")

  world_prompt: dict[str, Any] = {"type": "image" if image is not None else "text"}
  if image is not None:
    world_prompt["image_prompt"] = image.to_prompt()
  if prompt:
    world_prompt["text_prompt"] = prompt
    # An explicit prompt is used verbatim.
    world_prompt["disable_recaption"] = True

  body: dict[str, Any] = {"world_prompt": world_prompt, "model": model, "permission": {"public": True}}
  if display_name:
    body["display_name"] = display_name
  if tags:
    body["tags"] = list(tags)
  if seed is not None:
    body["seed"] = seed
  return body


def parse_operation(payload: dict[str, Any]) -> PollResult:
  """Convert an operations/{id} payload into a PollResult."""
  metadata = payload.get("metadata") or {}
  response = payload.get("response") or {}
  error = payload.get("error") or None

  raw_progress = metadata.get("progress")
  try:
    progress = int(float(raw_progress)) if raw_progress is not None else 0
  except (TypeError, ValueError):
    progress = 0
  progress = max(0, min(progress, 100))

  error_message = None
  if error:
    error_message = str(error.get("message") or error.get("code") or "World generation failed") if isinstance(error, dict) else str(error)

  result_id = response.get("world_id") or metadata.get("world_id")
  return PollResult(done=bool(payload.get("done")), progress=progress, error=error_message, result_id=result_id)


def parse_world(payload: dict[str, Any]) -> Asset:
  """Convert a worlds/{id} payload into an Asset."""
  assets = payload.get("assets") or {}
  splats = assets.get("splats") or {}
  spz_urls = splats.get("spz_urls") or {}
  imagery = assets.get("imagery") or {}
  geometry = assets.get("geometry") or {}

  # spz_urls maps resolution names to URLs; the first entry is the default quality.
  provider_url = next(iter(spz_urls.values()), None) if isinstance(spz_urls, dict) else None
  if provider_url is None and isinstance(spz_urls, list) and spz_urls:
    provider_url = spz_urls[0]
  provider_url = provider_url or geometry.get("splat_url")

  return Asset(
    world_id=str(payload.get("world_id") or payload.get("id") or ""),
    provider_url=provider_url,
    thumbnail_url=assets.get("thumbnail_url") or imagery.get("thumbnail_url"),
    caption=assets.get("caption"),
    marble_url=payload.get("world_marble_url"),
    pano_url=imagery.get("pano_url"),
  )


class WorldLabsClient:
  """Thin async HTTP client for the World Labs Marble API."""

  def __init__(self, api_key: str | None, *, base_url: str, timeout_seconds: float = 30.0, transport: httpx.AsyncBaseTransport | None = None) -> None:
    self._api_key = api_key
    self._base_url = base_url.rstrip("/") + API_PREFIX
    self._timeout = httpx.Timeout(timeout_seconds)
    self._transport = transport

  @classmethod
  def from_settings(cls, settings: Settings, *, transport: httpx.AsyncBaseTransport | None = None) -> WorldLabsClient:
    return cls(settings.worldlabs_api_key, base_url=settings.worldlabs_base_url, timeout_seconds=settings.provider_timeout_seconds, transport=transport)

  @property
  def configured(self) -> bool:
    return bool(self._api_key)

  def _build_client(self) -> httpx.AsyncClient:
    """Build an httpx client bound to the provider base URL."""
    if not self._api_key:
      raise ConfigurationError("WORLDLABS_API_KEY is not configured.")
    return httpx.AsyncClient(base_url=self._base_url, headers={API_KEY_HEADER: self._api_key}, timeout=self._timeout, transport=self._transport, trust_env=False)

  async def _request(self, method: str, path: str, *, json: dict[str, Any] | None = None) -> httpx.Response:
    """Send one request and translate transport failures into ProviderUnavailable."""
    try:
      async with self._build_client() as client:
        response = await client.request(method, path, json=json)
    except httpx.TimeoutException as exc:
      logger.warning("World Labs %s %s timed out: %s", method, path, exc)
      raise ProviderUnavailable("World Labs request timed out.") from exc
    except httpx.RequestError as exc:
      logger.warning("World Labs %s %s failed: %s", method, path, exc)
      raise ProviderUnavailable("World Labs is unreachable.") from exc

    if response.status_code >= 500 or response.status_code in _RETRYABLE_STATUS:
      logger.warning("World Labs %s %s returned %s", method, path, response.status_code)
      raise ProviderUnavailable(f"World Labs returned {response.status_code}.")
    return response

  def _raise_for_client_error(self, response: httpx.Response) -> None:
    """Map provider 4xx responses onto the error taxonomy."""
    status_code = response.status_code
    if status_code < 400:
      return

    message = _error_message(response)
    logger.error("World Labs request rejected status=%s message=%s", status_code, message)
    if status_code in {401, 403}:
      raise ProviderAuthError("World Labs authentication failed. Check the API key.")
    if status_code == 402:
      raise InsufficientProviderCredit("Insufficient World Labs credits.")
    if status_code in {400, 422}:
      raise InvalidInput(f"Invalid request: {message}")
    raise ProviderRequestError(f"World Labs API error: {status_code} {message}")

  async def start_job(self, *, image_base64: str | None = None, image_url: str | None = None, prompt: str | None = None, model: ModelName = MODEL_MINI, tags: list[str] | None = None, display_name: str | None = None, seed: int | None = None) -> str:
    """Submit a world generation and return the provider operation id."""
    body = build_generate_body(image=parse_image(image_base64, image_url), prompt=prompt, model=model, tags=tags, display_name=display_name, seed=seed)
    response = await self._request("POST", "/worlds:generate", json=body)
    self._raise_for_client_error(response)

    operation_id = _json_or_empty(response).get("operation_id")
    if not operation_id:
      raise ProviderRequestError("World Labs did not return an operation id.")

    logger.info("World Labs generation started operation_id=%s model=%s", operation_id, model)
    return str(operation_id)

  async def poll_job(self, job_id: str) -> PollResult:
    """Read the current state of a provider operation."""
    response = await self._request("GET", f"/operations/{job_id}")
    if response.status_code == 404:
      raise JobNotFound(f"Provider operation {job_id} was not found.")
    self._raise_for_client_error(response)
    return parse_operation(_json_or_empty(response))

  async def fetch_result(self, result_id: str) -> Asset:
    """Fetch the generated world's asset URLs."""
    response = await self._request("GET", f"/worlds/{result_id}")
    if response.status_code in {404, 410}:
      raise ResultNotFound(f"World {result_id} is no longer available.")
    self._raise_for_client_error(response)

    asset = parse_world(_json_or_empty(response))
    if not asset.world_id:
      asset = Asset(world_id=result_id, provider_url=asset.provider_url, thumbnail_url=asset.thumbnail_url, caption=asset.caption, marble_url=asset.marble_url, pano_url=asset.pano_url)
    return asset

  async def check_service(self) -> ServiceStatus:
    """Check the provider with a one-item listing."""
    if not self._api_key:
      return ServiceStatus(available=False, error="WORLDLABS_API_KEY is not configured.")
    try:
      response = await self._request("POST", "/worlds:list", json={"page_size": 1})
      self._raise_for_client_error(response)
    except (ProviderUnavailable, ProviderRequestError, InvalidInput) as exc:
      return ServiceStatus(available=False, error=exc.message)
    return ServiceStatus(available=True)


def _json_or_empty(response: httpx.Response) -> dict[str, Any]:
  if not response.content:
    return {}
  try:
    payload = response.json()
  except ValueError as exc:
    raise ProviderRequestError("World Labs returned a non-JSON response.") from exc
  if not isinstance(payload, dict):
    raise ProviderRequestError("World Labs returned an unexpected payload.")
  return payload


def _error_message(response: httpx.Response) -> str:
  try:
    payload = response.json()
  except ValueError:
    return response.text[:500]
  if isinstance(payload, dict):
    detail = payload.get("message") or payload.get("detail") or payload.get("error")
    if isinstance(detail, dict):
      detail = detail.get("message")
    if detail:
      return str(detail)
  return response.text[:500]
