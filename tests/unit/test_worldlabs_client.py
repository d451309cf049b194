import json

import httpx
import pytest
from app.ai.providers.worldlabs import WorldLabsClient, build_generate_body, parse_image, parse_operation, parse_world
from app.jobs.errors import ConfigurationError, InsufficientProviderCredit, InvalidInput, JobNotFound, ProviderAuthError, ProviderRequestError, ProviderUnavailable, ResultNotFound


def _client(handler, api_key="wl-key"):
  return WorldLabsClient(api_key, base_url="https://api.worldlabs.test/", transport=httpx.MockTransport(handler))


def test_parse_image_strips_data_url_prefix():
  payload = parse_image("data:image/jpeg;base64,/9j/4AAQ")

  assert payload.data_base64 == "/9j/4AAQ"
  assert payload.extension == "jpg"
  assert payload.to_prompt() == {"source": "data_base64", "data_base64": "/9j/4AAQ", "extension": "jpg"}


def test_parse_image_prefers_url_and_handles_bare_base64():
  assert parse_image("abc", "https://img.test/a.png").to_prompt() == {"source": "uri", "uri": "https://img.test/a.png"}
  assert parse_image("abc").extension is None
  assert parse_image(None) is None


def test_build_generate_body_with_prompt_disables_recaption():
  body = build_generate_body(image=parse_image("data:image/png;base64,AAA"), prompt="A kitchen", model="Marble 0.1-mini", tags=["slabflow"], seed=7)

  assert body["world_prompt"]["type"] == "image"
  assert body["world_prompt"]["text_prompt"] == "A kitchen"
  assert body["world_prompt"]["disable_recaption"] is True
  assert body["permission"] == {"public": True}
  assert body["tags"] == ["slabflow"]
  assert body["seed"] == 7


def test_build_generate_body_requires_input():
  with pytest.raises(InvalidInput):
    build_generate_body(image=None, prompt=None, model="Marble 0.1-mini")


def test_parse_operation_reads_progress_and_world():
  result = parse_operation({"done": True, "metadata": {"progress": "87.5"}, "response": {"world_id": "w-1"}})

  assert result.done is True
  assert result.progress == 87
  assert result.result_id == "w-1"


def test_parse_operation_error_message():
  result = parse_operation({"done": True, "error": {"code": "BAD_IMAGE", "message": "Image too small"}})

  assert result.error == "Image too small"
  assert result.result_id is None


def test_parse_world_prefers_first_spz_url():
  asset = parse_world({"world_id": "w-1", "world_marble_url": "https://marble.test/w-1", "assets": {"caption": "Kitchen", "thumbnail_url": "https://cdn.test/t.jpg", "splats": {"spz_urls": {"full_res": "https://cdn.test/full.spz", "500k": "https://cdn.test/500k.spz"}}, "imagery": {"pano_url": "https://cdn.test/pano.jpg"}}})

  assert asset.provider_url == "https://cdn.test/full.spz"
  assert asset.pano_url == "https://cdn.test/pano.jpg"
  assert asset.marble_url == "https://marble.test/w-1"
  assert asset.best_url == "https://cdn.test/full.spz"


@pytest.mark.anyio
async def test_start_job_posts_generate_request():
  seen = {}

  def handler(request: httpx.Request) -> httpx.Response:
    seen["path"] = request.url.path
    seen["key"] = request.headers.get("WLT-Api-Key")
    seen["body"] = json.loads(request.content)
    return httpx.Response(200, json={"operation_id": "op-42"})

  operation_id = await _client(handler).start_job(image_url="https://img.test/a.png", prompt="A kitchen", model="Marble 0.1-plus")

  assert operation_id == "op-42"
  assert seen["path"] == "/marble/v1/worlds:generate"
  assert seen["key"] == "wl-key"
  assert seen["body"]["model"] == "Marble 0.1-plus"
  assert seen["body"]["world_prompt"]["image_prompt"] == {"source": "uri", "uri": "https://img.test/a.png"}


@pytest.mark.anyio
async def test_start_job_without_operation_id_is_a_provider_error():
  client = _client(lambda request: httpx.Response(200, json={}))

  with pytest.raises(ProviderRequestError):
    await client.start_job(prompt="A kitchen")


@pytest.mark.anyio
@pytest.mark.parametrize(
  ("status_code", "error_type"),
  [(401, ProviderAuthError), (402, InsufficientProviderCredit), (422, InvalidInput), (418, ProviderRequestError), (429, ProviderUnavailable), (503, ProviderUnavailable)],
)
async def test_start_job_maps_error_statuses(status_code, error_type):
  client = _client(lambda request: httpx.Response(status_code, json={"message": "nope"}))

  with pytest.raises(error_type):
    await client.start_job(prompt="A kitchen")


@pytest.mark.anyio
async def test_network_failure_is_unavailable():
  def handler(request: httpx.Request) -> httpx.Response:
    raise httpx.ConnectError("connection refused", request=request)

  with pytest.raises(ProviderUnavailable):
    await _client(handler).poll_job("op-1")


@pytest.mark.anyio
async def test_poll_job_parses_operation_and_maps_404():
  def handler(request: httpx.Request) -> httpx.Response:
    if request.url.path.endswith("/operations/op-1"):
      return httpx.Response(200, json={"done": False, "metadata": {"progress": 30}})
    return httpx.Response(404, json={"detail": "Not found"})

  client = _client(handler)
  result = await client.poll_job("op-1")

  assert result.done is False
  assert result.progress == 30
  with pytest.raises(JobNotFound):
    await client.poll_job("op-2")


@pytest.mark.anyio
async def test_fetch_result_maps_gone_world():
  client = _client(lambda request: httpx.Response(410))

  with pytest.raises(ResultNotFound):
    await client.fetch_result("w-1")


@pytest.mark.anyio
async def test_fetch_result_falls_back_to_requested_id():
  client = _client(lambda request: httpx.Response(200, json={"assets": {"geometry": {"splat_url": "https://cdn.test/w.spz"}}}))

  asset = await client.fetch_result("w-1")

  assert asset.world_id == "w-1"
  assert asset.provider_url == "https://cdn.test/w.spz"


@pytest.mark.anyio
async def test_missing_api_key():
  client = _client(lambda request: httpx.Response(200), api_key=None)

  with pytest.raises(ConfigurationError):
    await client.poll_job("op-1")
  status = await client.check_service()
  assert status.available is False


@pytest.mark.anyio
async def test_check_service_reports_provider_outage():
  client = _client(lambda request: httpx.Response(500))

  status = await client.check_service()

  assert status.available is False
  assert "500" in status.error
