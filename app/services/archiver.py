"""Copy provider-hosted artifacts into tenant-scoped object storage."""

from __future__ import annotations

import logging
from typing import Protocol

import httpx
from app.jobs.errors import ArchiveFailed

logger = logging.getLogger(__name__)

SPLAT_CONTENT_TYPE = "application/octet-stream"


class ObjectStore(Protocol):
  """Upload contract satisfied by StorageClient."""

  async def upload_bytes(self, data: bytes, object_name: str, content_type: str, cache_control: str = ...) -> str:
    """Store bytes under object_name and return the public URL."""


def splat_object_name(tenant_id: str, *, job_id: str, order_id: str | None = None) -> str:
  """Deterministic object name so a repeated archive overwrites the same key."""
  if order_id:
    return f"{tenant_id}/splats/{order_id}.spz"
  return f"{tenant_id}/splats/jobs/{job_id}.spz"


class ArtifactArchiver:
  """Downloads a provider artifact and re-uploads it under the tenant prefix.

  Running it twice for the same job writes the same object name, so a retry
  simply replaces the earlier copy.
  """

  def __init__(self, store: ObjectStore, *, timeout_seconds: float = 120.0, transport: httpx.AsyncBaseTransport | None = None) -> None:
    self._store = store
    self._timeout = httpx.Timeout(timeout_seconds)
    self._transport = transport

  async def _download(self, url: str) -> bytes:
    try:
      async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport, follow_redirects=True, trust_env=False) as client:
        response = await client.get(url)
        response.raise_for_status()
    except httpx.HTTPStatusError as exc:
      raise ArchiveFailed(f"Artifact download returned {exc.response.status_code}") from exc
    except httpx.RequestError as exc:
      raise ArchiveFailed(f"Artifact download failed: {exc}") from exc
    except Exception as exc:  # noqa: BLE001
      # Malformed provider URLs raise outside the RequestError hierarchy.
      raise ArchiveFailed(f"Artifact download failed: {exc}") from exc

    if not response.content:
      raise ArchiveFailed("Artifact download returned an empty body")
    return response.content

  async def archive(self, *, tenant_id: str, job_id: str, provider_url: str, order_id: str | None = None) -> str:
    """Return the durable URL of the archived artifact or raise ArchiveFailed."""
    object_name = splat_object_name(tenant_id, job_id=job_id, order_id=order_id)
    data = await self._download(provider_url)
    try:
      archived_url = await self._store.upload_bytes(data, object_name, SPLAT_CONTENT_TYPE)
    except Exception as exc:  # noqa: BLE001
      # Storage SDK errors are not a stable hierarchy; normalize them for the caller.
      raise ArchiveFailed(f"Artifact upload failed: {exc}") from exc

    logger.info("Archived artifact job_id=%s tenant_id=%s object=%s bytes=%d", job_id, tenant_id, object_name, len(data))
    return archived_url
