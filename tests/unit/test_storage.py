from dataclasses import replace
from datetime import UTC, datetime
from decimal import Decimal

import pytest
from app.config import get_settings
from app.jobs.models import Asset, BillingScope, GenerationJobRecord
from app.services.storage_client import StorageClient, _normalize_emulator_endpoint
from app.storage.postgres_jobs_repo import PostgresGenerationJobsRepository


@pytest.fixture
def emulator_settings(monkeypatch):
  # StorageClient exports the emulator host for the SDK; restore it afterwards.
  monkeypatch.setenv("GCS_STORAGE_EMULATOR_HOST", "")
  return replace(get_settings(), gcs_storage_host="http://gcs-emulator:4443/storage/v1", storage_bucket="slabflow-test", storage_public_base_url=None)


def test_emulator_endpoint_is_normalized():
  assert _normalize_emulator_endpoint("http://gcs-emulator:4443/storage/v1/") == "http://gcs-emulator:4443"
  assert _normalize_emulator_endpoint("gcs-emulator:4443/") == "gcs-emulator:4443"


def test_public_url_uses_emulator_or_public_base(emulator_settings):
  client = StorageClient(emulator_settings)
  assert client.public_url("tenant-a/splats/order 9.spz") == "http://gcs-emulator:4443/slabflow-test/tenant-a/splats/order%209.spz"

  cdn = StorageClient(replace(emulator_settings, storage_public_base_url="https://cdn.slabflow.test/"))
  assert cdn.public_url("tenant-a/splats/order-9.spz") == "https://cdn.slabflow.test/tenant-a/splats/order-9.spz"


def test_job_rows_round_trip_through_the_model():
  repo = object.__new__(PostgresGenerationJobsRepository)
  record = GenerationJobRecord(
    job_id="op-1",
    tenant_id="tenant-a",
    model="Marble 0.1-mini",
    state="succeeded",
    progress=100,
    billing_scope=BillingScope(kind="user", scope_id="user-1"),
    action="world.generate",
    cost=Decimal("0.50"),
    cost_table_version="2025-01",
    created_at=datetime(2025, 3, 1, tzinfo=UTC),
    asset=Asset(world_id="w-1", provider_url="https://cdn.test/w.spz", archived_url="https://storage.test/w.spz"),
    backed_up=True,
    balance_after=Decimal("9.50"),
  )

  row = repo._record_to_model(record)

  assert row.billing_scope_kind == "user"
  assert row.asset_json["archived_url"] == "https://storage.test/w.spz"
  assert repo._model_to_record(row) == record
