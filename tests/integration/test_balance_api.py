from __future__ import annotations

from datetime import UTC, datetime, timedelta

import httpx
import jwt
import pytest
from app.api.deps import get_cost_meter
from app.config import get_settings
from app.jobs.models import BillingScope
from app.main import app

USER_SCOPE = BillingScope(kind="user", scope_id="user-1")


def _auth(**claims: str) -> dict[str, str]:
  payload = {"tenantId": "tenant-a", "exp": datetime.now(UTC) + timedelta(hours=1), **(claims or {"userId": "user-1"})}
  return {"authorization": f"Bearer {jwt.encode(payload, get_settings().session_secret, algorithm='HS256')}"}


@pytest.fixture
async def client(meter):
  app.dependency_overrides[get_cost_meter] = lambda: meter
  async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as async_client:
    yield async_client
  app.dependency_overrides.clear()


@pytest.mark.anyio
async def test_balance_defaults_to_user_credits(client):
  response = await client.get("/v1/balance", headers=_auth())

  assert response.status_code == 200
  assert response.json() == {"balance": 10.0, "scope": "user"}


@pytest.mark.anyio
async def test_admin_sees_tenant_budget(client):
  tenant = await client.get("/v1/balance", headers=_auth(adminId="admin-1"))
  user = await client.get("/v1/balance", params={"scope": "user"}, headers=_auth(adminId="admin-1"))

  assert tenant.json() == {"balance": 50.0, "scope": "tenant"}
  assert user.status_code == 400
  assert user.json()["detail"]["error"] == "USER_SCOPE_UNAVAILABLE"


@pytest.mark.anyio
async def test_charge_action_debits_balance(client, balance_repo):
  response = await client.post("/v1/balance", json={"action": "chat_message"}, headers=_auth())

  assert response.status_code == 200
  assert response.json() == {"balance": 9.98, "cost": 0.02, "action": "chat.message"}
  assert balance_repo.ledger[0]["cost_table_version"] == "2025-01"


@pytest.mark.anyio
async def test_charge_with_empty_balance_is_refused_and_balance_stays_zero(client, balance_repo, meter):
  balance_repo.seed(USER_SCOPE, "0")

  response = await client.post("/v1/balance", json={"action": "render.generate"}, headers=_auth())

  assert response.status_code == 402
  assert response.json()["detail"]["required"] == 0.4
  assert str(await meter.get_balance(USER_SCOPE)) == "0.00"


@pytest.mark.anyio
async def test_charge_rejects_unknown_actions_and_extra_fields(client):
  unknown = await client.post("/v1/balance", json={"action": "teleport"}, headers=_auth())
  extra = await client.post("/v1/balance", json={"action": "chat.message", "amount": 100}, headers=_auth())

  assert unknown.status_code == 400
  assert unknown.json()["detail"]["error"] == "INVALID_INPUT"
  assert extra.status_code == 422


@pytest.mark.anyio
async def test_balance_requires_session(client):
  response = await client.get("/v1/balance")

  assert response.status_code == 401
