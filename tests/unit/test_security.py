from datetime import UTC, datetime, timedelta
from types import SimpleNamespace

import jwt
import pytest
from app.config import get_settings
from app.core.security import get_current_principal, principal_from_claims
from fastapi import HTTPException
from fastapi.security import HTTPAuthorizationCredentials

SECRET = "test-session-secret-with-enough-length"


def _token(claims, *, secret=SECRET, expires_in=3600):
  payload = {"exp": datetime.now(UTC) + timedelta(seconds=expires_in), **claims}
  return jwt.encode(payload, secret, algorithm="HS256")


def _request(cookies=None):
  return SimpleNamespace(cookies=cookies or {})


def _bearer(token):
  return HTTPAuthorizationCredentials(scheme="Bearer", credentials=token)


def _settings():
  return get_settings()


def test_principal_requires_tenant_and_actor():
  principal = principal_from_claims({"tenantId": "tenant-a", "userId": 7, "email": "a@b.test"})
  assert principal.tenant_id == "tenant-a"
  assert principal.user_id == "7"

  with pytest.raises(HTTPException):
    principal_from_claims({"userId": "7"})
  with pytest.raises(HTTPException):
    principal_from_claims({"tenantId": "tenant-a"})


@pytest.mark.anyio
async def test_bearer_token_is_verified():
  principal = await get_current_principal(_request(), _bearer(_token({"tenantId": "tenant-a", "adminId": "admin-1"})), _settings())

  assert principal.tenant_id == "tenant-a"
  assert principal.admin_id == "admin-1"
  assert principal.user_id is None


@pytest.mark.anyio
async def test_session_cookie_is_accepted():
  cookies = {"user_session": _token({"tenantId": "tenant-a", "userId": "user-1"})}

  principal = await get_current_principal(_request(cookies), None, _settings())

  assert principal.user_id == "user-1"


@pytest.mark.anyio
@pytest.mark.parametrize(
  ("token", "detail"),
  [(None, "Not authenticated"), ("garbage", "Invalid authentication credentials")],
)
async def test_missing_or_malformed_token_is_unauthorized(token, detail):
  with pytest.raises(HTTPException) as excinfo:
    await get_current_principal(_request(), _bearer(token) if token else None, _settings())

  assert excinfo.value.status_code == 401
  assert excinfo.value.detail == detail


@pytest.mark.anyio
async def test_expired_and_foreign_tokens_are_rejected():
  with pytest.raises(HTTPException) as expired:
    await get_current_principal(_request(), _bearer(_token({"tenantId": "t", "userId": "u"}, expires_in=-10)), _settings())
  with pytest.raises(HTTPException) as foreign:
    await get_current_principal(_request(), _bearer(_token({"tenantId": "t", "userId": "u"}, secret="another-secret-of-similar-length!")), _settings())

  assert expired.value.detail == "Session expired"
  assert foreign.value.status_code == 401
