from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Annotated, Any

import jwt
from app.config import Settings, get_settings
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

logger = logging.getLogger(__name__)

security_scheme = HTTPBearer(auto_error=False)

SESSION_ALGORITHMS = ["HS256"]


@dataclass(frozen=True)
class SessionPrincipal:
  """Verified caller identity carried by the storefront/admin session token."""

  tenant_id: str
  user_id: str | None = None
  admin_id: str | None = None
  email: str | None = None
  role: str | None = None


def decode_session_token(token: str, secret: str) -> dict[str, Any]:
  """Verify an HS256 session token and return its claims."""
  return jwt.decode(token, secret, algorithms=SESSION_ALGORITHMS, options={"require": ["exp"]})


def principal_from_claims(claims: dict[str, Any]) -> SessionPrincipal:
  tenant_id = claims.get("tenantId")
  if tenant_id is None or str(tenant_id).strip() == "":
    raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token claims")

  user_id = claims.get("userId")
  admin_id = claims.get("adminId")
  # Either a storefront user or a tenant admin must be named.
  if user_id is None and admin_id is None:
    raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token claims")

  return SessionPrincipal(
    tenant_id=str(tenant_id),
    user_id=str(user_id) if user_id is not None else None,
    admin_id=str(admin_id) if admin_id is not None else None,
    email=claims.get("email"),
    role=claims.get("role"),
  )


async def get_current_principal(request: Request, token: Annotated[HTTPAuthorizationCredentials | None, Depends(security_scheme)], settings: Settings = Depends(get_settings)) -> SessionPrincipal:  # noqa: B008
  """Verify the session cookie (or bearer token) and return the caller identity."""
  # Prefer the bearer header for API clients; browsers send the session cookie.
  raw_token = token.credentials if token else request.cookies.get(settings.session_cookie_name)
  if not raw_token:
    raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated", headers={"WWW-Authenticate": "Bearer"})

  if not settings.session_secret:
    logger.error("Session secret is not configured; rejecting authenticated request.")
    raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Authentication is not configured")

  try:
    claims = decode_session_token(raw_token, settings.session_secret)
  except jwt.ExpiredSignatureError as exc:
    raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Session expired", headers={"WWW-Authenticate": "Bearer"}) from exc
  except jwt.PyJWTError as exc:
    raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid authentication credentials", headers={"WWW-Authenticate": "Bearer"}) from exc

  return principal_from_claims(claims)
