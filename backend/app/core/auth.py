import logging
import threading
from dataclasses import dataclass
from typing import Any, Optional

import jwt
from fastapi import Depends, Header, HTTPException
from jwt import PyJWKClient

from app.core.config import get_settings

logger = logging.getLogger(__name__)

AMBASSADOR = "AMBASSADOR"
MANAGER = "MANAGER"
ADMIN = "ADMIN"

ALLOWED_ROLES = {AMBASSADOR, MANAGER, ADMIN}
SUBMITTER_ROLES = (AMBASSADOR, ADMIN)
REVIEWER_ROLES = (MANAGER, ADMIN)

_jwks_client: Optional[PyJWKClient] = None
_jwks_lock = threading.Lock()


def _get_jwks_client(jwks_url: str) -> PyJWKClient:
    global _jwks_client
    if _jwks_client is not None:
        return _jwks_client
    with _jwks_lock:
        if _jwks_client is None:
            _jwks_client = PyJWKClient(jwks_url, cache_keys=True, lifespan=3600)
    return _jwks_client


@dataclass
class CurrentUser:
    id: str
    role: str
    email: Optional[str] = None

    @property
    def is_reviewer(self) -> bool:
        return self.role in REVIEWER_ROLES

    def can_view_signup(self, ambassador_id: Any) -> bool:
        """Ambassadors only see their own sign-ups; reviewers see all of them."""
        if self.role != AMBASSADOR:
            return True
        return str(ambassador_id) == self.id


def _extract_role(payload: dict) -> Optional[str]:
    # Role is read from app_metadata only; user_metadata is user-editable.
    raw = (payload.get("app_metadata") or {}).get("role")
    role = str(raw).strip().upper() if raw is not None else ""
    return role if role in ALLOWED_ROLES else None


def _decode(token: str, key: Any, algorithm: str, audience: str) -> dict:
    if audience:
        return jwt.decode(
            token,
            key,
            algorithms=[algorithm],
            audience=audience,
            options={"verify_aud": True},
        )
    return jwt.decode(token, key, algorithms=[algorithm], options={"verify_aud": False})


def _verify_shared_secret(token: str, settings) -> Optional[dict]:
    if not settings.supabase_jwt_secret:
        return None
    try:
        return _decode(token, settings.supabase_jwt_secret, "HS256", settings.supabase_jwt_audience.strip())
    except jwt.InvalidTokenError:
        return None


def _verify_jwks(token: str, settings) -> Optional[dict]:
    """Verify an ES256 token against the Supabase JWKS endpoint."""
    supabase_url = (settings.supabase_url or "").rstrip("/")
    if not supabase_url:
        return None
    try:
        client = _get_jwks_client(f"{supabase_url}/auth/v1/.well-known/jwks.json")
        signing_key = client.get_signing_key_from_jwt(token)
        return _decode(token, signing_key.key, "ES256", settings.supabase_jwt_audience.strip())
    except (jwt.InvalidTokenError, jwt.PyJWKClientError) as exc:
        logger.debug("JWKS verification failed: %s", exc)
        return None


def _verify(token: str, settings) -> Optional[dict]:
    try:
        alg = jwt.get_unverified_header(token).get("alg", "")
    except jwt.DecodeError:
        return None

    # Try the strategy the header asks for first to avoid a needless JWKS fetch.
    strategies = [_verify_jwks, _verify_shared_secret] if alg == "ES256" else [_verify_shared_secret, _verify_jwks]
    for strategy in strategies:
        payload = strategy(token, settings)
        if payload is not None:
            return payload
    return None


def get_current_user(
    authorization: Optional[str] = Header(None, alias="Authorization"),
) -> CurrentUser:
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(401, "Missing bearer token")

    settings = get_settings()
    if not settings.supabase_jwt_secret and not settings.supabase_url:
        raise HTTPException(500, "SUPABASE_JWT_SECRET is not configured")

    payload = _verify(authorization.split(" ", 1)[1].strip(), settings)
    if payload is None or not payload.get("sub"):
        raise HTTPException(401, "Invalid token")

    role = _extract_role(payload)
    if not role:
        raise HTTPException(403, "Missing role")

    return CurrentUser(id=payload["sub"], role=role, email=payload.get("email"))


def require_roles(*roles: str):
    def _dependency(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
        if user.role not in roles:
            raise HTTPException(403, "Forbidden")
        return user

    return _dependency
