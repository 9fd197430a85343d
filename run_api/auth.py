from __future__ import annotations

import asyncio
import hashlib
import hmac
from dataclasses import dataclass
from typing import Any, Protocol

from fastapi import Depends, HTTPException, Request

from run_api import db as dbm
from run_api.settings import ApiSettings


def hash_token(token: str) -> str:
    s = (token or "").strip()
    if not s:
        return ""
    return hashlib.sha256(s.encode("utf-8")).hexdigest()


def _auth_header_token(req: Request) -> str:
    raw = req.headers.get("authorization") or ""
    if not raw:
        return ""
    parts = raw.split(None, 1)
    if len(parts) != 2:
        return ""
    scheme, rest = parts[0].strip().lower(), parts[1].strip()
    if scheme != "bearer":
        return ""
    return rest


@dataclass(frozen=True)
class UserIdentity:
    user_id: str
    api_key_id: str | None = None


class IdentityVerifier(Protocol):
    def verify(self, token: str) -> UserIdentity | None: ...


class ApiKeyVerifier:
    """Bearer tokens are API keys; only their sha256 is stored."""

    def __init__(self, settings: ApiSettings) -> None:
        self.settings = settings

    def verify(self, token: str) -> UserIdentity | None:
        th = hash_token(token)
        if not th:
            return None
        authed = dbm.get_api_key_by_hash(self.settings, token_hash=th)
        if authed is None:
            return None
        return UserIdentity(user_id=authed.user_id, api_key_id=authed.api_key_id)


def get_settings(req: Request) -> ApiSettings:
    settings: Any = getattr(req.app.state, "settings", None)
    if not isinstance(settings, ApiSettings):
        raise RuntimeError("API settings not configured")
    return settings


def get_verifier(req: Request) -> IdentityVerifier:
    verifier: Any = getattr(req.app.state, "verifier", None)
    if verifier is None:
        raise RuntimeError("Identity verifier not configured")
    return verifier


async def require_user(req: Request, verifier: IdentityVerifier = Depends(get_verifier)) -> UserIdentity:
    token = _auth_header_token(req)
    if not token:
        raise HTTPException(status_code=401, detail="missing_bearer_token")
    identity = await asyncio.to_thread(verifier.verify, token)
    if identity is None:
        raise HTTPException(status_code=401, detail="invalid_token")
    return identity


def require_admin(req: Request, settings: ApiSettings = Depends(get_settings)) -> None:
    token = _auth_header_token(req)
    if not token:
        raise HTTPException(status_code=401, detail="missing_bearer_token")
    if not settings.admin_token:
        raise HTTPException(status_code=503, detail="admin_token_not_configured")
    if not hmac.compare_digest(token.strip(), settings.admin_token.strip()):
        raise HTTPException(status_code=403, detail="invalid_admin_token")
