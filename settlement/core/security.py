from __future__ import annotations

import base64
import hmac
import json
import time
from hashlib import sha256
from typing import Literal

from fastapi import Header, HTTPException
from pydantic import BaseModel

from settlement.core.config import get_settings


ActorType = Literal["customer", "admin", "system"]
MAC_SIZE = 32


class Actor(BaseModel):
    type: ActorType
    id: str

    @property
    def privileged(self) -> bool:
        return self.type in {"admin", "system"}


def _auth_error(detail: str) -> HTTPException:
    return HTTPException(status_code=401, detail=detail, headers={"WWW-Authenticate": "Bearer"})


def _token_key() -> bytes:
    return get_settings().token_signing_secret.encode("utf-8")


def create_access_token(actor: Actor, ttl_seconds: int | None = None) -> str:
    settings = get_settings()
    now = int(time.time())
    payload = {
        "sub": actor.id,
        "typ": actor.type,
        "iat": now,
        "exp": now + (ttl_seconds or settings.access_token_ttl_seconds),
    }
    body = json.dumps(payload, separators=(",", ":"), sort_keys=True).encode("utf-8")
    mac = hmac.new(_token_key(), body, sha256).digest()
    return base64.urlsafe_b64encode(body + mac).decode("ascii")


def verify_access_token(token: str) -> Actor:
    try:
        raw = base64.urlsafe_b64decode(token.encode("ascii"))
    except (ValueError, UnicodeEncodeError) as exc:
        raise _auth_error("invalid token encoding") from exc

    if len(raw) <= MAC_SIZE:
        raise _auth_error("invalid token body")

    body, mac = raw[:-MAC_SIZE], raw[-MAC_SIZE:]
    expected = hmac.new(_token_key(), body, sha256).digest()
    if not hmac.compare_digest(mac, expected):
        raise _auth_error("token signature mismatch")

    payload = json.loads(body.decode("utf-8"))
    if int(time.time()) > int(payload.get("exp", 0)):
        raise _auth_error("token expired")
    return Actor(type=payload["typ"], id=payload["sub"])


def _actor_from_api_key(api_key: str) -> Actor | None:
    settings = get_settings()
    key_map = {
        settings.admin_api_key: Actor(type="admin", id=settings.admin_actor_id),
        settings.system_api_key: Actor(type="system", id=settings.system_actor_id),
    }
    return key_map.get(api_key)


def get_actor(
    authorization: str | None = Header(default=None),
    x_api_key: str | None = Header(default=None),
) -> Actor:
    settings = get_settings()
    if not settings.auth_enabled:
        return Actor(type="admin", id=settings.admin_actor_id)

    if authorization:
        scheme, _, token = authorization.partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            raise _auth_error("invalid authorization header")
        return verify_access_token(token.strip())

    if x_api_key and x_api_key.strip():
        actor = _actor_from_api_key(x_api_key.strip())
        if actor is None:
            raise _auth_error("invalid api key")
        return actor

    raise _auth_error("missing credentials")


def require_privileged(actor: Actor) -> None:
    if not actor.privileged:
        raise HTTPException(status_code=403, detail="admin role required")


def require_customer(actor: Actor) -> None:
    if actor.type != "customer":
        raise HTTPException(status_code=403, detail="customer token required")
