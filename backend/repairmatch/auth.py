"""Signed bearer tokens that carry the caller's role.

A token is ``b64(user_id|role|expiry).b64(hmac)``. The role is fixed at login,
so routers check it without touching the store.
"""

import base64
import hashlib
import hmac
import os
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, Header, HTTPException, status

from repairmatch.env import env_int

TOKEN_TTL_HOURS = env_int("AUTH_TOKEN_TTL_HOURS", 24)
DEMO_PASSWORD = os.getenv("AUTH_DEMO_PASSWORD", "repairmatch-demo")
_AUTH_SECRET = os.getenv("AUTH_SECRET", "dev-insecure-secret-change-me")

ROLES = ("client", "technician")


@dataclass(frozen=True)
class AuthenticatedUser:
    user_id: str
    role: str

    @property
    def is_technician(self) -> bool:
        return self.role == "technician"


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _b64urldecode(value: str) -> bytes:
    padding = "=" * ((4 - len(value) % 4) % 4)
    return base64.urlsafe_b64decode((value + padding).encode("utf-8"))


def _sign(payload: bytes) -> bytes:
    return hmac.new(_AUTH_SECRET.encode("utf-8"), payload, hashlib.sha256).digest()


def create_access_token(user_id: str, role: str = "client") -> tuple[str, str]:
    if role not in ROLES:
        raise ValueError(f"Unknown role: {role}")
    expiry = datetime.now(timezone.utc) + timedelta(hours=TOKEN_TTL_HOURS)
    payload = f"{user_id}|{role}|{int(expiry.timestamp())}".encode("utf-8")
    token = f"{_b64url(payload)}.{_b64url(_sign(payload))}"
    return token, expiry.isoformat()


def verify_access_token(token: str) -> Optional[AuthenticatedUser]:
    try:
        payload_part, sig_part = token.split(".", 1)
        payload = _b64urldecode(payload_part)
        if not hmac.compare_digest(_b64urldecode(sig_part), _sign(payload)):
            return None
        # user ids may contain "|", role and expiry never do
        rest, _, expiry_ts = payload.decode("utf-8").rpartition("|")
        user_id, _, role = rest.rpartition("|")
        if datetime.now(timezone.utc).timestamp() > int(expiry_ts):
            return None
    except (ValueError, UnicodeDecodeError):
        return None
    if not user_id or role not in ROLES:
        return None
    return AuthenticatedUser(user_id=user_id, role=role)


def parse_bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    parts = authorization.split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    return parts[1].strip() or None


def require_authenticated_user(authorization: Optional[str] = Header(default=None)) -> AuthenticatedUser:
    token = parse_bearer_token(authorization)
    user = verify_access_token(token) if token else None
    if user is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid or missing bearer token")
    return user


def require_client(user: AuthenticatedUser = Depends(require_authenticated_user)) -> str:
    if user.role != "client":
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Client account required")
    return user.user_id


def require_technician(user: AuthenticatedUser = Depends(require_authenticated_user)) -> str:
    if not user.is_technician:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Technician profile required")
    return user.user_id
