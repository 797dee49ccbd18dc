from __future__ import annotations

"""Identity boundary: JWT bearer tokens and anonymous subject keys.

User management lives elsewhere; this module only turns a request into an
``Identity`` the chat services can reason about.

Env vars:
- JWT_SECRET (required in prod; default for dev)
- JWT_EXPIRES_MIN (default 60)
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Mapping, Optional

import os
import logging
import jwt
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel

from ..domain.chat_models import UserType


logger = logging.getLogger("branchchat.auth")
bearer_scheme = HTTPBearer(auto_error=False)

ANONYMOUS_PREFIX = "anonymous_"


def _get_env(name: str, default: Optional[str] = None) -> str:
    val = os.getenv(name, default)
    if val is None:
        raise RuntimeError(f"Missing required environment variable: {name}")
    return val


@dataclass
class JwtConfig:
    secret: str
    algorithm: str = "HS256"
    expires_min: int = 60

    @staticmethod
    def from_env() -> "JwtConfig":
        secret = _get_env("JWT_SECRET", "dev-secret-change-me")
        expires = int(os.getenv("JWT_EXPIRES_MIN", "60"))
        return JwtConfig(secret=secret, expires_min=expires)


class Identity(BaseModel):
    user_id: str
    name: Optional[str] = None
    user_type: UserType = "free"
    subject_key: str

    @property
    def is_anonymous(self) -> bool:
        return self.user_type == "anonymous"


def get_client_ip(headers: Mapping[str, str]) -> str:
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    real_ip = headers.get("x-real-ip")
    if real_ip:
        return real_ip
    client_ip = headers.get("x-client-ip")
    if client_ip:
        return client_ip
    return "unknown"


def user_type_for_plan(plan: Optional[str]) -> UserType:
    if plan in ("paid", "premium"):
        return "paid"
    return "free"


def create_access_token(user_id: str, plan: str = "free", name: Optional[str] = None, cfg: Optional[JwtConfig] = None) -> str:
    cfg = cfg or JwtConfig.from_env()
    now = datetime.now(timezone.utc)
    payload = {
        "sub": user_id,
        "plan": plan,
        "name": name,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(minutes=cfg.expires_min)).timestamp()),
    }
    return jwt.encode(payload, cfg.secret, algorithm=cfg.algorithm)


def decode_token(token: str, cfg: Optional[JwtConfig] = None) -> Identity:
    cfg = cfg or JwtConfig.from_env()
    try:
        payload = jwt.decode(token, cfg.secret, algorithms=[cfg.algorithm])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    subject = str(payload.get("sub") or "")
    if not subject:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    return Identity(
        user_id=subject,
        name=payload.get("name"),
        user_type=user_type_for_plan(payload.get("plan")),
        subject_key=subject,
    )


def anonymous_identity(headers: Mapping[str, str]) -> Identity:
    ip = get_client_ip(headers)
    subject_key = f"ip:{ip}" if ip != "unknown" else "anonymous"
    return Identity(
        user_id=f"{ANONYMOUS_PREFIX}{ip}",
        name="Anonymous",
        user_type="anonymous",
        subject_key=subject_key,
    )


def get_identity(
    request: Request,
    creds: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> Identity:
    """Resolve the caller; requests without a bearer token are anonymous."""
    if creds is None or not creds.scheme or creds.scheme.lower() != "bearer":
        return anonymous_identity(request.headers)
    return decode_token(creds.credentials)
