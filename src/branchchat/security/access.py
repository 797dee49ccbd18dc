from __future__ import annotations

"""Conversation access rules and share-password hashing."""

import hashlib
import hmac
import secrets
import time
from typing import Optional

from ..domain.chat_models import Conversation, SharingPolicy
from ..domain.errors import Unauthorized
from .auth import Identity


_PBKDF2_ITERATIONS = 200_000


def hash_share_password(password: str, salt: Optional[str] = None) -> str:
    salt = salt or secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), bytes.fromhex(salt), _PBKDF2_ITERATIONS)
    return f"{salt}${digest.hex()}"


def verify_share_password(password: str, stored: str) -> bool:
    try:
        salt, _ = stored.split("$", 1)
    except ValueError:
        return False
    return hmac.compare_digest(hash_share_password(password, salt), stored)


def _share_active(sharing: Optional[SharingPolicy], now_ms: int) -> bool:
    if sharing is None or not sharing.is_public:
        return False
    return sharing.expires_at is None or sharing.expires_at > now_ms


def is_member(conversation: Conversation, identity: Identity) -> bool:
    return identity.user_id in conversation.participants or identity.user_id == conversation.created_by


def can_view(
    conversation: Conversation,
    identity: Identity,
    share_password: Optional[str] = None,
    now_ms: Optional[int] = None,
) -> bool:
    if is_member(conversation, identity):
        return True
    now_ms = now_ms if now_ms is not None else int(time.time() * 1000)
    sharing = conversation.sharing
    if not _share_active(sharing, now_ms):
        return False
    if identity.is_anonymous and not sharing.allow_anonymous:
        return False
    if sharing.requires_password:
        if not share_password or not sharing.password_hash:
            return False
        return verify_share_password(share_password, sharing.password_hash)
    return True


def ensure_can_view(conversation: Conversation, identity: Identity, share_password: Optional[str] = None) -> None:
    if not can_view(conversation, identity, share_password):
        raise Unauthorized("You don't have permission to view this conversation")


def ensure_can_write(conversation: Conversation, identity: Identity) -> None:
    if not is_member(conversation, identity):
        raise Unauthorized("Only participants can modify this conversation")


def ensure_creator(conversation: Conversation, identity: Identity) -> None:
    if conversation.created_by != identity.user_id:
        raise Unauthorized("Only the conversation creator can do this")
