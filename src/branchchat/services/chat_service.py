from __future__ import annotations

"""Conversation and message orchestration behind the HTTP routers.

Access checks, admission and last-message bookkeeping live here so the
routers stay thin and the branch/fork services stay storage-focused.
"""

import logging
import time
import uuid
from typing import Callable, Dict, List, Optional

from ..core.branch_resolver import active_leaf, resolve_active_path
from ..domain.chat_models import (
    BranchCreate,
    Conversation,
    ConversationCreate,
    Message,
    MessageCreate,
    SharingPolicy,
    SharingUpdate,
)
from ..domain.errors import InvariantViolation, NotFound, RateLimited, Unauthorized
from ..infrastructure.chat_store import ChatStore, get_chat_store
from ..security.access import (
    ensure_can_view,
    ensure_can_write,
    ensure_creator,
    hash_share_password,
)
from ..security.auth import Identity
from ..security.rate_limit import RateLimiter, get_rate_limiter
from .admission import AdmissionController, cost_tier_for
from .branch_manager import BranchManager
from .conversation_forker import ConversationForker


_logger = logging.getLogger("branchchat.chat")

DEFAULT_TITLE = "New Chat"
HISTORY_LIMIT = 10


def _now_ms() -> int:
    return int(time.time() * 1000)


def fallback_title(first_message: str) -> str:
    text = first_message.strip()
    return text[:27] + "..." if len(text) > 30 else text


class ChatService:
    def __init__(
        self,
        store: Optional[ChatStore] = None,
        limiter: Optional[RateLimiter] = None,
        clock: Optional[Callable[[], int]] = None,
    ) -> None:
        self._store = store or get_chat_store()
        self._limiter = limiter or get_rate_limiter()
        self._clock = clock or _now_ms
        self.admission = AdmissionController(self._limiter)
        self.branches = BranchManager(self._store, clock=self._clock)
        self.forker = ConversationForker(self._store, clock=self._clock)

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------
    def _require_conversation(self, conversation_id: str) -> Conversation:
        conv = self._store.get_conversation(conversation_id)
        if not conv:
            raise NotFound("Conversation not found", code="CONVERSATION_NOT_FOUND")
        return conv

    def create_conversation(self, identity: Identity, body: ConversationCreate) -> Conversation:
        result = self._limiter.check(identity.subject_key, "conversationCreation")
        if not result.ok:
            raise RateLimited(
                "Too many conversations created recently",
                retry_after_ms=result.retry_after_ms,
                limit_name="conversationCreation",
            )
        conv = self._store.create_conversation(
            created_by=identity.user_id,
            title=(body.title or "").strip() or DEFAULT_TITLE,
            participants=body.participants,
            is_collaborative=body.is_collaborative or len(body.participants) > 0,
        )
        _logger.info("conversation_created", extra={"conversation_id": conv.conversation_id})
        return conv

    def list_conversations(self, identity: Identity) -> List[Conversation]:
        return self._store.list_conversations(identity.user_id)

    def get_conversation(
        self,
        conversation_id: str,
        identity: Identity,
        share_password: Optional[str] = None,
    ) -> Conversation:
        conv = self._require_conversation(conversation_id)
        ensure_can_view(conv, identity, share_password)
        return conv

    def rename_conversation(self, conversation_id: str, identity: Identity, title: str) -> Conversation:
        conv = self._require_conversation(conversation_id)
        ensure_can_write(conv, identity)
        return self._store.update_conversation(conversation_id, title=title.strip())

    def add_participant(self, conversation_id: str, identity: Identity, user_id: str) -> Conversation:
        with self._store.transaction():
            conv = self._require_conversation(conversation_id)
            ensure_can_write(conv, identity)
            if user_id in conv.participants:
                return conv
            return self._store.update_conversation(
                conversation_id,
                participants=[*conv.participants, user_id],
                is_collaborative=True,
            )

    def delete_conversation(self, conversation_id: str, identity: Identity) -> None:
        conv = self._require_conversation(conversation_id)
        ensure_creator(conv, identity)
        self._store.delete_conversation(conversation_id)
        _logger.info("conversation_deleted", extra={"conversation_id": conversation_id})

    def set_sharing(self, conversation_id: str, identity: Identity, body: SharingUpdate) -> Conversation:
        with self._store.transaction():
            conv = self._require_conversation(conversation_id)
            ensure_creator(conv, identity)
            if not body.is_public:
                return self._store.update_conversation(conversation_id, sharing=None)
            share_id = conv.sharing.share_id if conv.sharing else uuid.uuid4().hex[:12]
            sharing = SharingPolicy(
                is_public=True,
                share_id=share_id,
                requires_password=bool(body.password),
                password_hash=hash_share_password(body.password) if body.password else None,
                allow_anonymous=body.allow_anonymous,
                expires_at=body.expires_at,
            )
            return self._store.update_conversation(conversation_id, sharing=sharing)

    def clear_sharing(self, conversation_id: str, identity: Identity) -> Conversation:
        conv = self._require_conversation(conversation_id)
        ensure_creator(conv, identity)
        return self._store.update_conversation(conversation_id, sharing=None)

    def fork_conversation(
        self,
        conversation_id: str,
        identity: Identity,
        message_id: str,
        title: Optional[str] = None,
    ) -> Conversation:
        if identity.is_anonymous:
            raise Unauthorized("Sign in to branch conversations")
        return self.forker.fork(conversation_id, message_id, identity, title=title)

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------
    def list_messages(
        self,
        conversation_id: str,
        identity: Identity,
        share_password: Optional[str] = None,
    ) -> List[Message]:
        """The active path: what a reader of the conversation sees."""
        self.get_conversation(conversation_id, identity, share_password)
        return resolve_active_path(self._store.list_messages(conversation_id))

    def _require_message_in(self, conversation_id: str, message_id: str) -> Message:
        msg = self._store.get_message(message_id)
        if not msg or msg.conversation_id != conversation_id:
            raise NotFound("Message not found", code="MESSAGE_NOT_FOUND")
        return msg

    def _after_send(self, conv: Conversation, message: Message) -> None:
        fields: Dict[str, object] = {"last_message": message.content}
        if message.kind == "user" and conv.title == DEFAULT_TITLE and message.content.strip():
            fields["title"] = fallback_title(message.content)
        self._store.update_conversation(conv.conversation_id, **fields)

    def send_message(self, conversation_id: str, identity: Identity, body: MessageCreate) -> Message:
        # Everything that can reject the send runs before admission consumes quota
        with self._store.transaction():
            conv = self._require_conversation(conversation_id)
            ensure_can_write(conv, identity)
            if body.parent_message_id:
                self._require_message_in(conversation_id, body.parent_message_id)
                if body.branch_index is not None:
                    self.branches.check_branch_index(body.parent_message_id, body.branch_index)
            if body.kind == "user":
                self.admission.admit_send(identity, body.ai_model)
            author = "ai-assistant" if body.kind == "ai" else identity.user_id
            sender = body.sender_name or (identity.name if body.kind == "user" else None)
            if body.parent_message_id:
                message = self.branches.create_branch(
                    body.parent_message_id,
                    body.content,
                    author,
                    body.kind,
                    ai_model=body.ai_model,
                    sender_name=sender,
                    branch_index=body.branch_index,
                    conversation_id=conversation_id,
                )
            else:
                message = self.branches.append(
                    conversation_id,
                    body.content,
                    author,
                    body.kind,
                    ai_model=body.ai_model,
                    sender_name=sender,
                )
            self._after_send(conv, message)
        _logger.info(
            "message_sent",
            extra={"conversation_id": conversation_id, "message_id": message.message_id, "kind": message.kind},
        )
        return message

    def list_branches(
        self,
        conversation_id: str,
        parent_message_id: str,
        identity: Identity,
        share_password: Optional[str] = None,
    ) -> List[Message]:
        self.get_conversation(conversation_id, identity, share_password)
        self._require_message_in(conversation_id, parent_message_id)
        return self.branches.list_branches(parent_message_id)

    def create_branch(
        self,
        conversation_id: str,
        parent_message_id: str,
        identity: Identity,
        body: BranchCreate,
    ) -> Message:
        return self.send_message(
            conversation_id,
            identity,
            MessageCreate(
                content=body.content,
                kind=body.kind,
                parent_message_id=parent_message_id,
                ai_model=body.ai_model,
            ),
        )

    def switch_branch(
        self,
        conversation_id: str,
        parent_message_id: str,
        identity: Identity,
        branch_index: int,
    ) -> str:
        conv = self._require_conversation(conversation_id)
        ensure_can_write(conv, identity)
        self._require_message_in(conversation_id, parent_message_id)
        return self.branches.switch_branch(parent_message_id, branch_index)

    def delete_message(self, conversation_id: str, message_id: str, identity: Identity) -> None:
        conv = self._require_conversation(conversation_id)
        msg = self._require_message_in(conversation_id, message_id)
        if msg.author_id != identity.user_id and conv.created_by != identity.user_id:
            raise Unauthorized("Only the author or the conversation creator can delete this message")
        try:
            self._store.delete_message(message_id)
        except ValueError as exc:
            raise InvariantViolation(
                "Message has replies and cannot be deleted",
                code="MESSAGE_HAS_REPLIES",
                suggestion="Delete the replies first or branch the conversation instead",
            ) from exc

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------
    def resolve_stream_parent(
        self,
        conversation_id: str,
        identity: Identity,
        parent_message_id: Optional[str] = None,
        regenerate_message_id: Optional[str] = None,
    ) -> Optional[str]:
        """Validate a stream request and return the parent for the AI reply.

        ``None`` means the reply is appended below the active leaf.
        """
        conv = self._require_conversation(conversation_id)
        ensure_can_write(conv, identity)
        if regenerate_message_id:
            original = self._require_message_in(conversation_id, regenerate_message_id)
            if original.kind != "ai":
                raise InvariantViolation("Only AI replies can be regenerated", code="NOT_AN_AI_MESSAGE")
            return original.parent_message_id
        if parent_message_id:
            self._require_message_in(conversation_id, parent_message_id)
        return parent_message_id

    def admit_stream(
        self,
        conversation_id: str,
        identity: Identity,
        model: Optional[str],
        parent_message_id: Optional[str] = None,
        regenerate: bool = False,
        message_id: Optional[str] = None,
    ) -> None:
        """Charge admission for a model call unless an admitted send already paid for it.

        The first AI reply to a user message sent for the same cost tier is
        covered by that send. Regenerations, replies on a different tier and
        replies to anything else go through admission like a new send. A
        pre-created reply row named by ``message_id`` does not count as an
        existing reply.
        """
        if not regenerate:
            existing = self._store.get_message(message_id) if message_id else None
            if existing is not None and existing.parent_message_id:
                parent_message_id = existing.parent_message_id
            if parent_message_id:
                replying_to = self._store.get_message(parent_message_id)
            else:
                replying_to = active_leaf(self._store.list_messages(conversation_id))
            if (
                replying_to is not None
                and replying_to.kind == "user"
                and cost_tier_for(replying_to.ai_model) == cost_tier_for(model)
                and not any(
                    c.kind == "ai" and c.message_id != message_id
                    for c in self._store.list_children(replying_to.message_id)
                )
            ):
                return
        self.admission.admit_send(identity, model)

    def prompt_history(
        self,
        conversation_id: str,
        limit: int = HISTORY_LIMIT,
        upto_message_id: Optional[str] = None,
    ) -> List[Dict[str, str]]:
        """Last ``limit`` completed messages of the active path as chat roles.

        With ``upto_message_id`` the path is cut after that message, which is
        what a regenerated reply should have seen.
        """
        path = resolve_active_path(self._store.list_messages(conversation_id))
        if upto_message_id is not None:
            ids = [m.message_id for m in path]
            if upto_message_id in ids:
                path = path[: ids.index(upto_message_id) + 1]
        path = [m for m in path if m.status == "complete" and m.content and m.kind in ("user", "ai")]
        return [
            {"role": "assistant" if m.kind == "ai" else "user", "content": m.content}
            for m in path[-limit:]
        ]
