from __future__ import annotations

import logging
import time
import uuid
from typing import Callable, Optional

from ..core.branch_resolver import resolve_active_path
from ..domain.chat_models import Conversation, Message
from ..domain.errors import NotFound
from ..infrastructure.chat_store import ChatStore, get_chat_store
from ..security.access import ensure_can_view
from ..security.auth import Identity


_logger = logging.getLogger("branchchat.forks")


def _now_ms() -> int:
    return int(time.time() * 1000)


def fork_title(parent_title: str, existing_forks: int) -> str:
    # The parent is implicitly v1, so the first fork is v2
    return f"{parent_title} v{existing_forks + 2}"


class ConversationForker:
    """Clone the active history of a conversation up to a cut message."""

    def __init__(self, store: Optional[ChatStore] = None, clock: Optional[Callable[[], int]] = None) -> None:
        self._store = store or get_chat_store()
        self._clock = clock or _now_ms

    def fork(
        self,
        source_conversation_id: str,
        cut_message_id: str,
        identity: Identity,
        title: Optional[str] = None,
    ) -> Conversation:
        source = self._store.get_conversation(source_conversation_id)
        if not source:
            raise NotFound("Conversation not found", code="CONVERSATION_NOT_FOUND")
        ensure_can_view(source, identity)

        with self._store.transaction():
            cut = self._store.get_message(cut_message_id)
            if not cut or cut.conversation_id != source_conversation_id:
                raise NotFound("Message not found in this conversation", code="MESSAGE_NOT_FOUND")
            # A historical snapshot: everything on the active path at or before the cut
            snapshot = [
                m for m in resolve_active_path(self._store.list_messages(source_conversation_id))
                if m.created_at <= cut.created_at
            ]
            new_title = title or fork_title(source.title, self._store.count_forks(source_conversation_id))
            fork = self._store.create_conversation(
                created_by=identity.user_id,
                title=new_title,
                parent_conversation_id=source_conversation_id,
                branched_at_message_id=cut_message_id,
            )
            for original in snapshot:
                self._store.insert_message(
                    Message(
                        message_id=uuid.uuid4().hex,
                        conversation_id=fork.conversation_id,
                        author_id=original.author_id,
                        content=original.content,
                        kind=original.kind,
                        status="complete" if original.status == "streaming" else original.status,
                        created_at=original.created_at,
                        updated_at=original.updated_at,
                        parent_message_id=None,
                        branch_index=0,
                        is_active_branch=False,
                        ai_model=original.ai_model,
                        sender_name=original.sender_name,
                    )
                )
            fork = self._store.update_conversation(
                fork.conversation_id,
                branched_by=identity.user_id,
                branched_at=self._clock(),
                last_message=snapshot[-1].content if snapshot else None,
                sharing=None,
            )
        _logger.info(
            "conversation_forked",
            extra={
                "source_conversation_id": source_conversation_id,
                "conversation_id": fork.conversation_id,
                "copied": len(snapshot),
            },
        )
        return fork
