from __future__ import annotations

"""Branch creation and activation.

Sibling activation flags are always rewritten inside a single store
transaction: readers see either the previous active sibling or the new one,
never zero or two.
"""

import logging
import time
import uuid
from typing import Callable, List, Optional

from ..core.branch_resolver import active_leaf
from ..domain.chat_models import Message
from ..domain.errors import InvariantViolation, NotFound
from ..infrastructure.chat_store import ChatStore, get_chat_store


_logger = logging.getLogger("branchchat.branches")


def _now_ms() -> int:
    return int(time.time() * 1000)


class BranchManager:
    def __init__(self, store: Optional[ChatStore] = None, clock: Optional[Callable[[], int]] = None) -> None:
        self._store = store or get_chat_store()
        self._clock = clock or _now_ms

    def _require_message(self, message_id: str) -> Message:
        msg = self._store.get_message(message_id)
        if not msg:
            raise NotFound("Parent message not found", code="MESSAGE_NOT_FOUND")
        return msg

    def list_branches(self, parent_message_id: str) -> List[Message]:
        self._require_message(parent_message_id)
        return self._store.list_children(parent_message_id)

    def check_branch_index(self, parent_message_id: str, branch_index: int) -> None:
        taken = {s.branch_index for s in self._store.list_children(parent_message_id)}
        if branch_index in taken:
            raise InvariantViolation(
                f"Branch index {branch_index} already exists under this message",
                code="BRANCH_INDEX_TAKEN",
            )

    def create_branch(
        self,
        parent_message_id: str,
        content: str,
        author_id: str,
        kind: str = "user",
        *,
        ai_model: Optional[str] = None,
        sender_name: Optional[str] = None,
        status: str = "complete",
        message_id: Optional[str] = None,
        branch_index: Optional[int] = None,
        conversation_id: Optional[str] = None,
    ) -> Message:
        """Insert a new active child under ``parent_message_id``.

        Without an explicit ``branch_index`` the next free index
        (``1 + max(existing)``) is used. Every existing sibling is deactivated
        in the same transaction. When ``conversation_id`` is given the parent
        must belong to that conversation.
        """
        with self._store.transaction():
            parent = self._require_message(parent_message_id)
            if conversation_id is not None and parent.conversation_id != conversation_id:
                raise NotFound("Parent message not found", code="MESSAGE_NOT_FOUND")
            if branch_index is None:
                siblings = self._store.list_children(parent_message_id)
                branch_index = 1 + max((s.branch_index for s in siblings), default=-1)
            else:
                self.check_branch_index(parent_message_id, branch_index)
            now = self._clock()
            message = Message(
                message_id=message_id or uuid.uuid4().hex,
                conversation_id=parent.conversation_id,
                author_id=author_id,
                content=content,
                kind=kind,
                status=status,
                created_at=now,
                updated_at=now,
                parent_message_id=parent_message_id,
                branch_index=branch_index,
                is_active_branch=True,
                ai_model=ai_model,
                sender_name=sender_name,
            )
            self._store.set_active_branch(parent_message_id, None)
            created = self._store.insert_message(message)
        _logger.info(
            "branch_created",
            extra={"parent_message_id": parent_message_id, "branch_index": branch_index, "message_id": created.message_id},
        )
        return created

    def switch_branch(self, parent_message_id: str, target_branch_index: int) -> str:
        with self._store.transaction():
            self._require_message(parent_message_id)
            siblings = self._store.list_children(parent_message_id)
            target = next((s for s in siblings if s.branch_index == target_branch_index), None)
            if target is None:
                # Nothing has been touched yet, the previous activation stands
                raise NotFound("Branch not found", code="BRANCH_NOT_FOUND")
            self._store.set_active_branch(parent_message_id, target.message_id)
        _logger.info(
            "branch_switched",
            extra={"parent_message_id": parent_message_id, "branch_index": target_branch_index},
        )
        return target.message_id

    def append(
        self,
        conversation_id: str,
        content: str,
        author_id: str,
        kind: str = "user",
        *,
        ai_model: Optional[str] = None,
        sender_name: Optional[str] = None,
        status: str = "complete",
        message_id: Optional[str] = None,
    ) -> Message:
        """Append a new leaf below the current end of the active path."""
        with self._store.transaction():
            leaf = active_leaf(self._store.list_messages(conversation_id))
            if leaf is not None:
                return self.create_branch(
                    leaf.message_id,
                    content,
                    author_id,
                    kind,
                    ai_model=ai_model,
                    sender_name=sender_name,
                    status=status,
                    message_id=message_id,
                )
            now = self._clock()
            root = Message(
                message_id=message_id or uuid.uuid4().hex,
                conversation_id=conversation_id,
                author_id=author_id,
                content=content,
                kind=kind,
                status=status,
                created_at=now,
                updated_at=now,
                ai_model=ai_model,
                sender_name=sender_name,
            )
            try:
                return self._store.insert_message(root)
            except KeyError as exc:
                raise NotFound("Conversation not found", code="CONVERSATION_NOT_FOUND") from exc
