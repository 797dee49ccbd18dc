from __future__ import annotations

from dataclasses import dataclass, field
from threading import RLock
from typing import Any, Callable, ContextManager, Dict, List, Optional, Protocol
import time
import uuid

from ..domain.chat_models import Conversation, Message, SharingPolicy


class ChatStore(Protocol):
    def transaction(self) -> ContextManager[Any]: ...

    def create_conversation(
        self,
        created_by: str,
        title: str,
        participants: Optional[List[str]] = None,
        is_collaborative: bool = False,
        parent_conversation_id: Optional[str] = None,
        branched_at_message_id: Optional[str] = None,
    ) -> Conversation: ...

    def get_conversation(self, conversation_id: str) -> Optional[Conversation]: ...

    def list_conversations(self, user_id: str) -> List[Conversation]: ...

    def update_conversation(self, conversation_id: str, **fields: Any) -> Conversation: ...

    def delete_conversation(self, conversation_id: str) -> bool: ...

    def count_forks(self, parent_conversation_id: str) -> int: ...

    def insert_message(self, message: Message) -> Message: ...

    def get_message(self, message_id: str) -> Optional[Message]: ...

    def list_messages(self, conversation_id: str) -> List[Message]: ...

    def list_children(self, parent_message_id: str) -> List[Message]: ...

    def set_active_branch(self, parent_message_id: str, active_message_id: Optional[str]) -> None: ...

    def delete_message(self, message_id: str) -> bool: ...

    def begin_stream(self, message_id: str) -> Message: ...

    def write_stream(self, message_id: str, content: str, status: str, seq: int) -> bool: ...

    def force_terminal(
        self,
        message_id: str,
        status: str,
        content: Optional[str] = None,
        older_than: Optional[int] = None,
    ) -> bool: ...

    def list_streaming(self, older_than: Optional[int] = None) -> List[Message]: ...


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class _Conversation:
    conversation_id: str
    title: str
    participants: List[str]
    created_by: str
    created_at: int
    updated_at: int
    is_collaborative: bool = False
    last_message: Optional[str] = None
    parent_conversation_id: Optional[str] = None
    branched_at_message_id: Optional[str] = None
    branched_by: Optional[str] = None
    branched_at: Optional[int] = None
    sharing: Optional[SharingPolicy] = None


@dataclass
class _Message:
    message_id: str
    conversation_id: str
    author_id: str
    content: str
    kind: str
    status: str
    created_at: int
    updated_at: int
    parent_message_id: Optional[str] = None
    branch_index: int = 0
    is_active_branch: bool = True
    ai_model: Optional[str] = None
    sender_name: Optional[str] = None


_CONVERSATION_FIELDS = frozenset(
    {
        "title",
        "participants",
        "is_collaborative",
        "last_message",
        "branched_by",
        "branched_at",
        "sharing",
    }
)


class InMemoryChatStore:
    """Process-local store.

    A single re-entrant lock guards every read and write, so a multi-row
    mutation performed inside ``transaction()`` is never observed half-applied.
    """

    def __init__(self, clock: Optional[Callable[[], int]] = None) -> None:
        self._conversations: Dict[str, _Conversation] = {}
        self._messages: Dict[str, _Message] = {}
        self._by_conversation: Dict[str, List[str]] = {}
        self._children: Dict[str, List[str]] = {}
        self._stream_seq: Dict[str, int] = {}
        self._lock = RLock()
        self._clock = clock or _now_ms

    def _conversation_model(self, conv: _Conversation) -> Conversation:
        data = dict(conv.__dict__)
        data["participants"] = list(conv.participants)
        return Conversation(**data)

    def _message_model(self, message: _Message) -> Message:
        return Message(**message.__dict__)

    def transaction(self) -> RLock:
        return self._lock

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------
    def create_conversation(
        self,
        created_by: str,
        title: str,
        participants: Optional[List[str]] = None,
        is_collaborative: bool = False,
        parent_conversation_id: Optional[str] = None,
        branched_at_message_id: Optional[str] = None,
    ) -> Conversation:
        with self._lock:
            cid = uuid.uuid4().hex
            now = self._clock()
            members: List[str] = []
            for member in [created_by, *(participants or [])]:
                if member and member not in members:
                    members.append(member)
            conv = _Conversation(
                conversation_id=cid,
                title=title,
                participants=members,
                created_by=created_by,
                created_at=now,
                updated_at=now,
                is_collaborative=is_collaborative,
                parent_conversation_id=parent_conversation_id,
                branched_at_message_id=branched_at_message_id,
            )
            self._conversations[cid] = conv
            self._by_conversation[cid] = []
            return self._conversation_model(conv)

    def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        with self._lock:
            conv = self._conversations.get(conversation_id)
            if not conv:
                return None
            return self._conversation_model(conv)

    def list_conversations(self, user_id: str) -> List[Conversation]:
        with self._lock:
            out = [
                self._conversation_model(conv)
                for conv in self._conversations.values()
                if user_id in conv.participants
            ]
            # Newest first
            return sorted(out, key=lambda c: c.updated_at, reverse=True)

    def update_conversation(self, conversation_id: str, **fields: Any) -> Conversation:
        with self._lock:
            conv = self._conversations.get(conversation_id)
            if not conv:
                raise KeyError("Conversation not found")
            unknown = set(fields) - _CONVERSATION_FIELDS
            if unknown:
                raise ValueError(f"Unsupported conversation fields: {sorted(unknown)}")
            for name, value in fields.items():
                setattr(conv, name, list(value) if name == "participants" else value)
            conv.updated_at = max(conv.updated_at, self._clock())
            return self._conversation_model(conv)

    def delete_conversation(self, conversation_id: str) -> bool:
        with self._lock:
            if conversation_id not in self._conversations:
                return False
            for mid in self._by_conversation.pop(conversation_id, []):
                msg = self._messages.pop(mid, None)
                self._children.pop(mid, None)
                self._stream_seq.pop(mid, None)
                if msg and msg.parent_message_id:
                    siblings = self._children.get(msg.parent_message_id)
                    if siblings and mid in siblings:
                        siblings.remove(mid)
            del self._conversations[conversation_id]
            return True

    def count_forks(self, parent_conversation_id: str) -> int:
        with self._lock:
            return sum(
                1
                for conv in self._conversations.values()
                if conv.parent_conversation_id == parent_conversation_id
            )

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------
    def insert_message(self, message: Message) -> Message:
        with self._lock:
            if message.conversation_id not in self._conversations:
                raise KeyError("Conversation not found")
            if message.message_id in self._messages:
                raise ValueError("Duplicate message id")
            parent_id = message.parent_message_id
            if parent_id is not None:
                parent = self._messages.get(parent_id)
                if not parent or parent.conversation_id != message.conversation_id:
                    raise KeyError("Parent message not found")
            row = _Message(**message.model_dump())
            self._messages[row.message_id] = row
            self._by_conversation[row.conversation_id].append(row.message_id)
            if parent_id is not None:
                self._children.setdefault(parent_id, []).append(row.message_id)
            if row.status == "streaming":
                self._stream_seq[row.message_id] = 0
            return self._message_model(row)

    def get_message(self, message_id: str) -> Optional[Message]:
        with self._lock:
            msg = self._messages.get(message_id)
            if not msg:
                return None
            return self._message_model(msg)

    def list_messages(self, conversation_id: str) -> List[Message]:
        with self._lock:
            out: List[Message] = []
            for mid in self._by_conversation.get(conversation_id, []):
                msg = self._messages.get(mid)
                if msg:
                    out.append(self._message_model(msg))
            return out

    def list_children(self, parent_message_id: str) -> List[Message]:
        with self._lock:
            out = [
                self._message_model(self._messages[mid])
                for mid in self._children.get(parent_message_id, [])
                if mid in self._messages
            ]
            return sorted(out, key=lambda m: m.branch_index)

    def set_active_branch(self, parent_message_id: str, active_message_id: Optional[str]) -> None:
        with self._lock:
            siblings = self._children.get(parent_message_id, [])
            if active_message_id is not None and active_message_id not in siblings:
                raise KeyError("Branch not found")
            for mid in siblings:
                self._messages[mid].is_active_branch = mid == active_message_id

    def delete_message(self, message_id: str) -> bool:
        with self._lock:
            msg = self._messages.get(message_id)
            if not msg:
                return False
            if self._children.get(message_id):
                raise ValueError("Message has replies")
            del self._messages[message_id]
            self._children.pop(message_id, None)
            self._stream_seq.pop(message_id, None)
            ids = self._by_conversation.get(msg.conversation_id, [])
            if message_id in ids:
                ids.remove(message_id)
            if msg.parent_message_id:
                siblings = self._children.get(msg.parent_message_id, [])
                if message_id in siblings:
                    siblings.remove(message_id)
            return True

    # ------------------------------------------------------------------
    # Streaming writes
    # ------------------------------------------------------------------
    def begin_stream(self, message_id: str) -> Message:
        with self._lock:
            msg = self._messages.get(message_id)
            if not msg:
                raise KeyError("Message not found")
            msg.status = "streaming"
            msg.content = ""
            msg.updated_at = max(msg.updated_at, self._clock())
            self._stream_seq[message_id] = 0
            return self._message_model(msg)

    def write_stream(self, message_id: str, content: str, status: str, seq: int) -> bool:
        """Apply a coordinator flush.

        Rows that already reached a terminal status are authoritative and the
        write is ignored, as is any flush whose sequence number is not newer
        than the last applied one.
        """
        with self._lock:
            msg = self._messages.get(message_id)
            if not msg:
                raise KeyError("Message not found")
            if msg.status != "streaming":
                return False
            if seq <= self._stream_seq.get(message_id, -1):
                return False
            msg.content = content
            msg.status = status
            msg.updated_at = max(msg.updated_at, self._clock())
            self._stream_seq[message_id] = seq
            return True

    def force_terminal(
        self,
        message_id: str,
        status: str,
        content: Optional[str] = None,
        older_than: Optional[int] = None,
    ) -> bool:
        with self._lock:
            msg = self._messages.get(message_id)
            if not msg:
                raise KeyError("Message not found")
            if msg.status != "streaming":
                return False
            if older_than is not None and msg.updated_at >= older_than:
                return False
            if content is not None:
                msg.content = content
            msg.status = status
            msg.updated_at = max(msg.updated_at, self._clock())
            return True

    def list_streaming(self, older_than: Optional[int] = None) -> List[Message]:
        with self._lock:
            return [
                self._message_model(msg)
                for msg in self._messages.values()
                if msg.status == "streaming" and (older_than is None or msg.updated_at < older_than)
            ]


_store: ChatStore | None = None


def get_chat_store() -> ChatStore:
    global _store
    if _store is None:
        _store = InMemoryChatStore()
    return _store
