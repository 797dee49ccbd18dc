"""Streaming coordination for in-flight AI messages.

One ``StreamingCoordinator`` is the writer of record for one AI message:

    pending -> streaming -> complete | error

Tokens are accumulated in memory. The stored row is refreshed only when the
wall-clock throttle fires, and the terminal write is always built from the
in-memory accumulator. Every write carries a monotonically increasing
sequence number and the store ignores writes to rows that are already
terminal, so a late periodic flush can never overwrite the final text.

Callers must run at most one coordinator per message id. ``StreamRegistry``
rejects duplicates inside one process; nothing prevents two processes from
streaming into the same row, and rows orphaned by a crash are closed by the
stale-stream sweep.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
import uuid
from contextlib import suppress
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Dict, Iterable, List, Optional, Union

from ..core.state_machine import is_terminal, is_valid_transition
from ..domain.chat_models import Message
from ..domain.errors import ChatError, InvariantViolation, NotFound, UpstreamFailure
from ..infrastructure.chat_store import ChatStore, get_chat_store
from ..infrastructure.events import StreamBroadcaster, get_broadcaster
from ..observability.metrics import STALE_STREAMS_SWEPT, STREAM_WRITES
from .branch_manager import BranchManager
from .model_source import classify_upstream_error


_logger = logging.getLogger("branchchat.streaming")

AI_AUTHOR_ID = "ai-assistant"
STALE_FALLBACK_TEXT = "Message failed to complete"
ERROR_FALLBACK_TEXT = "Sorry, I encountered an error while processing your request: {reason}"


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class StreamingConfig:
    flush_interval_ms: int = 2000
    stale_after_ms: int = 60 * 60 * 1000
    sweep_interval_s: float = 3600.0
    sweeper_enabled: bool = True

    @staticmethod
    def from_env() -> "StreamingConfig":
        return StreamingConfig(
            flush_interval_ms=int(os.getenv("BRANCHCHAT_STREAM_FLUSH_MS", "2000")),
            stale_after_ms=int(os.getenv("BRANCHCHAT_STALE_STREAM_MS", str(60 * 60 * 1000))),
            sweep_interval_s=float(os.getenv("BRANCHCHAT_SWEEP_INTERVAL_S", "3600")),
            sweeper_enabled=(os.getenv("BRANCHCHAT_SWEEPER_ENABLED") or "1").lower() in ("1", "true", "yes"),
        )


TokenSource = Union[Iterable[str], AsyncIterator[str]]


async def aiter_tokens(source: TokenSource) -> AsyncIterator[str]:
    """Adapt a token source to async iteration.

    Blocking iterators (e.g. an HTTP response being read) are advanced in a
    worker thread so the event loop keeps serving other handlers.
    """
    if hasattr(source, "__aiter__"):
        try:
            async for token in source:  # type: ignore[union-attr]
                yield token
        finally:
            aclose = getattr(source, "aclose", None)
            if aclose is not None:
                await aclose()
        return
    it = iter(source)  # type: ignore[arg-type]
    sentinel = object()
    try:
        while True:
            token = await asyncio.to_thread(next, it, sentinel)
            if token is sentinel:
                return
            yield token  # type: ignore[misc]
    finally:
        # Releases the upstream HTTP response when the reader stops early
        close = getattr(it, "close", None)
        if close is not None:
            try:
                close()
            except ValueError:
                # Still being advanced by a cancelled worker thread
                _logger.debug("token_source_busy")


class StreamingCoordinator:
    def __init__(
        self,
        conversation_id: str,
        *,
        store: Optional[ChatStore] = None,
        model: Optional[str] = None,
        message_id: Optional[str] = None,
        parent_message_id: Optional[str] = None,
        author_id: str = AI_AUTHOR_ID,
        broadcaster: Optional[StreamBroadcaster] = None,
        config: Optional[StreamingConfig] = None,
        clock: Optional[Callable[[], int]] = None,
    ) -> None:
        self._store = store or get_chat_store()
        self._branches = BranchManager(self._store, clock=clock)
        self._broadcaster = broadcaster or get_broadcaster()
        self._config = config or StreamingConfig.from_env()
        self._clock = clock or _now_ms
        self.conversation_id = conversation_id
        self.model = model
        self.author_id = author_id
        self.parent_message_id = parent_message_id
        self._existing = False
        if message_id is not None:
            existing = self._store.get_message(message_id)
            if existing is not None:
                if existing.conversation_id != conversation_id or existing.kind != "ai":
                    raise InvariantViolation("Message cannot be streamed into", code="NOT_AN_AI_MESSAGE")
                self._existing = True
        if parent_message_id is not None:
            parent = self._store.get_message(parent_message_id)
            if parent is None or parent.conversation_id != conversation_id:
                raise NotFound("Parent message not found", code="MESSAGE_NOT_FOUND")
        self.message_id = message_id or uuid.uuid4().hex
        self.state = "pending"
        self.flush_count = 0
        self.error: Optional[UpstreamFailure] = None
        self._buffer: List[str] = []
        self._seq = 0
        self._last_flush_at = 0
        self._row_open = False

    @property
    def text(self) -> str:
        return "".join(self._buffer)

    def _transition(self, target: str) -> None:
        if not is_valid_transition(self.state, target):
            raise InvariantViolation(f"Invalid stream transition {self.state} -> {target}")
        self.state = target

    def _event(self, kind: str, **extra: Any) -> Dict[str, Any]:
        return {"type": kind, "message_id": self.message_id, **extra}

    # ------------------------------------------------------------------
    # Store writes
    # ------------------------------------------------------------------
    def _open_row(self) -> None:
        content = self.text
        if self._existing:
            self._store.begin_stream(self.message_id)
            self._seq += 1
            self._store.write_stream(self.message_id, content, "streaming", self._seq)
        elif self.parent_message_id:
            self._branches.create_branch(
                self.parent_message_id,
                content,
                self.author_id,
                "ai",
                ai_model=self.model,
                status="streaming",
                message_id=self.message_id,
                conversation_id=self.conversation_id,
            )
        else:
            self._branches.append(
                self.conversation_id,
                content,
                self.author_id,
                "ai",
                ai_model=self.model,
                status="streaming",
                message_id=self.message_id,
            )
        self._row_open = True
        STREAM_WRITES.labels(kind="open").inc()

    def _write(self, status: str) -> bool:
        self._seq += 1
        try:
            applied = self._store.write_stream(self.message_id, self.text, status, self._seq)
        except KeyError:
            _logger.warning("stream_row_missing", extra={"message_id": self.message_id})
            return False
        if not applied:
            _logger.warning(
                "stream_write_ignored",
                extra={"message_id": self.message_id, "status": status, "seq": self._seq},
            )
        return applied

    def _flush(self, now: int) -> None:
        if self._write("streaming"):
            self.flush_count += 1
            STREAM_WRITES.labels(kind="flush").inc()
        self._last_flush_at = now

    def _touch_conversation(self, text: str) -> None:
        try:
            self._store.update_conversation(self.conversation_id, last_message=text)
        except KeyError:
            _logger.warning("stream_conversation_missing", extra={"conversation_id": self.conversation_id})

    def _ensure_row(self) -> bool:
        """Open the row for a terminal write; ``False`` if it cannot exist anymore."""
        if self._row_open:
            return True
        try:
            self._open_row()
        except (ChatError, KeyError) as exc:
            _logger.warning(
                "stream_row_unavailable",
                extra={"message_id": self.message_id, "conversation_id": self.conversation_id, "error": str(exc)},
            )
            return False
        return True

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def on_token(self, token: str) -> None:
        if is_terminal(self.state) or not token:
            return
        self._buffer.append(token)
        now = self._clock()
        if self.state == "pending":
            self._open_row()
            self._transition("streaming")
            self._last_flush_at = now
        else:
            self._transition("streaming")
            if now - self._last_flush_at >= self._config.flush_interval_ms:
                self._flush(now)
        self._broadcaster.publish(self.message_id, self._event("delta", token=token))

    def finish(self) -> None:
        """Write the accumulated text with status ``complete``."""
        if is_terminal(self.state):
            return
        row = self._ensure_row()
        self._transition("complete")
        if row:
            if self._write("complete"):
                STREAM_WRITES.labels(kind="final").inc()
            self._touch_conversation(self.text)
        _logger.info(
            "stream_completed",
            extra={"message_id": self.message_id, "chars": len(self.text), "flushes": self.flush_count},
        )
        self._broadcaster.close(self.message_id, self._event("complete", full_text=self.text))

    def fail(self, failure: ChatError) -> None:
        """Record a user-visible fallback and status ``error``."""
        if is_terminal(self.state):
            return
        self.error = failure
        fallback = ERROR_FALLBACK_TEXT.format(reason=failure.message)
        partial = self.text
        self._buffer = [f"{partial}\n\n{fallback}" if partial else fallback]
        row = self._ensure_row()
        self._transition("error")
        if row and self._write("error"):
            STREAM_WRITES.labels(kind="error").inc()
        _logger.warning(
            "stream_failed",
            extra={"message_id": self.message_id, "code": failure.code, "details": failure.details},
        )
        self._broadcaster.close(self.message_id, self._event("error", **failure.to_payload()))

    def request_stop(self) -> None:
        """User-initiated stop: keep the partial text and complete the message."""
        _logger.info("stream_stop_requested", extra={"message_id": self.message_id})
        self.finish()

    async def run(self, tokens: TokenSource) -> AsyncIterator[Dict[str, Any]]:
        """Drive the stream, yielding ``start``/``delta`` and one terminal event.

        If the consumer goes away mid-stream the message is completed with the
        partial text rather than left ``streaming``. Store errors (the
        conversation or parent vanished) end the stream with their own code.
        """
        yield self._event("start", conversation_id=self.conversation_id, model=self.model)
        source = aiter_tokens(tokens)
        try:
            try:
                async for token in source:
                    if is_terminal(self.state):
                        break
                    self.on_token(token)
                    yield self._event("delta", token=token)
            except ChatError as exc:
                self.fail(exc)
            except Exception as exc:
                self.fail(classify_upstream_error(exc))
            else:
                if self.state == "pending":
                    self.fail(UpstreamFailure("No response from AI", code="STREAM_ERROR"))
                else:
                    self.finish()
        finally:
            await source.aclose()
            if not is_terminal(self.state):
                self.finish()
        if self.state == "error" and self.error is not None:
            yield self._event("error", **self.error.to_payload(), content=self.text)
        else:
            yield self._event("complete", full_text=self.text)


class StreamRegistry:
    """Coordinators currently running in this process, keyed by message id."""

    def __init__(self) -> None:
        self._active: Dict[str, StreamingCoordinator] = {}

    def register(self, coordinator: StreamingCoordinator) -> None:
        if coordinator.message_id in self._active:
            raise InvariantViolation("Message is already streaming", code="ALREADY_STREAMING")
        self._active[coordinator.message_id] = coordinator

    def unregister(self, message_id: str) -> None:
        self._active.pop(message_id, None)

    def get(self, message_id: str) -> Optional[StreamingCoordinator]:
        return self._active.get(message_id)

    def __len__(self) -> int:
        return len(self._active)


_registry: Optional[StreamRegistry] = None


def get_stream_registry() -> StreamRegistry:
    global _registry
    if _registry is None:
        _registry = StreamRegistry()
    return _registry


def stop_stream(
    message_id: str,
    store: Optional[ChatStore] = None,
    registry: Optional[StreamRegistry] = None,
    broadcaster: Optional[StreamBroadcaster] = None,
) -> Message:
    """Stop a stream and return the resulting message row."""
    store = store or get_chat_store()
    registry = registry or get_stream_registry()
    coordinator = registry.get(message_id)
    forced = False
    if coordinator is not None:
        coordinator.request_stop()
    else:
        try:
            # Stream owned by another process or already orphaned
            forced = store.force_terminal(message_id, "complete")
        except KeyError as exc:
            raise NotFound("Message not found", code="MESSAGE_NOT_FOUND") from exc
    msg = store.get_message(message_id)
    if msg is None:
        raise NotFound("Message not found", code="MESSAGE_NOT_FOUND")
    if forced:
        (broadcaster or get_broadcaster()).close(
            message_id, {"type": "complete", "message_id": message_id, "full_text": msg.content}
        )
    return msg


def sweep_stale_streams(
    store: ChatStore,
    now_ms: int,
    stale_after_ms: int,
    broadcaster: Optional[StreamBroadcaster] = None,
) -> List[str]:
    """Force rows stuck in ``streaming`` longer than ``stale_after_ms`` into ``error``."""
    broadcaster = broadcaster or get_broadcaster()
    cutoff = now_ms - stale_after_ms
    swept: List[str] = []
    for msg in store.list_streaming(older_than=cutoff):
        fallback = None if msg.content else STALE_FALLBACK_TEXT
        if store.force_terminal(msg.message_id, "error", content=fallback, older_than=cutoff):
            swept.append(msg.message_id)
            broadcaster.close(
                msg.message_id,
                {
                    "type": "error",
                    "message_id": msg.message_id,
                    "error": STALE_FALLBACK_TEXT,
                    "code": "STALE_STREAM",
                    "content": msg.content or STALE_FALLBACK_TEXT,
                },
            )
    if swept:
        STALE_STREAMS_SWEPT.inc(len(swept))
    _logger.info("stale_streams_swept", extra={"count": len(swept), "cutoff": cutoff})
    return swept


class StaleStreamSweeper:
    """Runs the stale-stream sweep on a fixed period inside the event loop."""

    def __init__(
        self,
        store_factory: Callable[[], ChatStore] = get_chat_store,
        config: Optional[StreamingConfig] = None,
        clock: Optional[Callable[[], int]] = None,
    ) -> None:
        self._store_factory = store_factory
        self._config = config or StreamingConfig.from_env()
        self._clock = clock or _now_ms
        self._task: Optional[asyncio.Task] = None

    def run_once(self) -> List[str]:
        return sweep_stale_streams(self._store_factory(), self._clock(), self._config.stale_after_ms)

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self._config.sweep_interval_s)
            try:
                self.run_once()
            except Exception:
                _logger.exception("stale_stream_sweep_failed")

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with suppress(asyncio.CancelledError):
            await self._task
        self._task = None
