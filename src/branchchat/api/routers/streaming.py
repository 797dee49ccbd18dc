from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterator, Dict, Optional

from fastapi import APIRouter, Depends, Header
from fastapi.responses import StreamingResponse

from ...core.state_machine import is_terminal
from ...domain.chat_models import Message, StreamRequest
from ...domain.errors import NotFound
from ...infrastructure.chat_store import get_chat_store
from ...infrastructure.events import get_broadcaster
from ...security.access import ensure_can_write
from ...security.auth import Identity, get_identity
from ...services.chat_service import ChatService
from ...services.model_source import build_prompt_messages, get_model_source, ModelSourceConfig
from ...services.streaming import StreamingCoordinator, get_stream_registry, stop_stream
from .conversations import get_chat_service


router = APIRouter(prefix="/conversations/{conversation_id}", tags=["streaming"])

_logger = logging.getLogger("branchchat.streaming")

SSE_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def _sse(payload: Dict[str, Any]) -> str:
    return f"data: {json.dumps(payload)}\n\n"


@router.post("/ai/stream")
async def stream_ai_reply(
    conversation_id: str,
    req: StreamRequest,
    identity: Identity = Depends(get_identity),
    service: ChatService = Depends(get_chat_service),
) -> StreamingResponse:
    # Every rejection happens here, before the event stream starts
    parent_id = service.resolve_stream_parent(
        conversation_id,
        identity,
        parent_message_id=req.parent_message_id,
        regenerate_message_id=req.regenerate_message_id,
    )
    model = req.model or ModelSourceConfig.from_env().default_model
    registry = get_stream_registry()
    coordinator = StreamingCoordinator(
        conversation_id,
        model=model,
        message_id=req.message_id,
        parent_message_id=parent_id,
    )
    registry.register(coordinator)
    try:
        service.admit_stream(
            conversation_id,
            identity,
            model,
            parent_message_id=parent_id,
            regenerate=bool(req.regenerate_message_id),
            message_id=req.message_id,
        )
    except Exception:
        registry.unregister(coordinator.message_id)
        raise

    history = service.prompt_history(conversation_id, upto_message_id=parent_id if req.regenerate_message_id else None)
    if history and history[-1] == {"role": "user", "content": req.prompt}:
        history = history[:-1]
    tokens = get_model_source().stream(build_prompt_messages(history, req.prompt), model)
    _logger.info(
        "stream_started",
        extra={"conversation_id": conversation_id, "message_id": coordinator.message_id, "model": model},
    )

    async def event_stream() -> AsyncIterator[str]:
        try:
            async for event in coordinator.run(tokens):
                yield _sse(event)
        finally:
            registry.unregister(coordinator.message_id)

    return StreamingResponse(event_stream(), media_type="text/event-stream", headers=SSE_HEADERS)


@router.get("/messages/{message_id}/events")
async def follow_message(
    conversation_id: str,
    message_id: str,
    x_share_password: Optional[str] = Header(default=None),
    identity: Identity = Depends(get_identity),
    service: ChatService = Depends(get_chat_service),
) -> StreamingResponse:
    """Push updates for one message to a viewer.

    The first event is a snapshot of the stored row; live deltas follow until
    the terminal event, whose ``full_text`` supersedes anything accumulated.
    """
    service.get_conversation(conversation_id, identity, x_share_password)
    store = get_chat_store()
    broadcaster = get_broadcaster()
    queue = broadcaster.subscribe(message_id)
    msg = store.get_message(message_id)
    if not msg or msg.conversation_id != conversation_id:
        broadcaster.unsubscribe(message_id, queue)
        raise NotFound("Message not found", code="MESSAGE_NOT_FOUND")

    async def event_stream() -> AsyncIterator[str]:
        try:
            yield _sse({"type": "snapshot", "message_id": message_id, "status": msg.status, "content": msg.content})
            if is_terminal(msg.status):
                return
            while True:
                event = await queue.get()
                if event is None:
                    return
                yield _sse(event)
        finally:
            broadcaster.unsubscribe(message_id, queue)

    return StreamingResponse(event_stream(), media_type="text/event-stream", headers=SSE_HEADERS)


@router.post("/messages/{message_id}/stop", response_model=Message)
def stop_message_stream(
    conversation_id: str,
    message_id: str,
    identity: Identity = Depends(get_identity),
    service: ChatService = Depends(get_chat_service),
) -> Message:
    conv = service.get_conversation(conversation_id, identity)
    ensure_can_write(conv, identity)
    msg = get_chat_store().get_message(message_id)
    if not msg or msg.conversation_id != conversation_id:
        raise NotFound("Message not found", code="MESSAGE_NOT_FOUND")
    return stop_stream(message_id)
