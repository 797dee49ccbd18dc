from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, Header, Response, status

from ...domain.chat_models import (
    Conversation,
    ConversationCreate,
    ConversationFork,
    ConversationRename,
    ParticipantAdd,
    SharingUpdate,
)
from ...security.auth import Identity, get_identity
from ...services.chat_service import ChatService


router = APIRouter(prefix="/conversations", tags=["conversations"])


def get_chat_service() -> ChatService:
    return ChatService()


def redact(conv: Conversation) -> Conversation:
    # Password hashes never leave the service
    if conv.sharing is None or conv.sharing.password_hash is None:
        return conv
    return conv.model_copy(update={"sharing": conv.sharing.model_copy(update={"password_hash": None})})


@router.post("", response_model=Conversation, status_code=status.HTTP_201_CREATED)
def create_conversation(
    req: ConversationCreate,
    identity: Identity = Depends(get_identity),
    service: ChatService = Depends(get_chat_service),
) -> Conversation:
    return redact(service.create_conversation(identity, req))


@router.get("", response_model=List[Conversation])
def list_conversations(
    identity: Identity = Depends(get_identity),
    service: ChatService = Depends(get_chat_service),
) -> List[Conversation]:
    return [redact(c) for c in service.list_conversations(identity)]


@router.get("/{conversation_id}", response_model=Conversation)
def get_conversation(
    conversation_id: str,
    x_share_password: Optional[str] = Header(default=None),
    identity: Identity = Depends(get_identity),
    service: ChatService = Depends(get_chat_service),
) -> Conversation:
    return redact(service.get_conversation(conversation_id, identity, x_share_password))


@router.patch("/{conversation_id}", response_model=Conversation)
def rename_conversation(
    conversation_id: str,
    req: ConversationRename,
    identity: Identity = Depends(get_identity),
    service: ChatService = Depends(get_chat_service),
) -> Conversation:
    return redact(service.rename_conversation(conversation_id, identity, req.title))


@router.delete("/{conversation_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_conversation(
    conversation_id: str,
    identity: Identity = Depends(get_identity),
    service: ChatService = Depends(get_chat_service),
) -> Response:
    service.delete_conversation(conversation_id, identity)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{conversation_id}/participants", response_model=Conversation)
def add_participant(
    conversation_id: str,
    req: ParticipantAdd,
    identity: Identity = Depends(get_identity),
    service: ChatService = Depends(get_chat_service),
) -> Conversation:
    return redact(service.add_participant(conversation_id, identity, req.user_id))


@router.put("/{conversation_id}/sharing", response_model=Conversation)
def set_sharing(
    conversation_id: str,
    req: SharingUpdate,
    identity: Identity = Depends(get_identity),
    service: ChatService = Depends(get_chat_service),
) -> Conversation:
    return redact(service.set_sharing(conversation_id, identity, req))


@router.delete("/{conversation_id}/sharing", response_model=Conversation)
def clear_sharing(
    conversation_id: str,
    identity: Identity = Depends(get_identity),
    service: ChatService = Depends(get_chat_service),
) -> Conversation:
    return redact(service.clear_sharing(conversation_id, identity))


@router.post("/{conversation_id}/fork", response_model=Conversation, status_code=status.HTTP_201_CREATED)
def fork_conversation(
    conversation_id: str,
    req: ConversationFork,
    identity: Identity = Depends(get_identity),
    service: ChatService = Depends(get_chat_service),
) -> Conversation:
    return redact(service.fork_conversation(conversation_id, identity, req.message_id, req.title))
