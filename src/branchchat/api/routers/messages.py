from __future__ import annotations

from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, Header, Response, status

from ...domain.chat_models import BranchCreate, BranchSwitch, Message, MessageCreate
from ...security.auth import Identity, get_identity
from ...services.chat_service import ChatService
from .conversations import get_chat_service


router = APIRouter(prefix="/conversations/{conversation_id}/messages", tags=["messages"])


@router.get("", response_model=List[Message])
def list_messages(
    conversation_id: str,
    x_share_password: Optional[str] = Header(default=None),
    identity: Identity = Depends(get_identity),
    service: ChatService = Depends(get_chat_service),
) -> List[Message]:
    return service.list_messages(conversation_id, identity, x_share_password)


@router.post("", response_model=Message, status_code=status.HTTP_201_CREATED)
def send_message(
    conversation_id: str,
    req: MessageCreate,
    identity: Identity = Depends(get_identity),
    service: ChatService = Depends(get_chat_service),
) -> Message:
    return service.send_message(conversation_id, identity, req)


@router.delete("/{message_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_message(
    conversation_id: str,
    message_id: str,
    identity: Identity = Depends(get_identity),
    service: ChatService = Depends(get_chat_service),
) -> Response:
    service.delete_message(conversation_id, message_id, identity)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/{message_id}/branches", response_model=List[Message])
def list_branches(
    conversation_id: str,
    message_id: str,
    x_share_password: Optional[str] = Header(default=None),
    identity: Identity = Depends(get_identity),
    service: ChatService = Depends(get_chat_service),
) -> List[Message]:
    return service.list_branches(conversation_id, message_id, identity, x_share_password)


@router.post("/{message_id}/branches", response_model=Message, status_code=status.HTTP_201_CREATED)
def create_branch(
    conversation_id: str,
    message_id: str,
    req: BranchCreate,
    identity: Identity = Depends(get_identity),
    service: ChatService = Depends(get_chat_service),
) -> Message:
    return service.create_branch(conversation_id, message_id, identity, req)


@router.put("/{message_id}/branches/active")
def switch_branch(
    conversation_id: str,
    message_id: str,
    req: BranchSwitch,
    identity: Identity = Depends(get_identity),
    service: ChatService = Depends(get_chat_service),
) -> Dict[str, object]:
    active_id = service.switch_branch(conversation_id, message_id, identity, req.branch_index)
    return {"parent_message_id": message_id, "branch_index": req.branch_index, "message_id": active_id}
