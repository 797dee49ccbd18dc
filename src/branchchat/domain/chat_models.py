from __future__ import annotations

from typing import List, Optional, Literal
from pydantic import BaseModel, Field


MessageKind = Literal["user", "ai", "system"]
MessageStatus = Literal["pending", "streaming", "complete", "error"]
UserType = Literal["anonymous", "free", "paid"]


class SharingPolicy(BaseModel):
    is_public: bool = False
    share_id: str
    requires_password: bool = False
    password_hash: Optional[str] = None
    allow_anonymous: bool = False
    expires_at: Optional[int] = None


class Conversation(BaseModel):
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


class Message(BaseModel):
    message_id: str
    conversation_id: str
    author_id: str
    content: str
    kind: MessageKind
    status: MessageStatus = "complete"
    created_at: int
    updated_at: int
    parent_message_id: Optional[str] = None
    branch_index: int = 0
    is_active_branch: bool = True
    ai_model: Optional[str] = None
    sender_name: Optional[str] = None


class ConversationCreate(BaseModel):
    title: Optional[str] = None
    participants: List[str] = []
    is_collaborative: bool = False


class ConversationRename(BaseModel):
    title: str = Field(min_length=1)


class ParticipantAdd(BaseModel):
    user_id: str = Field(min_length=1)


class SharingUpdate(BaseModel):
    is_public: bool = True
    allow_anonymous: bool = False
    password: Optional[str] = None
    expires_at: Optional[int] = None


class ConversationFork(BaseModel):
    message_id: str
    title: Optional[str] = None


class MessageCreate(BaseModel):
    content: str = Field(min_length=1)
    kind: MessageKind = "user"
    parent_message_id: Optional[str] = None
    branch_index: Optional[int] = Field(default=None, ge=0)
    ai_model: Optional[str] = None
    sender_name: Optional[str] = None


class BranchCreate(BaseModel):
    content: str = Field(min_length=1)
    kind: MessageKind = "user"
    ai_model: Optional[str] = None


class BranchSwitch(BaseModel):
    branch_index: int = Field(ge=0)


class StreamRequest(BaseModel):
    prompt: str = Field(min_length=1)
    model: Optional[str] = None
    message_id: Optional[str] = None
    parent_message_id: Optional[str] = None
    regenerate_message_id: Optional[str] = None


class AdmissionCheck(BaseModel):
    limit_name: str
    consume: bool = False


class AdmissionResult(BaseModel):
    ok: bool
    retry_after_ms: int = 0


class TierStatus(BaseModel):
    limit_name: str
    ok: bool
    retry_after_ms: int = 0
    remaining: int
    total: int


class AdmissionStatus(BaseModel):
    can_send: bool
    user_type: UserType
    user: Optional[TierStatus] = None
    model_daily: Optional[TierStatus] = None
    model_monthly: Optional[TierStatus] = None
