from __future__ import annotations

import datetime as dt
from typing import List, Optional

from pydantic import BaseModel, Field

from parley.core.models import (
    Conversation,
    FeedbackCategory,
    FeedbackType,
    Message,
    MessageRole,
    MessageStatus,
    StopReason,
)


class ChatCompletionRequest(BaseModel):
    conversation_id: Optional[str] = None
    model_id: str = ""
    messages: List[str] = Field(default_factory=list)
    # None: use runtime.stream from config
    stream: Optional[bool] = None


class StopRequest(BaseModel):
    message_id: str = ""


class RegenerateRequest(BaseModel):
    message_id: str = ""
    stream: Optional[bool] = None


class FeedbackRequest(BaseModel):
    message_id: str = ""
    type: FeedbackType
    categories: List[FeedbackCategory] = Field(default_factory=list)
    comment: str = ""
    expected_answer: str = ""


class ChatResponse(BaseModel):
    conversation_id: str
    message_id: str
    content: str


class StopResponse(BaseModel):
    message_id: str
    content: str


class FeedbackResponse(BaseModel):
    feedback_id: str
    message_id: str


class ClearResponse(BaseModel):
    conversation_id: str
    deleted: int


class MessageOut(BaseModel):
    id: str
    conversation_id: str
    role: MessageRole
    status: MessageStatus
    content: str
    err_message: str = ""
    stop_reason: Optional[StopReason] = None
    parent_id: Optional[str] = None
    regenerate_count: int = 0
    is_active: bool = True
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    latency_ms: int = 0
    created_at: dt.datetime

    @classmethod
    def from_record(cls, m: Message) -> "MessageOut":
        return cls(
            id=m.id,
            conversation_id=m.conversation_id,
            role=m.role,
            status=m.status,
            content=m.content,
            err_message=m.err_message,
            stop_reason=m.stop_reason,
            parent_id=m.parent_id,
            regenerate_count=m.regenerate_count,
            is_active=m.is_active,
            prompt_tokens=m.prompt_tokens,
            completion_tokens=m.completion_tokens,
            total_tokens=m.total_tokens,
            latency_ms=m.latency_ms,
            created_at=m.created_at,
        )


class ConversationOut(BaseModel):
    id: str
    title: str
    model_id: str
    message_count: int
    tokens_used: int
    is_archived: bool = False
    is_pinned: bool = False
    created_at: dt.datetime
    updated_at: dt.datetime
    messages: Optional[List[MessageOut]] = None

    @classmethod
    def from_record(cls, c: Conversation, messages: Optional[List[Message]] = None) -> "ConversationOut":
        return cls(
            id=c.id,
            title=c.title,
            model_id=c.model_id,
            message_count=c.message_count,
            tokens_used=c.tokens_used,
            is_archived=c.is_archived,
            is_pinned=c.is_pinned,
            created_at=c.created_at,
            updated_at=c.updated_at,
            messages=[MessageOut.from_record(m) for m in messages] if messages is not None else None,
        )
