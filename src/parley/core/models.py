# src/parley/core/models.py
from __future__ import annotations

import datetime as dt
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4

DEFAULT_CONVERSATION_TITLE = "New Conversation"
DEFAULT_CONTEXT_LENGTH = 4096


class MessageRole(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class MessageStatus(str, Enum):
    PENDING = "pending"
    STREAMING = "streaming"
    COMPLETED = "completed"
    STOPPED = "stopped"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (MessageStatus.COMPLETED, MessageStatus.STOPPED, MessageStatus.FAILED)


class StopReason(str, Enum):
    USER = "user"
    MAX_TOKENS = "max_tokens"
    TIMEOUT = "timeout"
    ERROR = "error"
    END_TURN = "end_turn"
    TOOL_CALLS = "tool_calls"
    STOP_SEQUENCE = "stop_sequence"
    CONTENT_FILTER = "content_filter"


class FeedbackType(str, Enum):
    LIKE = "like"
    DISLIKE = "dislike"


class FeedbackCategory(str, Enum):
    INACCURATE = "inaccurate"
    INCOMPLETE = "incomplete"
    UNSAFE = "unsafe"
    NOT_HELPFUL = "not_helpful"
    TOO_VERBOSE = "too_verbose"
    POOR_FORMAT = "poor_format"
    OTHER = "other"


class ProviderType(str, Enum):
    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    LOCAL = "local"  # Ollama and other OpenAI-compatible local servers
    CUSTOM = "custom"  # any OpenAI-compatible endpoint
    ECHO = "echo"


def _new_id() -> str:
    return uuid4().hex


def utc_now() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


@dataclass
class Record:
    id: str = field(default_factory=_new_id)
    created_at: dt.datetime = field(default_factory=utc_now)
    updated_at: dt.datetime = field(default_factory=utc_now)
    # Assigned by the store on create; breaks ties between equal timestamps.
    seq: int = 0


@dataclass
class Usage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


@dataclass
class Message(Record):
    conversation_id: str = ""
    model_id: str = ""
    role: MessageRole = MessageRole.USER
    status: MessageStatus = MessageStatus.COMPLETED
    content: str = ""
    err_message: str = ""
    stop_reason: Optional[StopReason] = None
    parent_id: Optional[str] = None
    regenerate_count: int = 0
    is_active: bool = True
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    latency_ms: int = 0

    def apply_usage(self, usage: Optional[Usage]) -> None:
        if usage is None:
            return
        self.prompt_tokens = usage.prompt_tokens
        self.completion_tokens = usage.completion_tokens
        self.total_tokens = usage.total_tokens


@dataclass
class Conversation(Record):
    title: str = DEFAULT_CONVERSATION_TITLE
    summary: str = ""
    model_id: str = ""
    message_count: int = 0
    tokens_used: int = 0
    is_archived: bool = False
    is_pinned: bool = False


@dataclass
class ModelConfig:
    max_tokens: int = 0
    context_length: int = 0
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    frequency_penalty: Optional[float] = None
    presence_penalty: Optional[float] = None
    support_streaming: bool = True

    @property
    def effective_context_length(self) -> int:
        return self.context_length if self.context_length > 0 else DEFAULT_CONTEXT_LENGTH

    def generation_params(self) -> Dict[str, Any]:
        params: Dict[str, Any] = {}
        if self.max_tokens > 0:
            params["max_tokens"] = self.max_tokens
        for key in ("temperature", "top_p", "frequency_penalty", "presence_penalty"):
            val = getattr(self, key)
            if val is not None:
                params[key] = val
        return params


@dataclass
class ModelRecord(Record):
    name: str = ""
    model_id: str = ""  # backend identifier, e.g. gpt-4o
    provider_id: str = ""
    type: str = "chat"
    config: ModelConfig = field(default_factory=ModelConfig)
    is_default: bool = False
    enabled: bool = True


@dataclass
class ProviderConfig:
    base_url: Optional[str] = None
    timeout: Optional[float] = None
    organization: Optional[str] = None
    api_version: Optional[str] = None
    extra_headers: Dict[str, str] = field(default_factory=dict)
    params: Dict[str, Any] = field(default_factory=dict)
    policy_file: Optional[str] = None
    token_delay: Optional[float] = None


@dataclass
class ProviderRecord(Record):
    name: str = ""
    code: str = ""
    type: ProviderType = ProviderType.OPENAI
    config: ProviderConfig = field(default_factory=ProviderConfig)
    enabled: bool = True


@dataclass
class MessageFeedback(Record):
    message_id: str = ""
    type: FeedbackType = FeedbackType.LIKE
    categories: List[FeedbackCategory] = field(default_factory=list)
    comment: str = ""
    expected_answer: str = ""
