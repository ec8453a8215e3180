from __future__ import annotations
from dataclasses import dataclass
from typing import (
    Any, AsyncContextManager, AsyncIterator, Dict, Iterable, List, Optional, Protocol, Type, TypeVar,
)

from .models import Record, Usage

# OpenAI-style turn: {'role': 'system'|'user'|'assistant', 'content': '...'}
Turn = Dict[str, str]

R = TypeVar("R", bound=Record)


@dataclass
class StreamChunk:
    text: str = ""
    usage: Optional[Usage] = None
    finish_reason: Optional[str] = None


@dataclass
class Completion:
    text: str
    usage: Optional[Usage] = None
    finish_reason: Optional[str] = None


class GenerationBackend(Protocol):
    """
    Interface the core uses to talk to any LLM backend.
    """

    # Surface the backend model name for logging
    model: str

    async def generate(self, messages: List[Turn]) -> Completion:
        """
        Single-shot call. Returns the full completion and, when reported, usage.
        """
        ...

    def stream(self, messages: List[Turn]) -> AsyncIterator[StreamChunk]:
        """
        Streaming call. Yields chunks as they arrive; exhaustion is the
        end-of-stream signal and backend failures raise from iteration.
        The final chunk may carry only usage.
        """
        ...


class RecordStore(Protocol):
    """
    Typed record persistence. `update(record, fields=[...])` writes only the
    named fields; a single update is atomic. `transaction()` is a unit of work.
    """

    async def get(self, kind: Type[R], record_id: str) -> Optional[R]: ...

    async def list(
        self,
        kind: Type[R],
        *,
        where: Optional[Dict[str, Any]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[R]: ...

    async def create(self, record: R) -> R: ...

    async def update(self, record: R, fields: Optional[Iterable[str]] = None) -> R: ...

    async def delete(self, kind: Type[R], record_id: str) -> bool: ...

    def transaction(self) -> AsyncContextManager[None]: ...
