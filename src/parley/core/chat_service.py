# src/parley/core/chat_service.py
from __future__ import annotations
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Protocol, Sequence, Tuple, Union

from loguru import logger

from .context import ContextPolicy, ContextWindowManager
from .drivers import SessionDriver
from .errors import NotFoundError, StreamNotFoundError, ValidationError
from .models import (
    DEFAULT_CONVERSATION_TITLE,
    Conversation,
    FeedbackCategory,
    FeedbackType,
    Message,
    MessageFeedback,
    MessageRole,
    MessageStatus,
    ModelRecord,
    ProviderRecord,
    StopReason,
)
from .ports import GenerationBackend, RecordStore, Turn
from .streams import CancelScope, StreamRegistry
from .titles import make_title

_FEEDBACK_STATUSES = (MessageStatus.COMPLETED, MessageStatus.STOPPED, MessageStatus.FAILED)


class BackendSource(Protocol):
    def get(self, model: ModelRecord, provider: ProviderRecord) -> GenerationBackend: ...


@dataclass
class ChatResult:
    conversation_id: str
    message_id: str
    content: str


@dataclass
class StreamSession:
    """A started streaming generation; `events` yields encoded SSE bytes."""
    conversation_id: str
    message_id: str
    events: AsyncIterator[bytes]


@dataclass
class StopResult:
    message_id: str
    content: str


Outcome = Union[ChatResult, StreamSession]


def _sort_key(m: Message) -> Tuple[Any, int]:
    return (m.created_at, m.seq)


class ChatService:
    """
    Session lifecycle operations (start, stop, regenerate) plus the
    conversation bookkeeping around them.

    One StreamRegistry is shared by every driver this service creates, so a
    stop request from any caller reaches the in-flight generation.
    """

    def __init__(
        self,
        store: RecordStore,
        registry: StreamRegistry,
        backends: BackendSource,
        *,
        reserve_ratio: float = 0.2,
    ):
        self.store = store
        self.registry = registry
        self.backends = backends
        self.reserve_ratio = reserve_ratio
        self.driver = SessionDriver(store, registry)

    # ---------- lookups ----------

    async def _require(self, kind, record_id: str, label: str):
        if not record_id:
            raise ValidationError(f"{label}_id is required")
        rec = await self.store.get(kind, record_id)
        if rec is None:
            raise NotFoundError(f"{label} not found: {record_id}")
        return rec

    async def _resolve_model(self, model_id: str) -> Tuple[ModelRecord, ProviderRecord]:
        model: ModelRecord = await self._require(ModelRecord, model_id, "model")
        if not model.enabled:
            raise ValidationError(f"model is disabled: {model_id}")
        provider = await self.store.get(ProviderRecord, model.provider_id)
        if provider is None:
            raise NotFoundError(f"provider not found: {model.provider_id}")
        if not provider.enabled:
            raise ValidationError(f"provider is disabled: {provider.name or provider.id}")
        return model, provider

    async def _active_history(self, conversation_id: str, *, until: Optional[Message] = None) -> List[Message]:
        rows = await self.store.list(
            Message,
            where={"conversation_id": conversation_id, "is_active": True, "status": MessageStatus.COMPLETED},
        )
        if until is not None:
            bound = _sort_key(until)
            rows = [m for m in rows if _sort_key(m) <= bound]
        return rows

    def _window(self, model: ModelRecord) -> ContextWindowManager:
        policy = ContextPolicy(
            context_length=model.config.effective_context_length,
            reserve_ratio=self.reserve_ratio,
        )
        return ContextWindowManager(policy, model_id=model.model_id)

    # ---------- conversation bookkeeping ----------

    async def _add_message_count(self, conversation_id: str, n: int) -> None:
        async with self.store.transaction():
            conv = await self._require(Conversation, conversation_id, "conversation")
            conv.message_count += n
            await self.store.update(conv, fields=["message_count"])

    async def _maybe_title(self, conversation_id: str) -> None:
        try:
            conv = await self.store.get(Conversation, conversation_id)
            if conv is None or conv.title != DEFAULT_CONVERSATION_TITLE:
                return
            users = await self.store.list(
                Message,
                where={
                    "conversation_id": conversation_id,
                    "role": MessageRole.USER,
                    "status": MessageStatus.COMPLETED,
                    "is_active": True,
                },
            )
            first = next((m.content for m in users if m.content.strip()), "")
            title = make_title(first)
            if title == conv.title:
                return
            conv.title = title
            await self.store.update(conv, fields=["title"])
            logger.debug("conversation {} titled {!r}", conversation_id, title)
        except Exception:
            logger.exception("failed to title conversation {}", conversation_id)

    # ---------- lifecycle ----------

    async def _dispatch(
        self,
        model: ModelRecord,
        backend: GenerationBackend,
        message: Message,
        turns: List[Turn],
        stream: bool,
        scope: Optional[CancelScope],
    ) -> Outcome:
        if stream and model.config.support_streaming:
            events = self.driver.stream(backend, message, turns, scope)
            return StreamSession(message.conversation_id, message.id, events)
        if stream:
            logger.info("model {} does not support streaming; answering in one shot", model.id)
        content = await self.driver.run(backend, message, turns)
        return ChatResult(message.conversation_id, message.id, content)

    async def start(
        self,
        model_id: str,
        messages: Sequence[str],
        conversation_id: Optional[str] = None,
        stream: bool = False,
        scope: Optional[CancelScope] = None,
    ) -> Outcome:
        if not model_id:
            raise ValidationError("model_id is required")
        texts = [m for m in (messages or []) if m and m.strip()]
        if not texts:
            raise ValidationError("at least one non-empty message is required")

        model, provider = await self._resolve_model(model_id)
        backend = self.backends.get(model, provider)

        if conversation_id:
            conv: Conversation = await self._require(Conversation, conversation_id, "conversation")
            if conv.is_archived:
                raise ValidationError(f"conversation is archived: {conversation_id}")
        else:
            conv = await self.store.create(Conversation(model_id=model.id))
            logger.info("conversation created: {}", conv.id)

        history = await self._active_history(conv.id)
        for text in texts:
            await self.store.create(
                Message(
                    conversation_id=conv.id,
                    model_id=model.id,
                    role=MessageRole.USER,
                    status=MessageStatus.COMPLETED,
                    content=text,
                )
            )

        turns = self._window(model).build(history, texts)

        assistant = await self.store.create(
            Message(
                conversation_id=conv.id,
                model_id=model.id,
                role=MessageRole.ASSISTANT,
                status=MessageStatus.PENDING,
            )
        )
        await self._add_message_count(conv.id, len(texts) + 1)
        await self._maybe_title(conv.id)

        logger.info(
            "chat start: conversation={} message={} model={} stream={} turns={}",
            conv.id, assistant.id, model.id, stream, len(turns),
        )
        return await self._dispatch(model, backend, assistant, turns, stream, scope)

    async def stop(self, message_id: str) -> StopResult:
        msg: Message = await self._require(Message, message_id, "message")
        if msg.status != MessageStatus.STREAMING:
            raise ValidationError(f"message is not in streaming status, current status: {msg.status.value}")

        try:
            self.registry.cancel(message_id)
        except StreamNotFoundError as e:
            logger.warning("failed to cancel stream: {}", e)

        msg.status = MessageStatus.STOPPED
        msg.stop_reason = StopReason.USER
        await self.store.update(msg, fields=["status", "stop_reason"])
        logger.info("message stopped: {}", message_id)
        return StopResult(message_id=msg.id, content=msg.content)

    async def regenerate(
        self,
        message_id: str,
        stream: bool = False,
        scope: Optional[CancelScope] = None,
    ) -> Outcome:
        target: Message = await self._require(Message, message_id, "message")
        if target.role != MessageRole.ASSISTANT:
            raise ValidationError("can only regenerate assistant messages")
        if not target.status.is_terminal:
            raise ValidationError(f"message is still generating, current status: {target.status.value}")

        conv: Conversation = await self._require(Conversation, target.conversation_id, "conversation")
        users = await self.store.list(
            Message, where={"conversation_id": conv.id, "role": MessageRole.USER}
        )
        earlier = [m for m in users if _sort_key(m) < _sort_key(target)]
        if not earlier:
            raise ValidationError(f"no user message precedes message {message_id}")
        prompt = earlier[-1]

        model, provider = await self._resolve_model(target.model_id or conv.model_id)
        backend = self.backends.get(model, provider)

        target.is_active = False
        await self.store.update(target, fields=["is_active"])

        history = await self._active_history(conv.id, until=prompt)
        replacement = await self.store.create(
            Message(
                conversation_id=conv.id,
                model_id=model.id,
                role=MessageRole.ASSISTANT,
                status=MessageStatus.PENDING,
                parent_id=target.id,
                regenerate_count=target.regenerate_count + 1,
            )
        )
        await self._add_message_count(conv.id, 1)

        # The prompting user turn is already part of history.
        turns = self._window(model).build(history, [])
        logger.info(
            "regenerate: message={} -> {} (count={})",
            target.id, replacement.id, replacement.regenerate_count,
        )
        return await self._dispatch(model, backend, replacement, turns, stream, scope)

    # ---------- feedback ----------

    async def submit_feedback(
        self,
        message_id: str,
        type: Union[FeedbackType, str],
        categories: Iterable[Union[FeedbackCategory, str]] = (),
        comment: str = "",
        expected_answer: str = "",
    ) -> MessageFeedback:
        try:
            kind = FeedbackType(type)
            cats = [FeedbackCategory(c) for c in categories]
        except ValueError as e:
            raise ValidationError(str(e)) from e

        msg: Message = await self._require(Message, message_id, "message")
        if msg.role != MessageRole.ASSISTANT:
            raise ValidationError("feedback is only accepted for assistant messages")
        if msg.status not in _FEEDBACK_STATUSES:
            raise ValidationError(f"feedback is not accepted in status: {msg.status.value}")
        if not msg.is_active:
            raise ValidationError("feedback is only accepted for the active message version")

        async with self.store.transaction():
            existing = await self.store.list(MessageFeedback, where={"message_id": message_id}, limit=1)
            if existing:
                fb = existing[0]
                fb.type, fb.categories, fb.comment, fb.expected_answer = kind, cats, comment, expected_answer
                fb = await self.store.update(fb)
            else:
                fb = await self.store.create(
                    MessageFeedback(
                        message_id=message_id,
                        type=kind,
                        categories=cats,
                        comment=comment,
                        expected_answer=expected_answer,
                    )
                )
        logger.info("feedback {} on message {}", kind.value, message_id)
        return fb

    # ---------- conversations ----------

    async def _delete_messages(self, conversation_id: str) -> int:
        msgs = await self.store.list(Message, where={"conversation_id": conversation_id})
        for m in msgs:
            for fb in await self.store.list(MessageFeedback, where={"message_id": m.id}):
                await self.store.delete(MessageFeedback, fb.id)
            await self.store.delete(Message, m.id)
        return len(msgs)

    async def clear_conversation(self, conversation_id: str) -> int:
        async with self.store.transaction():
            conv: Conversation = await self._require(Conversation, conversation_id, "conversation")
            deleted = await self._delete_messages(conv.id)
            conv.message_count = 0
            conv.tokens_used = 0
            await self.store.update(conv, fields=["message_count", "tokens_used"])
        logger.info("conversation {} cleared ({} messages)", conversation_id, deleted)
        return deleted

    async def delete_conversation(self, conversation_id: str) -> None:
        async with self.store.transaction():
            conv: Conversation = await self._require(Conversation, conversation_id, "conversation")
            deleted = await self._delete_messages(conv.id)
            await self.store.delete(Conversation, conv.id)
        logger.info("conversation {} deleted ({} messages)", conversation_id, deleted)

    async def list_conversations(self) -> List[Conversation]:
        return await self.store.list(Conversation, order_by="updated_at", descending=True)

    async def get_conversation(self, conversation_id: str) -> Tuple[Conversation, List[Message]]:
        conv: Conversation = await self._require(Conversation, conversation_id, "conversation")
        msgs = await self.store.list(Message, where={"conversation_id": conv.id})
        return conv, msgs

    async def list_models(self) -> List[Dict[str, Any]]:
        out: List[Dict[str, Any]] = []
        for model in await self.store.list(ModelRecord, where={"enabled": True}):
            provider = await self.store.get(ProviderRecord, model.provider_id)
            out.append({
                "id": model.id,
                "name": model.name,
                "model_id": model.model_id,
                "provider": provider.code if provider else model.provider_id,
                "provider_type": provider.type.value if provider else None,
                "is_default": model.is_default,
                "context_length": model.config.effective_context_length,
                "support_streaming": model.config.support_streaming,
            })
        return out
