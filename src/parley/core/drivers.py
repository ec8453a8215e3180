# src/parley/core/drivers.py
from __future__ import annotations
import asyncio
import time
from typing import Any, AsyncIterator, Iterable, List, Optional, Tuple

from loguru import logger

from . import sse
from .errors import ProviderError, StreamAlreadyExistsError
from .models import Conversation, Message, MessageStatus, StopReason, Usage
from .ports import GenerationBackend, RecordStore, StreamChunk, Turn
from .streams import CancelScope, StreamRegistry

_FINISH_REASONS = {
    "stop": StopReason.END_TURN,
    "end_turn": StopReason.END_TURN,
    "length": StopReason.MAX_TOKENS,
    "max_tokens": StopReason.MAX_TOKENS,
    "tool_calls": StopReason.TOOL_CALLS,
    "tool_use": StopReason.TOOL_CALLS,
    "function_call": StopReason.TOOL_CALLS,
    "content_filter": StopReason.CONTENT_FILTER,
    "stop_sequence": StopReason.STOP_SEQUENCE,
}

# Fields written by each terminal transition. Status updates are field-scoped
# so a concurrent stop request cannot overwrite streamed content.
_STOPPED_FIELDS = ("status", "stop_reason", "is_active", "content", "latency_ms")
_COMPLETED_FIELDS = (
    "status", "stop_reason", "content", "latency_ms",
    "prompt_tokens", "completion_tokens", "total_tokens",
)
_FAILED_FIELDS = ("status", "stop_reason", "err_message", "content", "latency_ms")

# Handoff outcomes of one pull from the backend.
_CHUNK, _END, _ERROR = "chunk", "end", "error"


def map_finish_reason(reason: Optional[str]) -> StopReason:
    if not reason:
        return StopReason.END_TURN
    return _FINISH_REASONS.get(str(reason).lower(), StopReason.END_TURN)


async def _pull(chunks: AsyncIterator[StreamChunk], scope: CancelScope, slot: "asyncio.Queue[Tuple[str, Any]]") -> None:
    try:
        item: Tuple[str, Any] = (_CHUNK, await chunks.__anext__())
    except StopAsyncIteration:
        item = (_END, None)
    except Exception as e:
        item = (_ERROR, e)
    # A cancelled consumer has stopped reading; leave the slot empty.
    if not scope.cancelled:
        slot.put_nowait(item)


class SessionDriver:
    """
    Runs one generation for a pending assistant message and persists every
    status transition as it happens.

    stream() is an async generator of encoded SSE bytes; run() is the
    single-shot path. Neither retries: retry policy lives in the backend wrapper.
    """

    def __init__(self, store: RecordStore, registry: StreamRegistry):
        self.store = store
        self.registry = registry

    async def _persist(self, message: Message, fields: Iterable[str]) -> None:
        try:
            await self.store.update(message, fields=list(fields))
        except Exception:
            logger.exception("failed to persist message {} ({})", message.id, message.status.value)

    async def _add_tokens(self, conversation_id: str, tokens: int) -> None:
        if tokens <= 0 or not conversation_id:
            return
        try:
            async with self.store.transaction():
                conv = await self.store.get(Conversation, conversation_id)
                if conv is None:
                    return
                conv.tokens_used += tokens
                await self.store.update(conv, fields=["tokens_used"])
        except Exception:
            logger.exception("failed to update tokens_used for conversation {}", conversation_id)

    @staticmethod
    def _elapsed_ms(started: float) -> int:
        return int((time.monotonic() - started) * 1000)

    async def _finish_stopped(self, message: Message, content: str, started: float) -> None:
        message.status = MessageStatus.STOPPED
        message.stop_reason = StopReason.USER
        message.is_active = False
        message.content = content
        message.latency_ms = self._elapsed_ms(started)
        await self._persist(message, _STOPPED_FIELDS)
        logger.info("stream stopped: message={} chars={}", message.id, len(content))

    async def _finish_failed(self, message: Message, content: str, error: BaseException, started: float) -> None:
        message.status = MessageStatus.FAILED
        message.stop_reason = StopReason.ERROR
        message.err_message = str(error) or type(error).__name__
        message.content = content
        message.latency_ms = self._elapsed_ms(started)
        await self._persist(message, _FAILED_FIELDS)
        logger.error("generation failed: message={} error={}", message.id, message.err_message)

    async def _finish_completed(
        self, message: Message, content: str, usage: Optional[Usage], finish_reason: Optional[str], started: float
    ) -> None:
        message.status = MessageStatus.COMPLETED
        message.stop_reason = map_finish_reason(finish_reason)
        message.content = content
        message.apply_usage(usage)
        message.latency_ms = self._elapsed_ms(started)
        await self._persist(message, _COMPLETED_FIELDS)
        await self._add_tokens(message.conversation_id, message.total_tokens)
        logger.info(
            "generation completed: message={} reason={} tokens={} latency_ms={}",
            message.id, message.stop_reason.value, message.total_tokens, message.latency_ms,
        )

    async def _next(
        self, chunks: AsyncIterator[StreamChunk], scope: CancelScope
    ) -> Optional[Tuple[str, Any]]:
        """
        Race the next backend chunk against cancellation.
        Returns None when the scope was cancelled first.
        """
        slot: "asyncio.Queue[Tuple[str, Any]]" = asyncio.Queue(maxsize=1)
        puller = asyncio.ensure_future(_pull(chunks, scope, slot))
        getter = asyncio.ensure_future(slot.get())
        waiter = asyncio.ensure_future(scope.wait())
        try:
            done, _ = await asyncio.wait({getter, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except BaseException:
            for t in (puller, getter, waiter):
                t.cancel()
            raise
        if waiter in done:
            getter.cancel()
            # Cooperative: the backend call sees the cancellation at its next await.
            puller.cancel()
            return None
        waiter.cancel()
        return getter.result()

    async def stream(
        self,
        backend: GenerationBackend,
        message: Message,
        turns: List[Turn],
        scope: Optional[CancelScope] = None,
    ) -> AsyncIterator[bytes]:
        invocation = scope.child() if scope is not None else CancelScope()
        started = time.monotonic()
        try:
            self.registry.register(message.id, invocation.cancel)
        except StreamAlreadyExistsError as e:
            logger.warning("register stream failed, continuing without stop support: {}", e)

        message.status = MessageStatus.STREAMING
        await self._persist(message, ("status",))
        logger.debug("stream open: message={} model={} turns={}", message.id, backend.model, len(turns))

        parts: List[str] = []
        usage: Optional[Usage] = None
        finish_reason: Optional[str] = None
        try:
            try:
                chunks = backend.stream(turns).__aiter__()
            except Exception as e:
                await self._finish_failed(message, "", e, started)
                yield sse.encode(sse.error_event(message.err_message))
            else:
                while True:
                    outcome = await self._next(chunks, invocation)
                    if outcome is None:
                        await self._finish_stopped(message, "".join(parts), started)
                        yield sse.encode(sse.stopped_event(message.id))
                        break
                    kind, value = outcome
                    if kind == _END:
                        await self._finish_completed(message, "".join(parts), usage, finish_reason, started)
                        break
                    if kind == _ERROR:
                        await self._finish_failed(message, "".join(parts), value, started)
                        yield sse.encode(sse.error_event(message.err_message))
                        break
                    chunk: StreamChunk = value
                    if chunk.usage is not None:
                        usage = chunk.usage
                    if chunk.finish_reason:
                        finish_reason = chunk.finish_reason
                    if chunk.text:
                        parts.append(chunk.text)
                        yield sse.encode(sse.message_event(chunk.text))
        except (asyncio.CancelledError, GeneratorExit):
            # Transport torn down mid-stream.
            invocation.cancel()
            if not message.status.is_terminal:
                await asyncio.shield(self._finish_stopped(message, "".join(parts), started))
            raise
        finally:
            self.registry.unregister(message.id)
        yield sse.encode_done()

    async def run(self, backend: GenerationBackend, message: Message, turns: List[Turn]) -> str:
        started = time.monotonic()
        try:
            completion = await backend.generate(turns)
        except Exception as e:
            await self._finish_failed(message, "", e, started)
            if isinstance(e, ProviderError):
                raise
            raise ProviderError(f"generation failed: {e}") from e
        await self._finish_completed(message, completion.text, completion.usage, completion.finish_reason, started)
        return completion.text
