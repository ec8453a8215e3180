# tests/unit/test_chat_service.py

from __future__ import annotations
import asyncio
import sys
from pathlib import Path

import pytest

# Make "src" importable
sys.path.insert(0, str(Path(__file__).resolve().parents[2] / "src"))

from parley.core import sse
from parley.core.chat_service import ChatResult, ChatService, StreamSession
from parley.core.errors import NotFoundError, ValidationError
from parley.core.models import (
    DEFAULT_CONVERSATION_TITLE,
    Conversation,
    FeedbackType,
    Message,
    MessageFeedback,
    MessageRole,
    MessageStatus,
    ModelConfig,
    ModelRecord,
    ProviderRecord,
    ProviderType,
    StopReason,
    Usage,
)
from parley.core.ports import Completion, StreamChunk
from parley.core.streams import StreamRegistry
from parley.storage.memory_store import MemoryRecordStore


class CapturingBackend:
    """Replies with a fixed text and remembers the turns it was given."""
    model = "fake"

    def __init__(self, reply: str = "ok"):
        self.reply = reply
        self.calls = []

    async def generate(self, messages):
        self.calls.append([dict(m) for m in messages])
        return Completion(text=self.reply, usage=Usage(1, 1, 2), finish_reason="stop")

    async def stream(self, messages):
        self.calls.append([dict(m) for m in messages])
        for word in self.reply.split(" "):
            yield StreamChunk(text=word + " ")
        yield StreamChunk(usage=Usage(1, 1, 2))


class GatedBackend(CapturingBackend):
    """Streams one chunk, then waits until released."""

    def __init__(self):
        super().__init__()
        self.release = asyncio.Event()

    async def stream(self, messages):
        self.calls.append(messages)
        yield StreamChunk(text="partial")
        await self.release.wait()
        yield StreamChunk(text=" rest")


class FixedBackends:
    def __init__(self, backend):
        self.backend = backend

    def get(self, model, provider):
        return self.backend


def _service(backend=None, *, support_streaming=True):
    store = MemoryRecordStore()
    store.seed([ProviderRecord(id="p1", code="p1", type=ProviderType.ECHO)])
    store.seed([
        ModelRecord(id="m1", name="Model 1", model_id="gpt-4", provider_id="p1",
                    config=ModelConfig(support_streaming=support_streaming)),
        ModelRecord(id="off", model_id="gpt-4", provider_id="p1", enabled=False),
    ])
    backend = backend or CapturingBackend()
    return ChatService(store, StreamRegistry(), FixedBackends(backend)), store, backend


async def _drain(session: StreamSession) -> bytes:
    out = b""
    async for chunk in session.events:
        out += chunk
    return out


async def _messages(store, conversation_id):
    return await store.list(Message, where={"conversation_id": conversation_id})


# ---------- start ----------

@pytest.mark.asyncio
async def test_start_non_streaming_creates_conversation_and_messages():
    svc, store, backend = _service(CapturingBackend("hello there"))
    res = await svc.start("m1", ["What is up?"])
    assert isinstance(res, ChatResult)
    assert res.content == "hello there"

    msgs = await _messages(store, res.conversation_id)
    assert [(m.role, m.status) for m in msgs] == [
        (MessageRole.USER, MessageStatus.COMPLETED),
        (MessageRole.ASSISTANT, MessageStatus.COMPLETED),
    ]
    assert msgs[1].id == res.message_id

    conv = await store.get(Conversation, res.conversation_id)
    assert conv.message_count == 2
    assert conv.tokens_used == 2
    assert conv.title == "What is up"
    assert backend.calls[-1] == [{"role": "user", "content": "What is up?"}]


@pytest.mark.asyncio
async def test_start_uses_active_completed_history():
    svc, store, backend = _service(CapturingBackend("a1"))
    first = await svc.start("m1", ["q1"])
    await svc.start("m1", ["q2", "q3"], conversation_id=first.conversation_id)
    assert backend.calls[-1] == [
        {"role": "user", "content": "q1"},
        {"role": "assistant", "content": "a1"},
        {"role": "user", "content": "q2"},
        {"role": "user", "content": "q3"},
    ]
    conv = await store.get(Conversation, first.conversation_id)
    assert conv.message_count == 2 + 3


@pytest.mark.asyncio
async def test_start_streaming_returns_session_with_events():
    svc, store, _ = _service(CapturingBackend("hi you"))
    res = await svc.start("m1", ["hey"], stream=True)
    assert isinstance(res, StreamSession)
    events = list(sse.decode(await _drain(res)))
    assert [e.event for e in events] == ["message", "message", ""]
    stored = await store.get(Message, res.message_id)
    assert stored.status == MessageStatus.COMPLETED
    assert stored.content == "hi you "


@pytest.mark.asyncio
async def test_stream_request_falls_back_when_model_cannot_stream():
    svc, _, _ = _service(support_streaming=False)
    assert isinstance(await svc.start("m1", ["x"], stream=True), ChatResult)


@pytest.mark.asyncio
@pytest.mark.parametrize("model_id, messages, error", [
    ("", ["x"], ValidationError),
    ("m1", [], ValidationError),
    ("m1", ["   ", ""], ValidationError),
    ("missing", ["x"], NotFoundError),
    ("off", ["x"], ValidationError),
])
async def test_start_validation(model_id, messages, error):
    svc, _, _ = _service()
    with pytest.raises(error):
        await svc.start(model_id, messages)


@pytest.mark.asyncio
async def test_start_rejects_unknown_or_archived_conversation():
    svc, store, _ = _service()
    with pytest.raises(NotFoundError):
        await svc.start("m1", ["x"], conversation_id="nope")
    conv = await store.create(Conversation(is_archived=True))
    with pytest.raises(ValidationError):
        await svc.start("m1", ["x"], conversation_id=conv.id)


# ---------- stop ----------

@pytest.mark.asyncio
async def test_stop_requires_streaming_status_and_does_not_mutate():
    svc, store, _ = _service()
    res = await svc.start("m1", ["x"])
    before = await store.get(Message, res.message_id)
    with pytest.raises(ValidationError):
        await svc.stop(res.message_id)
    assert await store.get(Message, res.message_id) == before


@pytest.mark.asyncio
async def test_stop_cancels_in_flight_stream():
    backend = GatedBackend()
    svc, store, _ = _service(backend)
    res = await svc.start("m1", ["x"], stream=True)

    first = await res.events.__anext__()
    assert b"partial" in first

    result = await svc.stop(res.message_id)
    assert result.message_id == res.message_id

    rest = list(sse.decode(await _drain(res)))
    assert rest[0].event == "stopped"
    stored = await store.get(Message, res.message_id)
    assert stored.status == MessageStatus.STOPPED
    assert stored.stop_reason == StopReason.USER
    assert stored.content == "partial"
    assert stored.is_active is False


@pytest.mark.asyncio
async def test_stop_without_registry_entry_still_marks_stopped():
    svc, store, _ = _service()
    msg = await store.create(Message(role=MessageRole.ASSISTANT, status=MessageStatus.STREAMING, content="so far"))
    result = await svc.stop(msg.id)
    assert result.content == "so far"
    stored = await store.get(Message, msg.id)
    assert (stored.status, stored.stop_reason) == (MessageStatus.STOPPED, StopReason.USER)


# ---------- regenerate ----------

@pytest.mark.asyncio
async def test_regenerate_creates_linked_version_and_deactivates_original():
    svc, store, backend = _service(CapturingBackend("v"))
    first = await svc.start("m1", ["q1"])
    second = await svc.start("m1", ["q2"], conversation_id=first.conversation_id)

    regen = await svc.regenerate(second.message_id)

    original = await store.get(Message, second.message_id)
    assert original.is_active is False
    new = await store.get(Message, regen.message_id)
    assert new.parent_id == second.message_id
    assert new.regenerate_count == original.regenerate_count + 1
    assert new.is_active is True
    assert new.status == MessageStatus.COMPLETED

    # History stops at the prompting user message.
    assert backend.calls[-1] == [
        {"role": "user", "content": "q1"},
        {"role": "assistant", "content": "v"},
        {"role": "user", "content": "q2"},
    ]
    assistants = [m for m in await _messages(store, first.conversation_id) if m.role == MessageRole.ASSISTANT]
    assert len(assistants) == 3
    conv = await store.get(Conversation, first.conversation_id)
    assert conv.message_count == 5


@pytest.mark.asyncio
async def test_regenerate_twice_increments_count():
    svc, store, _ = _service()
    first = await svc.start("m1", ["q"])
    r1 = await svc.regenerate(first.message_id)
    r2 = await svc.regenerate(r1.message_id)
    assert (await store.get(Message, r2.message_id)).regenerate_count == 2
    assert (await store.get(Message, r2.message_id)).parent_id == r1.message_id


@pytest.mark.asyncio
async def test_regenerate_only_assistant_messages():
    svc, store, _ = _service()
    res = await svc.start("m1", ["q"])
    user = next(m for m in await _messages(store, res.conversation_id) if m.role == MessageRole.USER)
    with pytest.raises(ValidationError):
        await svc.regenerate(user.id)
    with pytest.raises(NotFoundError):
        await svc.regenerate("missing")


# ---------- feedback ----------

@pytest.mark.asyncio
async def test_feedback_upserts_single_record():
    svc, store, _ = _service()
    res = await svc.start("m1", ["q"])
    fb1 = await svc.submit_feedback(res.message_id, "like")
    fb2 = await svc.submit_feedback(res.message_id, FeedbackType.DISLIKE, categories=["inaccurate"], comment="wrong")
    assert fb1.id == fb2.id
    rows = await store.list(MessageFeedback)
    assert len(rows) == 1
    assert rows[0].type == FeedbackType.DISLIKE
    assert rows[0].comment == "wrong"


@pytest.mark.asyncio
async def test_feedback_rules():
    svc, store, _ = _service()
    res = await svc.start("m1", ["q"])
    user = next(m for m in await _messages(store, res.conversation_id) if m.role == MessageRole.USER)
    with pytest.raises(ValidationError):
        await svc.submit_feedback(user.id, "like")
    with pytest.raises(ValidationError):
        await svc.submit_feedback(res.message_id, "meh")

    streaming = await store.create(Message(role=MessageRole.ASSISTANT, status=MessageStatus.STREAMING))
    with pytest.raises(ValidationError):
        await svc.submit_feedback(streaming.id, "like")

    regen = await svc.regenerate(res.message_id)
    with pytest.raises(ValidationError):
        await svc.submit_feedback(res.message_id, "like")  # now inactive
    await svc.submit_feedback(regen.message_id, "like")


# ---------- conversations ----------

@pytest.mark.asyncio
async def test_clear_conversation_resets_counters_and_deletes_feedback():
    svc, store, _ = _service()
    res = await svc.start("m1", ["q"])
    await svc.submit_feedback(res.message_id, "like")

    deleted = await svc.clear_conversation(res.conversation_id)

    assert deleted == 2
    assert await _messages(store, res.conversation_id) == []
    assert await store.list(MessageFeedback) == []
    conv = await store.get(Conversation, res.conversation_id)
    assert (conv.message_count, conv.tokens_used) == (0, 0)


@pytest.mark.asyncio
async def test_delete_conversation():
    svc, store, _ = _service()
    res = await svc.start("m1", ["q"])
    await svc.delete_conversation(res.conversation_id)
    assert await store.get(Conversation, res.conversation_id) is None
    assert await store.list(Message) == []
    with pytest.raises(NotFoundError):
        await svc.get_conversation(res.conversation_id)


@pytest.mark.asyncio
async def test_title_from_first_message_collapses_newlines():
    svc, store, _ = _service()
    conv = await store.create(Conversation())
    assert conv.title == DEFAULT_CONVERSATION_TITLE
    await svc.start("m1", ["A question\nspanning lines"], conversation_id=conv.id)
    assert (await store.get(Conversation, conv.id)).title == "A question spanning lines"


@pytest.mark.asyncio
async def test_list_models_only_enabled():
    svc, _, _ = _service()
    models = await svc.list_models()
    assert [m["id"] for m in models] == ["m1"]
    assert models[0]["context_length"] == 4096
    assert models[0]["provider_type"] == "echo"
