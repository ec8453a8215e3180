# tests/unit/test_memory_store.py

from __future__ import annotations
import asyncio
import sys
from pathlib import Path

import pytest

# Make "src" importable
sys.path.insert(0, str(Path(__file__).resolve().parents[2] / "src"))

from parley.core.errors import NotFoundError
from parley.core.models import Conversation, Message, MessageRole, MessageStatus
from parley.storage.memory_store import MemoryRecordStore


@pytest.mark.asyncio
async def test_create_get_returns_copies():
    store = MemoryRecordStore()
    msg = await store.create(Message(conversation_id="c1", content="hi"))
    got = await store.get(Message, msg.id)
    assert got == msg
    got.content = "mutated"
    assert (await store.get(Message, msg.id)).content == "hi"


@pytest.mark.asyncio
async def test_get_missing_returns_none():
    store = MemoryRecordStore()
    assert await store.get(Message, "nope") is None


@pytest.mark.asyncio
async def test_list_filters_enum_aware_and_orders_by_creation():
    store = MemoryRecordStore()
    a = await store.create(Message(conversation_id="c1", role=MessageRole.USER, content="a"))
    b = await store.create(Message(conversation_id="c1", role=MessageRole.ASSISTANT, content="b"))
    # same timestamp as a: seq breaks the tie
    c = await store.create(Message(conversation_id="c1", role=MessageRole.USER, content="c", created_at=a.created_at))
    await store.create(Message(conversation_id="c2", role=MessageRole.USER, content="other"))

    users = await store.list(Message, where={"conversation_id": "c1", "role": "user"})
    assert [m.content for m in users] == ["a", "c"]

    everything = await store.list(Message, where={"conversation_id": "c1"}, order_by="seq")
    assert [m.id for m in everything] == [a.id, b.id, c.id]

    newest = await store.list(Message, where={"conversation_id": "c1"}, order_by="seq", descending=True, limit=1)
    assert [m.id for m in newest] == [c.id]


@pytest.mark.asyncio
async def test_field_scoped_update_leaves_other_fields():
    store = MemoryRecordStore()
    msg = await store.create(Message(status=MessageStatus.STREAMING, content=""))

    writer = await store.get(Message, msg.id)
    writer.content = "partial answer"
    await store.update(writer, fields=["content"])

    stale = msg  # still holds empty content
    stale.status = MessageStatus.STOPPED
    await store.update(stale, fields=["status"])

    final = await store.get(Message, msg.id)
    assert final.content == "partial answer"
    assert final.status == MessageStatus.STOPPED


@pytest.mark.asyncio
async def test_full_update_keeps_identity_fields():
    store = MemoryRecordStore()
    conv = await store.create(Conversation(title="t"))
    conv.title = "renamed"
    conv.seq = 999
    updated = await store.update(conv)
    assert updated.title == "renamed"
    assert updated.seq != 999
    assert updated.updated_at >= updated.created_at


@pytest.mark.asyncio
async def test_update_missing_raises_not_found():
    store = MemoryRecordStore()
    with pytest.raises(NotFoundError):
        await store.update(Message(), fields=["content"])


@pytest.mark.asyncio
async def test_delete():
    store = MemoryRecordStore()
    msg = await store.create(Message())
    assert await store.delete(Message, msg.id) is True
    assert await store.delete(Message, msg.id) is False


@pytest.mark.asyncio
async def test_transaction_rolls_back_on_error():
    store = MemoryRecordStore()
    conv = await store.create(Conversation(message_count=3))
    with pytest.raises(RuntimeError):
        async with store.transaction():
            conv.message_count = 0
            await store.update(conv, fields=["message_count"])
            await store.create(Message(conversation_id=conv.id))
            raise RuntimeError("boom")
    assert (await store.get(Conversation, conv.id)).message_count == 3
    assert await store.list(Message) == []


@pytest.mark.asyncio
async def test_rollback_keeps_writes_from_other_tasks():
    store = MemoryRecordStore()
    conv = await store.create(Conversation(title="before"))
    streaming = await store.create(
        Message(conversation_id=conv.id, role=MessageRole.ASSISTANT, status=MessageStatus.STREAMING)
    )
    inside, written = asyncio.Event(), asyncio.Event()

    async def finish_elsewhere():
        await inside.wait()
        streaming.status = MessageStatus.COMPLETED
        await store.update(streaming, fields=["status"])
        written.set()

    writer = asyncio.ensure_future(finish_elsewhere())
    with pytest.raises(RuntimeError):
        async with store.transaction():
            conv.title = "during"
            await store.update(conv, fields=["title"])
            added = await store.create(Message(conversation_id=conv.id))
            await store.delete(Message, "never-existed")
            inside.set()
            await written.wait()
            raise RuntimeError("boom")
    await writer

    assert (await store.get(Conversation, conv.id)).title == "before"
    assert await store.get(Message, added.id) is None
    assert (await store.get(Message, streaming.id)).status == MessageStatus.COMPLETED


@pytest.mark.asyncio
async def test_transaction_commits():
    store = MemoryRecordStore()
    async with store.transaction():
        await store.create(Conversation(title="kept"))
    assert [c.title for c in await store.list(Conversation)] == ["kept"]


def test_seed_is_synchronous():
    store = MemoryRecordStore()
    store.seed([Conversation(id="c1"), Conversation(id="c2")])
    assert set(store._tables[Conversation]) == {"c1", "c2"}
