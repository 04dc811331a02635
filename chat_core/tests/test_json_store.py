import json

import pytest

from chat_core.domain.exceptions import NotFoundError, StorageError
from chat_core.domain.models import CANCELLED_TEXT, DEFAULT_TITLE, Message
from chat_core.infrastructure.storage.json_store import JsonConversationStore


@pytest.mark.asyncio
async def test_json_store_create_and_messages(tmp_path):
    root = tmp_path / ".storage"
    store = JsonConversationStore(root=root)
    conv = await store.create(model_name="llama3.2")
    assert conv.title == DEFAULT_TITLE

    m1 = Message.user("What is the capital of France? Please answer in one word only.")
    updated = await store.add(m1, to=conv.id)

    assert [m.id for m in updated.messages] == [m1.id]
    assert updated.title == "What is the capital of France? Please an..."
    assert (root / "conversations" / f"{conv.id}.json").exists()


@pytest.mark.asyncio
async def test_json_store_returns_copies(tmp_path):
    store = JsonConversationStore(root=tmp_path / ".storage")
    conv = await store.create(model_name="m")
    await store.add(Message.user("hi"), to=conv.id)

    snapshot = store.get(conv.id)
    snapshot.messages.clear()

    assert store.get(conv.id).message_count == 1


@pytest.mark.asyncio
async def test_json_store_insert_after_and_update_message(tmp_path):
    store = JsonConversationStore(root=tmp_path / ".storage")
    conv = await store.create(model_name="m")
    first = Message.user("one")
    second = Message.user("two")
    await store.add(first, to=conv.id)
    await store.add(second, to=conv.id)

    reply = Message.assistant("", is_streaming=True)
    conv = await store.add(reply, to=conv.id, after=first.id)
    assert [m.id for m in conv.messages] == [first.id, reply.id, second.id]

    conv = await store.update_message(conv.id, reply.id, text="done", is_streaming=False)
    assert conv.find_message(reply.id).text == "done"

    with pytest.raises(StorageError):
        await store.add(first, to=conv.id)
    with pytest.raises(NotFoundError):
        await store.update_message(conv.id, "m-missing", text="x")


@pytest.mark.asyncio
async def test_json_store_find_message(tmp_path):
    store = JsonConversationStore(root=tmp_path / ".storage")
    a = await store.create(model_name="m")
    b = await store.create(model_name="m")
    msg = Message.user("hi")
    await store.add(msg, to=b.id)

    conv, found = store.find_message(msg.id)

    assert conv.id == b.id
    assert found.text == "hi"
    assert a.id != b.id
    with pytest.raises(NotFoundError):
        store.find_message("m-missing")


@pytest.mark.asyncio
async def test_json_store_delete_conversation(tmp_path):
    root = tmp_path / ".storage"
    store = JsonConversationStore(root=root)
    conv = await store.create(model_name="m", title="temp")
    conv_file = root / "conversations" / f"{conv.id}.json"
    assert conv_file.exists()

    await store.delete(conv.id)

    assert not conv_file.exists()
    assert conv.id not in {c.id for c in store.list()}
    with pytest.raises(NotFoundError):
        await store.delete(conv.id)


@pytest.mark.asyncio
async def test_json_store_list_orders_by_last_update(tmp_path):
    store = JsonConversationStore(root=tmp_path / ".storage")
    older = await store.create(model_name="m")
    newer = await store.create(model_name="m")
    assert [c.id for c in store.list()] == [newer.id, older.id]

    await store.add(Message.user("bump"), to=older.id)

    assert [c.id for c in store.list()] == [older.id, newer.id]


@pytest.mark.asyncio
async def test_json_store_reload_settles_interrupted_generation(tmp_path):
    root = tmp_path / ".storage"
    store = JsonConversationStore(root=root)
    conv = await store.create(model_name="m")
    sending = Message.user("queued before crash", status="sending")
    partial = Message.assistant("half an ans", is_streaming=True)
    empty = Message.assistant("", is_streaming=True)
    for m in (sending, partial, empty):
        await store.add(m, to=conv.id)

    reloaded = JsonConversationStore(root=root).get(conv.id)

    assert reloaded.find_message(sending.id).status == "failed"
    assert reloaded.find_message(partial.id).text == "half an ans"
    assert not reloaded.find_message(partial.id).is_streaming
    assert reloaded.find_message(empty.id).text == CANCELLED_TEXT


@pytest.mark.asyncio
async def test_json_store_skips_unreadable_files(tmp_path):
    root = tmp_path / ".storage"
    store = JsonConversationStore(root=root)
    conv = await store.create(model_name="m")
    (root / "conversations" / "broken.json").write_text("{not json", encoding="utf-8")

    reloaded = JsonConversationStore(root=root)

    assert [c.id for c in reloaded.list()] == [conv.id]
    data = json.loads((root / "conversations" / f"{conv.id}.json").read_text(encoding="utf-8"))
    assert data["model_name"] == "m"


@pytest.mark.asyncio
async def test_json_store_update_replaces_snapshot(tmp_path):
    store = JsonConversationStore(root=tmp_path / ".storage")
    conv = await store.create(model_name="m")
    conv.system_prompt = "answer tersely"
    conv.parameters.temperature = 0.1

    updated = await store.update(conv)

    assert updated.updated_at >= conv.updated_at
    assert store.get(conv.id).system_prompt == "answer tersely"
    assert store.get(conv.id).parameters.temperature == 0.1

    conv.id = "c-missing"
    with pytest.raises(NotFoundError):
        await store.update(conv)
