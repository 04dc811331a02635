from datetime import datetime, timezone

from chat_core.domain.models import (
    DEFAULT_TITLE,
    Attachment,
    Conversation,
    GenerationParameters,
    Message,
    QueuedMessageItem,
    format_ts,
    new_id,
    parse_ts,
)


def test_ids_are_unique_and_prefixed():
    ids = {new_id("m") for _ in range(1000)}
    assert len(ids) == 1000
    assert all(i.startswith("m-") for i in ids)


def test_message_factories():
    user = Message.user("hi", status="queued")
    assistant = Message.assistant(is_streaming=True)
    assert user.role == "user" and user.status == "queued"
    assert assistant.role == "assistant" and assistant.text == "" and assistant.is_streaming
    assert user.id != assistant.id


def test_attachment_kinds_and_size():
    img = Attachment(id="a1", name="cat.png", mime_type="image/png", data=b"1234")
    txt = Attachment(id="a2", name="a.json", mime_type="application/json", data=b"{}")
    blob = Attachment(id="a3", name="a.bin", mime_type="application/octet-stream", data=b"\x00")
    assert img.is_image and not img.is_text_file
    assert txt.is_text_file
    assert not blob.is_image and not blob.is_text_file
    assert img.size == 4


def test_conversation_dict_roundtrip_keeps_attachments_and_status():
    now = datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
    msg = Message(
        id="m1",
        text="look",
        role="user",
        timestamp=now,
        attachments=[Attachment(id="a1", name="cat.png", mime_type="image/png", data=b"\x89PNG")],
        status="failed",
        error_message="connection reset",
    )
    conv = Conversation(
        id="c1",
        title="t",
        model_name="llava",
        created_at=now,
        updated_at=now,
        messages=[msg],
        system_prompt="sys",
        parameters=GenerationParameters(temperature=0.3, max_tokens=10),
    )

    data = conv.to_dict()
    assert data["created_at"] == "2024-01-02T03:04:05Z"
    restored = Conversation.from_dict(data)

    assert restored == conv
    assert restored.messages[0].attachments[0].data == b"\x89PNG"


def test_conversation_helpers():
    now = datetime.now(timezone.utc)
    conv = Conversation(id="c1", title=DEFAULT_TITLE, model_name="m", created_at=now, updated_at=now)
    assert conv.last_message_preview == "No messages yet"
    conv.messages.append(Message.user("x" * 60))
    assert conv.last_message_preview == "x" * 50 + "..."
    assert conv.index_of(conv.messages[0].id) == 0
    assert conv.index_of("missing") == -1
    assert conv.find_message("missing") is None
    assert Conversation.generate_title("  short  ") == "short"
    assert Conversation.generate_title("y" * 41) == "y" * 40 + "..."


def test_queue_item_and_timestamps():
    ts = parse_ts("2024-05-06T07:08:09Z")
    assert ts.tzinfo is not None
    assert format_ts(ts) == "2024-05-06T07:08:09Z"
    item = QueuedMessageItem(id="q1", conversation_id="c1", message_id="m1", enqueued_at=ts)
    assert QueuedMessageItem.from_dict(item.to_dict()) == item
