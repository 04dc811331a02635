import asyncio
import json
import logging

import pytest

from chat_core.api.service import create_chat_service
from chat_core.config.settings import Settings
from chat_core.infrastructure.logging.logger import JsonFormatter


def _settings(**overrides):
    values = {"queue_drain_delay": 0, "connectivity_poll_interval": 3600, "default_model": "llama3.2"}
    values.update(overrides)
    return Settings(**values)


@pytest.mark.asyncio
async def test_service_offline_then_online_flow(tmp_path, make_backend):
    backend = make_backend(online=False)
    service = create_chat_service(_settings(), backend=backend, storage_root=tmp_path)
    await service.start()
    await service.monitor.refresh()

    conv = await service.create_conversation(system_prompt="be brief")
    await service.coordinator.send_message(conv.id, "Hello from the train")

    listing = service.list_conversations()
    assert listing[0]["id"] == conv.id
    assert listing[0]["title"] == "Hello from the train"
    assert listing[0]["model_name"] == "llama3.2"
    assert listing[0]["queued_count"] == 1
    assert listing[0]["is_generating"] is False
    assert [q.conversation_id for q in service.get_queued_messages(conv.id)] == [conv.id]

    backend.online = True
    await service.monitor.refresh()
    await service.coordinator.wait_idle()

    messages = service.get_conversation_messages(conv.id)
    assert [(m["role"], m["status"]) for m in messages] == [("user", "normal"), ("assistant", "normal")]
    assert messages[1]["text"] == "Hello there"
    assert service.list_conversations()[0]["queued_count"] == 0

    await service.close()


@pytest.mark.asyncio
async def test_service_close_stops_polling(tmp_path, make_backend):
    service = create_chat_service(_settings(), backend=make_backend(), storage_root=tmp_path)
    await service.start()
    await asyncio.sleep(0)

    await service.close()

    stream = service.monitor.status_stream()
    assert await stream.collect() == [service.monitor.current_status]


def test_settings_strip_trailing_slash_and_blank_key():
    cfg = _settings(ollama_base_url="http://gpu-box:11434/", litellm_api_key="  ")
    assert cfg.ollama_base_url == "http://gpu-box:11434"
    assert cfg.litellm_api_key is None


def test_settings_read_yaml_config(tmp_path, monkeypatch):
    config = tmp_path / "config.yaml"
    config.write_text("default_backend: litellm\nmax_queue_size: 7\n", encoding="utf-8")
    monkeypatch.setenv("CHAT_CORE_CONFIG_FILE", str(config))
    monkeypatch.delenv("DEFAULT_BACKEND", raising=False)
    monkeypatch.delenv("MAX_QUEUE_SIZE", raising=False)

    cfg = Settings(_env_file=None)

    assert cfg.default_backend == "litellm"
    assert cfg.max_queue_size == 7


def test_json_formatter_merges_extra_fields():
    record = logging.LogRecord("chat_core", logging.INFO, __file__, 1, "Queued message", None, None)
    record.extra = {"conversation_id": "c-1", "message_id": "m-1"}

    payload = json.loads(JsonFormatter().format(record))

    assert payload["msg"] == "Queued message"
    assert payload["level"] == "INFO"
    assert payload["conversation_id"] == "c-1"
    assert payload["ts"].endswith("Z")


@pytest.mark.asyncio
async def test_start_fails_queued_messages_missing_from_queue_file(tmp_path, make_backend, lockstep):
    first = create_chat_service(_settings(), backend=make_backend(online=False), storage_root=tmp_path)
    await first.monitor.refresh()
    conv = await first.create_conversation()
    await first.coordinator.send_message(conv.id, "lost in the crash")
    await first.coordinator.send_message(conv.id, "still queued")
    await first.close()
    queue_file = tmp_path / "queue.json"
    items = json.loads(queue_file.read_text(encoding="utf-8"))
    queue_file.write_text(json.dumps(items[1:]), encoding="utf-8")

    restarted = create_chat_service(_settings(), backend=make_backend(online=False), storage_root=tmp_path)
    await restarted.start()

    messages = restarted.get_conversation_messages(conv.id)
    assert [(m["text"], m["status"]) for m in messages] == [
        ("lost in the crash", "failed"),
        ("still queued", "queued"),
    ]
    lockstep(restarted.conversations, restarted.queue)

    await restarted.coordinator.retry_failed_message(messages[0]["id"])
    assert restarted.queue.count_for(conv.id) == 2
    lockstep(restarted.conversations, restarted.queue)
    await restarted.close()
