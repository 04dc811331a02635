import pytest

from chat_core.providers import create_backend
from chat_core.providers.litellm_client import LiteLlmClient
from chat_core.providers.ollama_client import OllamaClient
from chat_core.providers.registry import get_backend_config


def test_create_backend_default(monkeypatch):
    class DummySettings:
        default_backend = "ollama"
        ollama_base_url = "http://localhost:11434"
        http_timeout = 1.0
        connection_test_timeout = 1.0

    monkeypatch.setattr("chat_core.providers.settings", DummySettings())
    backend = create_backend()
    assert isinstance(backend, OllamaClient)


def test_create_backend_explicit():
    class DummySettings:
        default_backend = "ollama"
        litellm_base_url = "http://proxy.test/v1/"
        litellm_api_key = None
        http_timeout = 1.0
        connection_test_timeout = 1.0

    backend = create_backend("LiteLLM", DummySettings())
    assert isinstance(backend, LiteLlmClient)
    assert backend.base_url == "http://proxy.test/v1"


def test_create_backend_unknown():
    with pytest.raises(KeyError):
        create_backend("openai")


def test_backend_registry_lookup_is_case_insensitive():
    assert get_backend_config("OLLAMA").chat_path == "/api/chat"
    assert get_backend_config("litellm").health_path == "/models"
    with pytest.raises(KeyError):
        get_backend_config("nope")
