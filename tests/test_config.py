"""Tests for ServiceConfig, RetryPolicy, StorageSettings and ConfigStore."""

from __future__ import annotations

import pytest

from codemate.config import ChatOptions, ConfigStore, RetryPolicy, ServiceConfig, StorageSettings
from codemate.errors import ConfigurationError, ValidationError
from codemate.registry import Provider
from codemate.storage import InMemoryKeyValueStore, Repository

# ---------------------------------------------------------------------------
# ServiceConfig
# ---------------------------------------------------------------------------


def test_defaults() -> None:
    config = ServiceConfig()
    assert config.provider == Provider.OPENAI
    assert config.model == "gpt-4"
    assert config.temperature == 0.7
    assert config.max_tokens == 2000
    assert config.top_p == 1.0
    assert config.frequency_penalty == 0.0
    assert config.api_key is None


def test_from_env_empty_gives_defaults() -> None:
    assert ServiceConfig.from_env({}) == ServiceConfig()


def test_from_env_reads_overrides() -> None:
    config = ServiceConfig.from_env(
        {
            "CODEMATE_AI_PROVIDER": "Anthropic",
            "CODEMATE_AI_MODEL": "claude-3-haiku",
            "CODEMATE_AI_TEMPERATURE": "0.2",
            "CODEMATE_AI_MAX_TOKENS": "512",
            "ANTHROPIC_API_KEY": "sk-ant-secret",
            "OPENAI_API_KEY": "sk-openai",
        }
    )
    assert config.provider == Provider.ANTHROPIC
    assert config.model == "claude-3-haiku"
    assert config.temperature == 0.2
    assert config.max_tokens == 512
    assert config.api_key == "sk-ant-secret"


def test_from_env_unknown_provider() -> None:
    with pytest.raises(ConfigurationError, match="Unknown provider"):
        ServiceConfig.from_env({"CODEMATE_AI_PROVIDER": "acme"})


def test_from_env_bad_number() -> None:
    with pytest.raises(ConfigurationError):
        ServiceConfig.from_env({"CODEMATE_AI_MAX_TOKENS": "lots"})


def test_from_env_uses_process_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("CODEMATE_AI_PROVIDER", "google")
    monkeypatch.setenv("CODEMATE_AI_MODEL", "gemini-pro")
    config = ServiceConfig.from_env()
    assert config.provider == Provider.GOOGLE
    assert config.model == "gemini-pro"


def test_api_key_hidden_from_repr() -> None:
    assert "sk-secret" not in repr(ServiceConfig(api_key="sk-secret"))


def test_merged_applies_only_present_fields() -> None:
    base = ServiceConfig(api_key="k")
    merged = base.merged({"model": "gpt-4o", "temperature": None})
    assert merged.model == "gpt-4o"
    assert merged.temperature == 0.7
    assert merged.api_key == "k"
    assert base.model == "gpt-4"


def test_merged_accepts_chat_options() -> None:
    merged = ServiceConfig().merged(ChatOptions(provider=Provider.LOCAL, model="llama2"))
    assert merged.provider == Provider.LOCAL
    assert merged.model == "llama2"


def test_merged_rejects_unknown_field() -> None:
    with pytest.raises(ValidationError, match="Unknown configuration field"):
        ServiceConfig().merged({"colour": "blue"})


def test_merged_rejects_bad_type() -> None:
    with pytest.raises(ValidationError):
        ServiceConfig().merged({"max_tokens": "many"})


# ---------------------------------------------------------------------------
# RetryPolicy / StorageSettings
# ---------------------------------------------------------------------------


def test_retry_policy_delay_grows() -> None:
    policy = RetryPolicy(backoff_seconds=0.5, backoff_multiplier=2.0)
    assert [policy.delay(n) for n in (1, 2, 3)] == [0.5, 1.0, 2.0]


def test_retry_policy_from_env() -> None:
    assert RetryPolicy.from_env({}).max_retries == 2
    assert RetryPolicy.from_env({"CODEMATE_AI_MAX_RETRIES": "5"}).max_retries == 5
    assert RetryPolicy.from_env({"CODEMATE_AI_MAX_RETRIES": "-1"}).max_retries == 0
    with pytest.raises(ConfigurationError):
        RetryPolicy.from_env({"CODEMATE_AI_MAX_RETRIES": "x"})


def test_storage_settings_from_env() -> None:
    settings = StorageSettings.from_env(
        {"CODEMATE_DB_PATH": "/tmp/state.db", "CODEMATE_MAX_VERSIONS": "10"}
    )
    assert settings.db_path == "/tmp/state.db"
    assert settings.max_versions == 10
    assert StorageSettings.from_env({}).db_path is None
    with pytest.raises(ConfigurationError):
        StorageSettings.from_env({"CODEMATE_MAX_VERSIONS": "ten"})


# ---------------------------------------------------------------------------
# ConfigStore
# ---------------------------------------------------------------------------


def test_config_store_never_persists_api_key() -> None:
    kv = InMemoryKeyValueStore()
    store = ConfigStore(Repository(kv, "config", ServiceConfig))
    store.save(ServiceConfig(model="gpt-4o", api_key="sk-secret"))

    raw = kv.get("config/current")
    assert raw is not None
    assert "sk-secret" not in raw
    loaded = store.load()
    assert loaded is not None
    assert loaded.model == "gpt-4o"
    assert loaded.api_key is None


def test_config_store_load_when_empty() -> None:
    store = ConfigStore(Repository(InMemoryKeyValueStore(), "config", ServiceConfig))
    assert store.load() is None


def test_merged_explicit_none_clears_optional_fields() -> None:
    base = ServiceConfig(api_key="sk-old", base_url="http://proxy.local")
    cleared = base.merged({"base_url": None, "api_key": None, "model": None})
    assert cleared.base_url is None
    assert cleared.api_key is None
    assert cleared.model == "gpt-4"


def test_merged_chat_options_only_uses_set_fields() -> None:
    base = ServiceConfig(api_key="sk-old", base_url="http://proxy.local")
    assert base.merged(ChatOptions(model="gpt-4o")).api_key == "sk-old"
    assert base.merged(ChatOptions(base_url=None)).base_url is None


def test_api_key_from_env() -> None:
    env = {"ANTHROPIC_API_KEY": "sk-ant", "OPENAI_API_KEY": ""}
    assert ServiceConfig.api_key_from_env(Provider.ANTHROPIC, env) == "sk-ant"
    assert ServiceConfig.api_key_from_env(Provider.OPENAI, env) is None
    assert ServiceConfig.api_key_from_env(Provider.LOCAL, env) is None
