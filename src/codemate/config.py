"""Service configuration — defaults from environment, explicit get/set at runtime.

Environment variables:
    - ``CODEMATE_AI_PROVIDER``: openai | anthropic | google | local (default ``openai``)
    - ``CODEMATE_AI_MODEL``: default model (default ``gpt-4``)
    - ``CODEMATE_AI_TEMPERATURE`` / ``CODEMATE_AI_MAX_TOKENS`` / ``CODEMATE_AI_TOP_P``
    - ``CODEMATE_AI_BASE_URL``: override the provider endpoint
    - ``CODEMATE_AI_MAX_RETRIES``: retries for retryable provider errors (default 2)
    - ``CODEMATE_DB_PATH``: SQLite file for persisted state (default in-memory)
    - ``CODEMATE_MAX_VERSIONS``: revisions kept per file (default 50)
    - ``OPENAI_API_KEY`` / ``ANTHROPIC_API_KEY`` / ``GOOGLE_API_KEY``
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from .errors import ConfigurationError, ValidationError
from .registry import Provider
from .storage import Repository

logger = logging.getLogger(__name__)

_API_KEY_ENV: dict[Provider, str] = {
    Provider.OPENAI: "OPENAI_API_KEY",
    Provider.ANTHROPIC: "ANTHROPIC_API_KEY",
    Provider.GOOGLE: "GOOGLE_API_KEY",
}

# Optional fields that an explicit None resets.
_CLEARABLE = frozenset({"api_key", "base_url"})


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------


class ChatOptions(BaseModel):
    """Per-call overrides; ``None`` means "use the default"."""

    provider: Provider | None = None
    model: str | None = None
    temperature: float | None = None
    max_tokens: int | None = None
    top_p: float | None = None
    frequency_penalty: float | None = None
    presence_penalty: float | None = None
    api_key: str | None = Field(default=None, repr=False)
    base_url: str | None = None


class ServiceConfig(BaseModel):
    """The current provider configuration.

    ``api_key`` belongs to the caller: it is hidden from ``repr`` and is
    never written by :class:`ConfigStore`.
    """

    provider: Provider = Provider.OPENAI
    api_key: str | None = Field(default=None, repr=False)
    model: str = "gpt-4"
    temperature: float = 0.7
    max_tokens: int = 2000
    top_p: float = 1.0
    frequency_penalty: float = 0.0
    presence_penalty: float = 0.0
    base_url: str | None = None

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> ServiceConfig:
        """Build the process-start defaults from environment variables."""
        env = os.environ if environ is None else environ
        raw_provider = env.get("CODEMATE_AI_PROVIDER", "").strip().lower()
        provider = Provider.OPENAI
        if raw_provider:
            valid = {p.value for p in Provider}
            if raw_provider not in valid:
                msg = (
                    f"Unknown provider '{raw_provider}'. "
                    f"Valid values for CODEMATE_AI_PROVIDER: {', '.join(sorted(valid))}"
                )
                raise ConfigurationError(msg)
            provider = Provider(raw_provider)

        values: dict[str, Any] = {"provider": provider}
        for field_name, var in (
            ("model", "CODEMATE_AI_MODEL"),
            ("temperature", "CODEMATE_AI_TEMPERATURE"),
            ("max_tokens", "CODEMATE_AI_MAX_TOKENS"),
            ("top_p", "CODEMATE_AI_TOP_P"),
            ("base_url", "CODEMATE_AI_BASE_URL"),
        ):
            value = env.get(var, "").strip()
            if value:
                values[field_name] = value
        api_key = cls.api_key_from_env(provider, env)
        if api_key:
            values["api_key"] = api_key

        try:
            return cls.model_validate(values)
        except PydanticValidationError as exc:
            msg = f"Invalid AI configuration in environment: {exc}"
            raise ConfigurationError(msg) from exc

    @staticmethod
    def api_key_from_env(provider: Provider, environ: Mapping[str, str] | None = None) -> str | None:
        """Return the API key variable for *provider*, or None when unset."""
        env = os.environ if environ is None else environ
        key_var = _API_KEY_ENV.get(provider)
        return (env.get(key_var) or None) if key_var else None

    def merged(self, partial: Mapping[str, Any] | BaseModel) -> ServiceConfig:
        """Return a copy with the entries of *partial* applied.

        ``None`` means "keep the current value", except for the nullable
        fields in ``_CLEARABLE`` where an explicit ``None`` clears them. For a
        model, only fields that were explicitly set count. Only types are
        checked; a provider/model mismatch surfaces when a call is issued.
        """
        if isinstance(partial, BaseModel):
            raw = partial.model_dump(exclude_unset=True)
        else:
            raw = dict(partial)
        updates = {k: v for k, v in raw.items() if v is not None or k in _CLEARABLE}
        unknown = set(updates) - set(type(self).model_fields)
        if unknown:
            msg = f"Unknown configuration field(s): {', '.join(sorted(unknown))}"
            raise ValidationError(msg)
        try:
            return type(self).model_validate({**self.model_dump(), **updates})
        except PydanticValidationError as exc:
            raise ValidationError(str(exc)) from exc


@dataclass
class RetryPolicy:
    """How the gateway retries and falls back when a provider fails."""

    max_retries: int = 2
    backoff_seconds: float = 0.5
    backoff_multiplier: float = 2.0
    fallback_providers: tuple[Provider, ...] = ()

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> RetryPolicy:
        env = os.environ if environ is None else environ
        raw = env.get("CODEMATE_AI_MAX_RETRIES", "").strip()
        if not raw:
            return cls()
        try:
            return cls(max_retries=max(0, int(raw)))
        except ValueError as exc:
            msg = f"CODEMATE_AI_MAX_RETRIES must be an integer, got '{raw}'"
            raise ConfigurationError(msg) from exc

    def delay(self, attempt: int) -> float:
        """Backoff before retry number *attempt* (1-based)."""
        return self.backoff_seconds * self.backoff_multiplier ** (attempt - 1)


@dataclass
class StorageSettings:
    """Where persisted state lives and how much of it is kept."""

    db_path: str | None = None
    max_versions: int = 50
    max_context_tokens: int = 8000
    compression_threshold: int = 6000

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> StorageSettings:
        env = os.environ if environ is None else environ
        settings = cls(db_path=env.get("CODEMATE_DB_PATH") or None)
        raw = env.get("CODEMATE_MAX_VERSIONS", "").strip()
        if raw:
            try:
                settings.max_versions = int(raw)
            except ValueError as exc:
                msg = f"CODEMATE_MAX_VERSIONS must be an integer, got '{raw}'"
                raise ConfigurationError(msg) from exc
        return settings


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


class ConfigStore:
    """Persists the current ``ServiceConfig`` without its API key."""

    _KEY = "current"

    def __init__(self, repository: Repository[ServiceConfig]) -> None:
        self._repo = repository

    def save(self, config: ServiceConfig) -> None:
        self._repo.put(self._KEY, config.model_copy(update={"api_key": None}))
        logger.debug("Saved service config (provider=%s, model=%s)", config.provider, config.model)

    def load(self) -> ServiceConfig | None:
        return self._repo.get(self._KEY)
