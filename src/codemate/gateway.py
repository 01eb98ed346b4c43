"""Unified AI gateway — one chat/stream contract over heterogeneous providers.

Resolution order for each call:
    provider: ``options.provider`` -> provider of ``options.model`` -> default config
    model:    ``options.model`` -> default model (if it belongs to the provider)
              -> first catalog model of the provider
    api key:  ``options.api_key`` -> default config (same provider) -> key store
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncGenerator, Awaitable, Callable, Iterator, Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from .anthropic_provider import AnthropicProvider
from .config import ChatOptions, ConfigStore, RetryPolicy, ServiceConfig
from .errors import ConfigurationError, ProviderError, ValidationError
from .google_provider import GoogleProvider
from .keys import ApiKeyStore
from .ollama_provider import OllamaProvider
from .openai_provider import OpenAIProvider
from .provider import (
    ChatMessage,
    ChatRequest,
    ChatResponse,
    ChatRole,
    LLMProvider,
    StreamChunk,
    TokenUsage,
)
from .registry import Provider, ProviderRegistry
from .telemetry import CodemateTracer, trace_gateway_call, trace_gateway_stream
from .tokens import estimate_tokens

logger = logging.getLogger(__name__)

MessagesInput = Sequence[ChatMessage | Mapping[str, Any]]
OptionsInput = ChatOptions | Mapping[str, Any] | None


# ---------------------------------------------------------------------------
# Result and accounting types
# ---------------------------------------------------------------------------


class ChatResult(BaseModel):
    """Normalized reply of a one-shot chat call."""

    content: str
    usage: TokenUsage
    model: str
    finish_reason: str | None = None
    provider: Provider
    cost: float | None = None


@dataclass
class UsageRecord:
    """Accumulated usage for one provider/model pair."""

    requests: int = 0
    prompt_tokens: int = 0
    completion_tokens: int = 0
    cost: float = 0.0


class UsageLedger:
    """Running totals of tokens and cost, keyed by (provider, model)."""

    def __init__(self) -> None:
        self._records: dict[tuple[str, str], UsageRecord] = {}

    def record(self, provider: str, model: str, usage: TokenUsage, cost: float | None) -> None:
        entry = self._records.setdefault((provider, model), UsageRecord())
        entry.requests += 1
        entry.prompt_tokens += usage.prompt_tokens
        entry.completion_tokens += usage.completion_tokens
        entry.cost += cost or 0.0

    def summary(self) -> dict[tuple[str, str], UsageRecord]:
        return dict(self._records)

    def total_cost(self) -> float:
        return sum(r.cost for r in self._records.values())


@dataclass
class _Target:
    provider: Provider
    model: str
    impl: LLMProvider
    request: ChatRequest
    fallback: bool = False


def build_default_providers() -> dict[Provider, LLMProvider]:
    """One HTTP provider per supported vendor."""
    return {
        Provider.OPENAI: OpenAIProvider(),
        Provider.ANTHROPIC: AnthropicProvider(),
        Provider.GOOGLE: GoogleProvider(),
        Provider.LOCAL: OllamaProvider(),
    }


# ---------------------------------------------------------------------------
# Gateway
# ---------------------------------------------------------------------------


class UnifiedAIGateway:
    """Dispatches chat and streaming requests, tracking usage and cost."""

    def __init__(
        self,
        registry: ProviderRegistry | None = None,
        providers: Mapping[Provider, LLMProvider] | None = None,
        config: ServiceConfig | None = None,
        retry: RetryPolicy | None = None,
        key_store: ApiKeyStore | None = None,
        config_store: ConfigStore | None = None,
        tracer: CodemateTracer | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._registry = registry or ProviderRegistry()
        self._providers: dict[Provider, LLMProvider] = dict(
            providers if providers is not None else build_default_providers()
        )
        self._config = config or ServiceConfig()
        self._retry = retry or RetryPolicy()
        self._key_store = key_store
        self._config_store = config_store
        self._tracer = tracer
        self._sleep = sleep
        self._ledger = UsageLedger()

    # -- configuration ------------------------------------------------------

    def get_default_config(self) -> ServiceConfig:
        return self._config.model_copy()

    def set_default_config(self, partial: Mapping[str, Any] | BaseModel) -> ServiceConfig:
        """Merge *partial* into the current config; only types are checked."""
        self._config = self._config.merged(partial)
        if self._config_store is not None:
            self._config_store.save(self._config)
        logger.info(
            "Default AI config set (provider=%s, model=%s)", self._config.provider, self._config.model
        )
        return self.get_default_config()

    # -- catalog ------------------------------------------------------------

    def get_available_providers(self) -> set[Provider]:
        return self._registry.providers()

    def is_provider_available(self, provider: str) -> bool:
        return provider in self._providers

    def get_models_for_provider(self, provider: str) -> list[str]:
        return self._registry.models_for(provider)

    @property
    def registry(self) -> ProviderRegistry:
        return self._registry

    # -- accounting ---------------------------------------------------------

    @staticmethod
    def estimate_tokens(text: str) -> int:
        return estimate_tokens(text)

    def calculate_cost(self, usage: TokenUsage, provider: str, model: str) -> float:
        """Cost in USD; raises ``ConfigurationError`` for unknown pairs."""
        return self._registry.cost(usage, provider, model)

    def usage_summary(self) -> dict[tuple[str, str], UsageRecord]:
        return self._ledger.summary()

    # -- one-shot chat ------------------------------------------------------

    async def chat(self, messages: MessagesInput, options: OptionsInput = None) -> ChatResult:
        """Send *messages* and return the normalized reply.

        Retryable provider errors are retried with backoff; then each
        configured fallback provider is tried once. The last error propagates.
        """
        chat_messages = _coerce_messages(messages)
        opts = _coerce_options(options)

        last_error: ProviderError | None = None
        for target in self._targets(chat_messages, opts):
            try:
                with trace_gateway_call(target.provider, target.model, self._tracer):
                    response = await self._call_with_retry(target)
            except ProviderError as exc:
                logger.error("Provider %s failed: %s", target.provider, exc)
                last_error = exc
                continue
            return self._normalize(target, response)

        if last_error is None:
            msg = "No provider could be resolved for this request"
            raise ConfigurationError(msg)
        raise last_error

    async def complete(self, prompt: str, options: OptionsInput = None) -> str:
        result = await self.chat([ChatMessage(role=ChatRole.USER, content=prompt)], options)
        return result.content

    async def complete_with_system(
        self, system_prompt: str, user_prompt: str, options: OptionsInput = None
    ) -> str:
        result = await self.chat(
            [
                ChatMessage(role=ChatRole.SYSTEM, content=system_prompt),
                ChatMessage(role=ChatRole.USER, content=user_prompt),
            ],
            options,
        )
        return result.content

    async def conversation(
        self, history: MessagesInput, new_message: str, options: OptionsInput = None
    ) -> ChatResult:
        messages = [*_coerce_messages(history, allow_empty=True)]
        messages.append(ChatMessage(role=ChatRole.USER, content=new_message))
        return await self.chat(messages, options)

    async def test_connection(self, provider: str | None = None) -> bool:
        """Best-effort probe; never raises."""
        try:
            options = ChatOptions(provider=Provider(provider)) if provider else ChatOptions()
            result = await self.chat([ChatMessage(role=ChatRole.USER, content="Hello")], options)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Connection test failed for %s: %s", provider or self._config.provider, exc)
            return False
        return len(result.content) > 0

    # -- streaming ----------------------------------------------------------

    def stream(
        self,
        messages: MessagesInput,
        options: OptionsInput = None,
        cancel: asyncio.Event | None = None,
    ) -> AsyncGenerator[StreamChunk, None]:
        """Return a lazy, finite chunk sequence ending with ``is_complete=True``.

        Validation and configuration errors raise here, before any chunk.
        Provider failures after that arrive as one terminal chunk with
        ``error`` set. Setting *cancel* stops the sequence and closes the
        provider stream.
        """
        chat_messages = _coerce_messages(messages)
        target = self._resolve(chat_messages, _coerce_options(options))
        return self._relay(target, cancel)

    async def _relay(
        self, target: _Target, cancel: asyncio.Event | None
    ) -> AsyncGenerator[StreamChunk, None]:
        source = target.impl.stream(target.request, cancel)
        parts: list[str] = []
        terminal: StreamChunk | None = None
        with trace_gateway_stream(target.provider, target.model, self._tracer) as span:
            try:
                async for chunk in source:
                    if cancel is not None and cancel.is_set():
                        break
                    if chunk.is_complete:
                        parts.append(chunk.content)
                        terminal = chunk
                        break
                    parts.append(chunk.content)
                    yield chunk
            except ProviderError as exc:
                logger.error("Stream from %s failed: %s", target.provider, exc)
                span.record_exception(exc)
                terminal = StreamChunk(is_complete=True, error=str(exc))
            except Exception as exc:  # noqa: BLE001
                logger.exception("Unexpected stream failure from %s", target.provider)
                span.record_exception(exc)
                terminal = StreamChunk(is_complete=True, error=str(exc) or type(exc).__name__)
            finally:
                aclose = getattr(source, "aclose", None)
                if aclose is not None:
                    await aclose()

            if cancel is not None and cancel.is_set():
                logger.warning("Stream from %s cancelled by consumer", target.provider)
                span.set_attribute("ai.cancelled", True)
                return
            if terminal is None:
                terminal = StreamChunk(is_complete=True)
            if terminal.error is None:
                usage = self._account_stream(target, "".join(parts))
                span.set_attribute("ai.completion_tokens", usage.completion_tokens)
            else:
                span.set_attribute("ai.error", terminal.error)
        yield terminal

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _targets(self, messages: list[ChatMessage], options: ChatOptions) -> Iterator[_Target]:
        """Yield the primary target, then each resolvable fallback."""
        yield self._resolve(messages, options)
        for fallback in self._retry.fallback_providers:
            try:
                target = self._resolve(messages, options, fallback)
            except ConfigurationError as exc:
                logger.warning("Skipping fallback provider %s: %s", fallback, exc)
                continue
            logger.info("Falling back to provider %s", fallback)
            yield target

    def _resolve(
        self,
        messages: list[ChatMessage],
        options: ChatOptions,
        fallback: Provider | None = None,
    ) -> _Target:
        cfg = self._config
        if fallback is not None:
            provider = fallback
            explicit_model = None
            explicit_key = None
        else:
            provider = (
                options.provider
                or (self._registry.provider_for_model(options.model) if options.model else None)
                or cfg.provider
            )
            explicit_model = options.model
            explicit_key = options.api_key

        impl = self._providers.get(provider)
        if impl is None:
            msg = f"Provider '{provider}' is not configured"
            raise ConfigurationError(msg)

        model = explicit_model or self._default_model(provider)
        same_provider = cfg.provider == provider
        api_key = (
            explicit_key
            or (cfg.api_key if same_provider else None)
            or (self._key_store.get_key_by_provider(provider) if self._key_store else None)
        )
        if impl.requires_api_key() and not api_key:
            msg = f"API key not configured for provider '{provider}'"
            raise ConfigurationError(msg)

        request = ChatRequest(
            model=model,
            messages=messages,
            temperature=_pick(options.temperature, cfg.temperature),
            max_tokens=_pick(options.max_tokens, cfg.max_tokens),
            top_p=_pick(options.top_p, cfg.top_p),
            frequency_penalty=_pick(options.frequency_penalty, cfg.frequency_penalty),
            presence_penalty=_pick(options.presence_penalty, cfg.presence_penalty),
            api_key=api_key,
            base_url=(options.base_url if fallback is None else None)
            or (cfg.base_url if same_provider else None),
        )
        return _Target(
            provider=provider, model=model, impl=impl, request=request, fallback=fallback is not None
        )

    def _default_model(self, provider: Provider) -> str:
        cfg = self._config
        if self._registry.provider_for_model(cfg.model) == provider:
            return cfg.model
        models = self._registry.models_for(provider)
        if not models:
            msg = f"No models known for provider '{provider}'"
            raise ConfigurationError(msg)
        return models[0]

    async def _call_with_retry(self, target: _Target) -> ChatResponse:
        max_retries = 0 if target.fallback else self._retry.max_retries
        attempt = 0
        while True:
            try:
                return await target.impl.chat(target.request)
            except ProviderError as exc:
                if not exc.retryable or attempt >= max_retries:
                    raise
                attempt += 1
                delay = self._retry.delay(attempt)
                logger.info(
                    "Retrying %s (attempt %d/%d) in %.2fs: %s",
                    target.provider, attempt, max_retries, delay, exc,
                )
                await self._sleep(delay)

    def _normalize(self, target: _Target, response: ChatResponse) -> ChatResult:
        usage = response.usage or TokenUsage(
            prompt_tokens=_prompt_estimate(target.request.messages),
            completion_tokens=estimate_tokens(response.content),
        )
        model = response.model or target.model
        cost = self._cost_or_none(usage, target.provider, target.model)
        self._ledger.record(target.provider, target.model, usage, cost)
        return ChatResult(
            content=response.content,
            usage=usage,
            model=model,
            finish_reason=response.finish_reason,
            provider=target.provider,
            cost=cost,
        )

    def _account_stream(self, target: _Target, content: str) -> TokenUsage:
        usage = TokenUsage(
            prompt_tokens=_prompt_estimate(target.request.messages),
            completion_tokens=estimate_tokens(content),
        )
        self._ledger.record(
            target.provider, target.model, usage,
            self._cost_or_none(usage, target.provider, target.model),
        )
        return usage

    def _cost_or_none(self, usage: TokenUsage, provider: Provider, model: str) -> float | None:
        try:
            return self._registry.cost(usage, provider, model)
        except ConfigurationError:
            logger.debug("No rate for %s/%s; cost left unset", provider, model)
            return None


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _pick(value: Any, default: Any) -> Any:
    return default if value is None else value


def _prompt_estimate(messages: list[ChatMessage]) -> int:
    return sum(estimate_tokens(m.content) for m in messages)


def _coerce_messages(messages: MessagesInput, allow_empty: bool = False) -> list[ChatMessage]:
    if not messages and not allow_empty:
        msg = "Messages are required"
        raise ValidationError(msg)
    try:
        return [
            m if isinstance(m, ChatMessage) else ChatMessage.model_validate(m) for m in messages
        ]
    except PydanticValidationError as exc:
        msg = f"Invalid message: {exc}"
        raise ValidationError(msg) from exc


def _coerce_options(options: OptionsInput) -> ChatOptions:
    if options is None:
        return ChatOptions()
    if isinstance(options, ChatOptions):
        return options
    try:
        return ChatOptions.model_validate(dict(options))
    except PydanticValidationError as exc:
        msg = f"Invalid chat options: {exc}"
        raise ValidationError(msg) from exc
