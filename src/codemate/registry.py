"""Provider registry — static catalog of providers, models, context windows and rates."""

from __future__ import annotations

from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field

from .errors import ConfigurationError
from .provider import TokenUsage


class Provider(StrEnum):
    """Supported AI providers."""

    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GOOGLE = "google"
    LOCAL = "local"


class CostRate(BaseModel):
    """Price in USD per 1k tokens."""

    model_config = ConfigDict(frozen=True)

    input: float
    output: float


class ProviderModel(BaseModel):
    """Read-only description of one model."""

    model_config = ConfigDict(frozen=True)

    id: str
    display_name: str
    provider: Provider
    context_window_tokens: int
    max_output_tokens: int
    cost_per_1k_tokens: CostRate
    capabilities: frozenset[str] = Field(default_factory=frozenset)


DEFAULT_CONTEXT_WINDOW = 4096

_CHAT = frozenset({"chat", "streaming"})
_CODE = frozenset({"chat", "streaming", "code"})
_VISION = frozenset({"chat", "streaming", "vision"})


def _model(
    model_id: str,
    display_name: str,
    provider: Provider,
    context: int,
    max_output: int,
    rate: tuple[float, float],
    capabilities: frozenset[str] = _CHAT,
) -> ProviderModel:
    return ProviderModel(
        id=model_id,
        display_name=display_name,
        provider=provider,
        context_window_tokens=context,
        max_output_tokens=max_output,
        cost_per_1k_tokens=CostRate(input=rate[0], output=rate[1]),
        capabilities=capabilities,
    )


# Order within a provider is the order reported by ``models_for``.
_CATALOG: tuple[ProviderModel, ...] = (
    _model("gpt-4", "GPT-4", Provider.OPENAI, 8192, 4096, (0.03, 0.06), _CODE),
    _model("gpt-4-turbo", "GPT-4 Turbo", Provider.OPENAI, 128000, 4096, (0.01, 0.03), _CODE | _VISION),
    _model("gpt-3.5-turbo", "GPT-3.5 Turbo", Provider.OPENAI, 16385, 4096, (0.0005, 0.0015)),
    _model("gpt-4o", "GPT-4o", Provider.OPENAI, 128000, 16384, (0.005, 0.015), _CODE | _VISION),
    _model("gpt-4o-mini", "GPT-4o mini", Provider.OPENAI, 128000, 16384, (0.00015, 0.0006), _VISION),
    _model("claude-3-opus", "Claude 3 Opus", Provider.ANTHROPIC, 200000, 4096, (0.015, 0.075), _CODE | _VISION),
    _model("claude-3-sonnet", "Claude 3 Sonnet", Provider.ANTHROPIC, 200000, 4096, (0.003, 0.015), _CODE | _VISION),
    _model("claude-3-haiku", "Claude 3 Haiku", Provider.ANTHROPIC, 200000, 4096, (0.00025, 0.00125), _VISION),
    _model("claude-2.1", "Claude 2.1", Provider.ANTHROPIC, 200000, 4096, (0.008, 0.024)),
    _model("gemini-pro", "Gemini Pro", Provider.GOOGLE, 32768, 8192, (0.0005, 0.0015), _CODE),
    _model("gemini-pro-vision", "Gemini Pro Vision", Provider.GOOGLE, 16384, 2048, (0.0005, 0.0015), _VISION),
    _model("llama2", "Llama 2", Provider.LOCAL, 4096, 2048, (0.0, 0.0)),
    _model("mistral", "Mistral", Provider.LOCAL, 8192, 4096, (0.0, 0.0)),
    _model("codellama", "Code Llama", Provider.LOCAL, 16384, 4096, (0.0, 0.0), _CODE),
)

# Pattern-based model-name prefixes for ids outside the catalog.
_PREFIX_MAP: dict[str, Provider] = {
    "claude": Provider.ANTHROPIC,
    "gpt": Provider.OPENAI,
    "o1": Provider.OPENAI,
    "o3": Provider.OPENAI,
    "gemini": Provider.GOOGLE,
    "codellama": Provider.LOCAL,
    "llama": Provider.LOCAL,
    "mistral": Provider.LOCAL,
    "phi": Provider.LOCAL,
}


class ProviderRegistry:
    """Read-only lookups over the model catalog."""

    def __init__(self, models: tuple[ProviderModel, ...] | list[ProviderModel] = _CATALOG) -> None:
        self._models: dict[str, ProviderModel] = {m.id: m for m in models}

    # -- providers ----------------------------------------------------------

    def providers(self) -> set[Provider]:
        return {m.provider for m in self._models.values()}

    def models_for(self, provider: str) -> list[str]:
        """Return model ids for *provider*; unknown providers yield an empty list."""
        return [m.id for m in self._models.values() if m.provider == provider]

    # -- models -------------------------------------------------------------

    def get_model(self, model_id: str) -> ProviderModel | None:
        return self._models.get(model_id)

    def all_models(self) -> list[ProviderModel]:
        return list(self._models.values())

    def provider_for_model(self, model_id: str) -> Provider | None:
        """Resolve a model id to its provider.

        Resolution order:
        1. Exact catalog match.
        2. Prefix match via ``_PREFIX_MAP``.
        3. ``None``.
        """
        model = self._models.get(model_id)
        if model is not None:
            return model.provider
        lower = model_id.lower()
        for prefix, provider in _PREFIX_MAP.items():
            if lower.startswith(prefix):
                return provider
        return None

    def context_window(self, model_id: str) -> int:
        model = self._models.get(model_id)
        return model.context_window_tokens if model else DEFAULT_CONTEXT_WINDOW

    # -- cost ---------------------------------------------------------------

    def rates(self, provider: str, model_id: str) -> CostRate:
        """Return the per-1k rates; raises ``ConfigurationError`` for unknown pairs."""
        model = self._models.get(model_id)
        if model is None or model.provider != provider:
            msg = f"No pricing for provider '{provider}' and model '{model_id}'"
            raise ConfigurationError(msg)
        return model.cost_per_1k_tokens

    def cost(self, usage: TokenUsage, provider: str, model_id: str) -> float:
        """Cost in USD of *usage* on the given model."""
        rate = self.rates(provider, model_id)
        return (
            usage.prompt_tokens / 1000 * rate.input
            + usage.completion_tokens / 1000 * rate.output
        )
