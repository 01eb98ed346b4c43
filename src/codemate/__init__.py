"""codemate — conversation context management and multi-provider AI invocation."""

from __future__ import annotations

__version__ = "0.1.0"

from .anthropic_provider import AnthropicProvider
from .app import AppContext
from .config import ChatOptions, ConfigStore, RetryPolicy, ServiceConfig, StorageSettings
from .context_compression import CompressionPlan, SummaryCompressor
from .conversation import Branch, Conversation, ConversationStore, Message
from .diff import (
    ChangeStats,
    DiffKind,
    DiffLine,
    apply_diff,
    change_stats,
    compare_lines,
    render_unified,
)
from .errors import (
    CodemateError,
    ConfigurationError,
    NotFoundError,
    ProviderError,
    StorageError,
    ValidationError,
)
from .gateway import ChatResult, UnifiedAIGateway, UsageLedger, UsageRecord
from .google_provider import GoogleProvider
from .http_provider import HttpLLMProvider
from .keys import ApiKeyStore, KeySummary
from .ollama_provider import OllamaProvider
from .openai_provider import OpenAIProvider
from .provider import (
    ChatMessage,
    ChatRequest,
    ChatResponse,
    ChatRole,
    LLMProvider,
    ProviderCapabilities,
    StreamChunk,
    StubLLMProvider,
    TokenUsage,
)
from .registry import CostRate, Provider, ProviderModel, ProviderRegistry
from .routes import RouteResponse, encode_sse, handle_chat, handle_models
from .session import ChatSession
from .storage import (
    InMemoryKeyValueStore,
    KeyValueStore,
    Repository,
    SqliteKeyValueStore,
)
from .telemetry import CodemateTracer, TelemetryConfig
from .tokens import TokenBudget, estimate_tokens
from .versions import Revision, RevisionHistory, VersionStore

__all__ = [
    "AnthropicProvider",
    "ApiKeyStore",
    "AppContext",
    "Branch",
    "ChangeStats",
    "ChatMessage",
    "ChatOptions",
    "ChatRequest",
    "ChatResponse",
    "ChatResult",
    "ChatRole",
    "ChatSession",
    "CodemateError",
    "CodemateTracer",
    "CompressionPlan",
    "ConfigStore",
    "ConfigurationError",
    "Conversation",
    "ConversationStore",
    "CostRate",
    "DiffKind",
    "DiffLine",
    "GoogleProvider",
    "HttpLLMProvider",
    "InMemoryKeyValueStore",
    "KeySummary",
    "KeyValueStore",
    "LLMProvider",
    "Message",
    "NotFoundError",
    "OllamaProvider",
    "OpenAIProvider",
    "Provider",
    "ProviderCapabilities",
    "ProviderError",
    "ProviderModel",
    "ProviderRegistry",
    "Repository",
    "RetryPolicy",
    "Revision",
    "RevisionHistory",
    "RouteResponse",
    "ServiceConfig",
    "SqliteKeyValueStore",
    "StorageError",
    "StorageSettings",
    "StreamChunk",
    "StubLLMProvider",
    "SummaryCompressor",
    "TelemetryConfig",
    "TokenBudget",
    "TokenUsage",
    "UnifiedAIGateway",
    "UsageLedger",
    "UsageRecord",
    "ValidationError",
    "VersionStore",
    "apply_diff",
    "change_stats",
    "compare_lines",
    "encode_sse",
    "estimate_tokens",
    "handle_chat",
    "handle_models",
    "render_unified",
]
