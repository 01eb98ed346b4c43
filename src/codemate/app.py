"""Application context — builds and owns every component for one process."""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass

from .config import ConfigStore, RetryPolicy, ServiceConfig, StorageSettings
from .conversation import Conversation, ConversationStore
from .gateway import UnifiedAIGateway
from .keys import ApiKeyStore, StoredKey
from .provider import LLMProvider
from .registry import Provider, ProviderRegistry
from .session import ChatSession
from .storage import InMemoryKeyValueStore, KeyValueStore, Repository, SqliteKeyValueStore
from .telemetry import CodemateTracer, TelemetryConfig
from .versions import RevisionHistory, VersionStore

logger = logging.getLogger(__name__)


@dataclass
class AppContext:
    """Explicit replacement for module-level service singletons."""

    settings: StorageSettings
    store: KeyValueStore
    tracer: CodemateTracer
    registry: ProviderRegistry
    keys: ApiKeyStore
    config_store: ConfigStore
    gateway: UnifiedAIGateway
    conversations: ConversationStore
    versions: VersionStore
    session: ChatSession

    @classmethod
    def create(
        cls,
        settings: StorageSettings | None = None,
        environ: Mapping[str, str] | None = None,
        providers: Mapping[Provider, LLMProvider] | None = None,
        telemetry: TelemetryConfig | None = None,
    ) -> AppContext:
        """Wire all components from *settings* and environment defaults.

        A previously saved service config takes precedence over the
        environment, but the API key always comes from the environment
        variable of the provider that ends up selected.
        """
        env = os.environ if environ is None else environ
        settings = settings or StorageSettings.from_env(env)
        store: KeyValueStore = (
            SqliteKeyValueStore(settings.db_path) if settings.db_path else InMemoryKeyValueStore()
        )

        tracer = CodemateTracer(telemetry)
        tracer.init()
        registry = ProviderRegistry()
        keys = ApiKeyStore(Repository(store, "api-keys", StoredKey))
        config_store = ConfigStore(Repository(store, "config", ServiceConfig))

        env_config = ServiceConfig.from_env(env)
        saved = config_store.load()
        config = (
            env_config
            if saved is None
            else saved.model_copy(
                update={"api_key": ServiceConfig.api_key_from_env(saved.provider, env)}
            )
        )

        gateway = UnifiedAIGateway(
            registry=registry,
            providers=providers,
            config=config,
            retry=RetryPolicy.from_env(env),
            key_store=keys,
            config_store=config_store,
            tracer=tracer,
        )
        conversations = ConversationStore(
            Repository(store, "conversations", Conversation),
            max_context_tokens=settings.max_context_tokens,
            compression_threshold=settings.compression_threshold,
            tracer=tracer,
        )
        versions = VersionStore(
            Repository(store, "revisions", RevisionHistory),
            max_versions=settings.max_versions,
            tracer=tracer,
        )
        logger.info(
            "Application context ready (storage=%s, provider=%s)",
            settings.db_path or "memory", config.provider,
        )
        return cls(
            settings=settings,
            store=store,
            tracer=tracer,
            registry=registry,
            keys=keys,
            config_store=config_store,
            gateway=gateway,
            conversations=conversations,
            versions=versions,
            session=ChatSession(conversations, gateway),
        )

    def close(self) -> None:
        """Flush telemetry and release the storage backend."""
        self.tracer.shutdown()
        if isinstance(self.store, SqliteKeyValueStore):
            self.store.close()
