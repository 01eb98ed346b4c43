"""API key storage.

Keys are XOR-masked with a fixed pad and base64 encoded before they are
written. This is obfuscation against casual inspection, not encryption.
"""

from __future__ import annotations

import base64
import binascii
import logging
import time
import uuid

from pydantic import BaseModel, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from .storage import InMemoryKeyValueStore, Repository

logger = logging.getLogger(__name__)

_PAD = b"codemate-ai-assistant-key"


def obfuscate(plain: str) -> str:
    data = plain.encode("utf-8")
    masked = bytes(b ^ _PAD[i % len(_PAD)] for i, b in enumerate(data))
    return base64.b64encode(masked).decode("ascii")


def reveal(encoded: str) -> str:
    """Invert :func:`obfuscate`; returns "" for undecodable input."""
    try:
        masked = base64.b64decode(encoded, validate=True)
        return bytes(b ^ _PAD[i % len(_PAD)] for i, b in enumerate(masked)).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError) as exc:
        logger.warning("Cannot decode stored API key: %s", exc)
        return ""


def mask_key(key: str) -> str:
    if len(key) <= 8:
        return "****"
    return f"{key[:4]}...{key[-4:]}"


class StoredKey(BaseModel):
    """Persisted form of an API key."""

    id: str
    provider: str
    obfuscated_key: str
    created_at: float
    last_used: float = 0.0
    usage_count: int = 0


class KeySummary(BaseModel):
    """Display-safe view of a stored key."""

    id: str
    provider: str
    masked_key: str
    last_used: float
    usage_count: int


_STORED_LIST = TypeAdapter(list[StoredKey])


def _new_key_id() -> str:
    return f"key-{uuid.uuid4().hex[:12]}"


class ApiKeyStore:
    """Provider API keys, persisted in the ``api-keys/`` namespace."""

    def __init__(self, repository: Repository[StoredKey] | None = None) -> None:
        self._repo = repository or Repository(InMemoryKeyValueStore(), "api-keys", StoredKey)

    def add_key(self, provider: str, api_key: str) -> str:
        entry = StoredKey(
            id=_new_key_id(),
            provider=provider,
            obfuscated_key=obfuscate(api_key),
            created_at=time.time(),
        )
        self._repo.put(entry.id, entry)
        logger.info("Stored API key %s for %s", entry.id, provider)
        return entry.id

    def get_key(self, key_id: str) -> str | None:
        """Return the plain key and record the use; None if unknown."""
        entry = self._repo.get(key_id)
        if entry is None:
            return None
        entry.last_used = time.time()
        entry.usage_count += 1
        self._repo.put(entry.id, entry)
        return reveal(entry.obfuscated_key)

    def get_key_by_provider(self, provider: str) -> str | None:
        entry = next((e for e in self._repo.list() if e.provider == provider), None)
        return self.get_key(entry.id) if entry else None

    def delete_key(self, key_id: str) -> bool:
        return self._repo.delete(key_id)

    def list_keys(self) -> list[KeySummary]:
        return [
            KeySummary(
                id=e.id,
                provider=e.provider,
                masked_key=mask_key(reveal(e.obfuscated_key)),
                last_used=e.last_used,
                usage_count=e.usage_count,
            )
            for e in self._repo.list()
        ]

    def looks_valid(self, key_id: str) -> bool:
        """Format-only check: the key exists and is longer than 10 characters."""
        key = self.get_key(key_id)
        return key is not None and len(key) > 10

    def clear_all(self) -> None:
        for entry in self._repo.list():
            self._repo.delete(entry.id)

    def export_keys(self) -> str:
        """Export keys in their obfuscated form."""
        return _STORED_LIST.dump_json(self._repo.list(), indent=2).decode()

    def import_keys(self, data: str) -> int:
        """Import exported keys under new ids; returns the count, 0 on bad input."""
        try:
            entries = _STORED_LIST.validate_json(data)
        except PydanticValidationError as exc:
            logger.warning("Ignoring malformed API key import: %s", exc)
            return 0
        for entry in entries:
            entry.id = _new_key_id()
            self._repo.put(entry.id, entry)
        return len(entries)
