"""Key-value persistence and typed repositories.

Every component owns one key namespace (``conversations/``, ``revisions/``,
``api-keys/``, ``config/``). Durability is best effort: a repository never
lets a ``StorageError`` reach its caller. Unreadable entries are treated as
absent and failed writes are logged and dropped.
"""

from __future__ import annotations

import logging
import sqlite3
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Generic, TypeVar

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from .errors import StorageError

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)


# ---------------------------------------------------------------------------
# Key-value backends
# ---------------------------------------------------------------------------


class KeyValueStore(ABC):
    """Abstract string-to-string store."""

    @abstractmethod
    def get(self, key: str) -> str | None:
        ...

    @abstractmethod
    def put(self, key: str, value: str) -> None:
        ...

    @abstractmethod
    def delete(self, key: str) -> bool:
        ...

    @abstractmethod
    def keys(self, prefix: str = "") -> list[str]:
        ...


class InMemoryKeyValueStore(KeyValueStore):
    """Process-local dict store, used for tests and ephemeral sessions."""

    def __init__(self) -> None:
        self._data: dict[str, str] = {}

    def get(self, key: str) -> str | None:
        return self._data.get(key)

    def put(self, key: str, value: str) -> None:
        self._data[key] = value

    def delete(self, key: str) -> bool:
        return self._data.pop(key, None) is not None

    def keys(self, prefix: str = "") -> list[str]:
        return sorted(k for k in self._data if k.startswith(prefix))


class SqliteKeyValueStore(KeyValueStore):
    """SQLite-backed key-value store."""

    def __init__(self, db_path: Path | str) -> None:
        try:
            self._conn = sqlite3.connect(str(db_path))
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute(
                """CREATE TABLE IF NOT EXISTS kv (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    updated_at REAL NOT NULL
                )"""
            )
            self._conn.commit()
        except sqlite3.Error as exc:
            msg = f"cannot open key-value store at {db_path}: {exc}"
            raise StorageError(msg) from exc

    def get(self, key: str) -> str | None:
        try:
            row = self._conn.execute("SELECT value FROM kv WHERE key = ?", (key,)).fetchone()
        except sqlite3.Error as exc:
            raise StorageError(str(exc)) from exc
        return row[0] if row else None

    def put(self, key: str, value: str) -> None:
        try:
            self._conn.execute(
                "INSERT INTO kv (key, value, updated_at) VALUES (?, ?, ?)"
                " ON CONFLICT(key) DO UPDATE SET value = excluded.value,"
                " updated_at = excluded.updated_at",
                (key, value, time.time()),
            )
            self._conn.commit()
        except sqlite3.Error as exc:
            raise StorageError(str(exc)) from exc

    def delete(self, key: str) -> bool:
        try:
            cursor = self._conn.execute("DELETE FROM kv WHERE key = ?", (key,))
            self._conn.commit()
        except sqlite3.Error as exc:
            raise StorageError(str(exc)) from exc
        return cursor.rowcount > 0

    def keys(self, prefix: str = "") -> list[str]:
        # Escape LIKE wildcards so the prefix matches literally.
        pattern = prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_") + "%"
        try:
            rows = self._conn.execute(
                "SELECT key FROM kv WHERE key LIKE ? ESCAPE '\\' ORDER BY key", (pattern,)
            ).fetchall()
        except sqlite3.Error as exc:
            raise StorageError(str(exc)) from exc
        return [r[0] for r in rows]

    def close(self) -> None:
        """Close the underlying database connection."""
        self._conn.close()


# ---------------------------------------------------------------------------
# Typed repository
# ---------------------------------------------------------------------------


class Repository(Generic[T]):
    """Typed get/put/list/delete over one namespace of a ``KeyValueStore``."""

    def __init__(self, store: KeyValueStore, namespace: str, model: type[T]) -> None:
        self._store = store
        self._prefix = namespace.rstrip("/") + "/"
        self._model = model

    @property
    def namespace(self) -> str:
        return self._prefix

    def get(self, item_id: str) -> T | None:
        """Return the stored item, or None when absent or unreadable."""
        key = self._prefix + item_id
        try:
            raw = self._store.get(key)
            if raw is None:
                return None
            return self._decode(key, raw)
        except StorageError as exc:
            logger.warning("Ignoring unreadable entry %s: %s", key, exc)
            return None

    def put(self, item_id: str, item: T) -> None:
        key = self._prefix + item_id
        try:
            self._store.put(key, item.model_dump_json())
        except StorageError as exc:
            logger.error("Failed to persist %s: %s", key, exc)

    def delete(self, item_id: str) -> bool:
        key = self._prefix + item_id
        try:
            return self._store.delete(key)
        except StorageError as exc:
            logger.error("Failed to delete %s: %s", key, exc)
            return False

    def list(self) -> list[T]:
        """Return every readable item in the namespace, in key order."""
        try:
            keys = self._store.keys(self._prefix)
        except StorageError as exc:
            logger.warning("Cannot list namespace %s: %s", self._prefix, exc)
            return []
        items: list[T] = []
        for key in keys:
            item = self.get(key[len(self._prefix):])
            if item is not None:
                items.append(item)
        return items

    def _decode(self, key: str, raw: str) -> T:
        try:
            return self._model.model_validate_json(raw)
        except PydanticValidationError as exc:
            msg = f"cannot decode {key} as {self._model.__name__}"
            raise StorageError(msg) from exc
