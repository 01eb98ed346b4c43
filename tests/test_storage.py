"""Tests for key-value backends and typed repositories."""

from __future__ import annotations

import logging
from pathlib import Path

import pytest
from pydantic import BaseModel

from codemate.errors import StorageError
from codemate.storage import (
    InMemoryKeyValueStore,
    KeyValueStore,
    Repository,
    SqliteKeyValueStore,
)


class Note(BaseModel):
    title: str
    body: str = ""


class FailingStore(KeyValueStore):
    """Backend whose every operation fails."""

    def get(self, key: str) -> str | None:
        raise StorageError("disk unreadable")

    def put(self, key: str, value: str) -> None:
        raise StorageError("disk full")

    def delete(self, key: str) -> bool:
        raise StorageError("disk full")

    def keys(self, prefix: str = "") -> list[str]:
        raise StorageError("disk unreadable")


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path: Path) -> KeyValueStore:
    if request.param == "memory":
        return InMemoryKeyValueStore()
    return SqliteKeyValueStore(tmp_path / "kv.db")


# ---------------------------------------------------------------------------
# Backends
# ---------------------------------------------------------------------------


def test_put_get_delete(store: KeyValueStore):
    store.put("a/1", "one")
    assert store.get("a/1") == "one"
    store.put("a/1", "uno")
    assert store.get("a/1") == "uno"
    assert store.delete("a/1") is True
    assert store.delete("a/1") is False
    assert store.get("a/1") is None


def test_keys_filters_by_prefix(store: KeyValueStore):
    store.put("conversations/b", "1")
    store.put("conversations/a", "2")
    store.put("revisions/x", "3")
    assert store.keys("conversations/") == ["conversations/a", "conversations/b"]
    assert len(store.keys()) == 3


def test_sqlite_prefix_is_literal(tmp_path: Path):
    store = SqliteKeyValueStore(tmp_path / "kv.db")
    store.put("a_b/1", "x")
    store.put("axb/1", "y")
    assert store.keys("a_b/") == ["a_b/1"]
    store.close()


def test_sqlite_persists_across_connections(tmp_path: Path):
    path = tmp_path / "kv.db"
    first = SqliteKeyValueStore(path)
    first.put("k", "v")
    first.close()
    second = SqliteKeyValueStore(path)
    assert second.get("k") == "v"
    second.close()


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


def test_repository_round_trip(store: KeyValueStore):
    repo = Repository(store, "notes", Note)
    repo.put("n1", Note(title="hello", body="world"))
    assert repo.get("n1") == Note(title="hello", body="world")
    assert repo.list() == [Note(title="hello", body="world")]
    assert repo.delete("n1") is True
    assert repo.get("n1") is None


def test_repositories_use_disjoint_namespaces():
    store = InMemoryKeyValueStore()
    notes = Repository(store, "notes", Note)
    drafts = Repository(store, "drafts", Note)
    notes.put("x", Note(title="note"))
    drafts.put("x", Note(title="draft"))
    assert notes.get("x").title == "note"
    assert drafts.get("x").title == "draft"
    assert store.keys() == ["drafts/x", "notes/x"]


def test_unparsable_entry_is_treated_as_absent(caplog: pytest.LogCaptureFixture):
    store = InMemoryKeyValueStore()
    store.put("notes/bad", "{not json")
    store.put("notes/good", Note(title="ok").model_dump_json())
    repo = Repository(store, "notes", Note)
    with caplog.at_level(logging.WARNING):
        assert repo.get("bad") is None
        assert repo.list() == [Note(title="ok")]
    assert "unreadable entry notes/bad" in caplog.text


def test_failed_write_is_logged_not_raised(caplog: pytest.LogCaptureFixture):
    repo = Repository(FailingStore(), "notes", Note)
    with caplog.at_level(logging.ERROR):
        repo.put("n", Note(title="lost"))
    assert "Failed to persist notes/n" in caplog.text


def test_failed_read_returns_empty_defaults():
    repo = Repository(FailingStore(), "notes", Note)
    assert repo.get("n") is None
    assert repo.list() == []
    assert repo.delete("n") is False
