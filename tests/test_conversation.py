"""Tests for ConversationStore — branching, budget, compression, export."""

from __future__ import annotations

import json
import logging

import pytest

from codemate.context_compression import SUMMARY_PREFIX
from codemate.conversation import MAIN_BRANCH, Conversation, ConversationStore
from codemate.errors import NotFoundError, ValidationError
from codemate.provider import ChatRole
from codemate.storage import InMemoryKeyValueStore, Repository


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        self.now += 1.0
        return self.now


@pytest.fixture
def store() -> ConversationStore:
    return ConversationStore(clock=FakeClock())


def _main_sum(store: ConversationStore, cid: str) -> int:
    return sum(m.token_count for m in store.get_conversation(cid).main.messages)


# ---------------------------------------------------------------------------
# Creation and appends
# ---------------------------------------------------------------------------


def test_create_conversation_has_empty_main_branch(store: ConversationStore):
    conv = store.create_conversation("t")
    assert conv.title == "t"
    assert list(conv.branches) == [MAIN_BRANCH]
    assert conv.main.parent_message_id == ""
    assert conv.main.messages == []
    assert conv.created_at == conv.updated_at
    assert conv.max_context_tokens == 8000
    assert conv.total_token_count == 0


def test_scenario_context_in_order(store: ConversationStore):
    conv = store.create_conversation("t")
    store.add_message(conv.id, "user", "Hi")
    store.add_message(conv.id, "assistant", "Hello")
    assert [m.content for m in store.get_context(conv.id)] == ["Hi", "Hello"]


def test_add_message_links_parent_and_counts_tokens(store: ConversationStore):
    conv = store.create_conversation()
    first = store.add_message(conv.id, ChatRole.USER, "abcdefgh")
    second = store.add_message(conv.id, ChatRole.ASSISTANT, "abc")
    assert first.parent_id is None
    assert second.parent_id == first.id
    assert first.token_count == 2
    assert store.get_conversation(conv.id).total_token_count == 3


def test_add_message_rejects_system_role(store: ConversationStore):
    conv = store.create_conversation()
    with pytest.raises(ValidationError, match="role"):
        store.add_message(conv.id, "system", "nope")


def test_add_message_unknown_ids(store: ConversationStore):
    with pytest.raises(NotFoundError, match="conversation"):
        store.add_message("missing", "user", "x")
    conv = store.create_conversation()
    with pytest.raises(NotFoundError, match="branch"):
        store.add_message(conv.id, "user", "x", branch_id="nope")


def test_messages_are_immutable(store: ConversationStore):
    conv = store.create_conversation()
    message = store.add_message(conv.id, "user", "x")
    with pytest.raises(Exception):  # noqa: B017
        message.content = "changed"


def test_updated_at_is_monotonic(store: ConversationStore):
    conv = store.create_conversation()
    stamps = [conv.updated_at]
    for text in ("a", "b", "c"):
        store.add_message(conv.id, "user", text)
        stamps.append(store.get_conversation(conv.id).updated_at)
    assert stamps == sorted(stamps)
    assert stamps[-1] > stamps[0]
    assert store.get_conversation(conv.id).updated_at >= conv.created_at


def test_updated_at_never_goes_backwards():
    times = iter([100.0, 50.0])
    store = ConversationStore(clock=lambda: next(times, 10.0))
    conv = store.create_conversation()
    store.add_message(conv.id, "user", "x")
    assert store.get_conversation(conv.id).updated_at == 100.0


def test_threshold_must_be_below_budget():
    with pytest.raises(ValueError, match="strictly less"):
        ConversationStore(max_context_tokens=100, compression_threshold=100)


# ---------------------------------------------------------------------------
# Context budget
# ---------------------------------------------------------------------------


def test_get_context_stops_at_budget(store: ConversationStore):
    conv = store.create_conversation()
    for text in ("a" * 40, "b" * 40, "c" * 40):  # 10 tokens each
        store.add_message(conv.id, "user", text)
    context = store.get_context(conv.id, max_tokens=25)
    assert [m.content[0] for m in context] == ["b", "c"]


def test_get_context_empty_when_newest_exceeds_budget(store: ConversationStore):
    conv = store.create_conversation()
    store.add_message(conv.id, "user", "short")
    store.add_message(conv.id, "assistant", "x" * 100)  # 25 tokens
    assert store.get_context(conv.id, max_tokens=24) == []


def test_get_context_unknown_conversation(store: ConversationStore):
    with pytest.raises(NotFoundError):
        store.get_context("missing")


# ---------------------------------------------------------------------------
# Compression
# ---------------------------------------------------------------------------


def test_eleventh_message_over_threshold_compresses_to_six(store: ConversationStore):
    conv = store.create_conversation()
    added = [store.add_message(conv.id, "user", "x" * 2400) for _ in range(10)]  # 600 each
    assert len(store.get_conversation(conv.id).main.messages) == 10

    added.append(store.add_message(conv.id, "assistant", "y" * 2400))
    main = store.get_conversation(conv.id).main
    assert len(main.messages) == 6
    assert main.messages[0].role == ChatRole.SYSTEM
    assert main.messages[0].content.startswith(SUMMARY_PREFIX)
    assert [m.content for m in main.messages[1:]] == [m.content for m in added[-5:]]
    assert store.get_conversation(conv.id).total_token_count == _main_sum(store, conv.id)


def test_nine_messages_never_compress(store: ConversationStore):
    conv = store.create_conversation()
    for _ in range(9):
        store.add_message(conv.id, "user", "x" * 3200)  # 800 each, 7200 total
    conv = store.get_conversation(conv.id)
    assert len(conv.main.messages) == 9
    assert conv.total_token_count == 7200


def test_total_matches_main_sum_through_many_appends(store: ConversationStore):
    conv = store.create_conversation()
    for i in range(40):
        store.add_message(conv.id, "user" if i % 2 == 0 else "assistant", "z" * (500 + i * 37))
        assert store.get_conversation(conv.id).total_token_count == _main_sum(store, conv.id)


def test_summary_mentions_user_topics(store: ConversationStore):
    conv = store.create_conversation()
    store.add_message(conv.id, "user", "please debug my code " + "x" * 2400)
    for _ in range(10):
        store.add_message(conv.id, "assistant", "y" * 2400)
    summary = store.get_conversation(conv.id).main.messages[0]
    assert "code" in summary.content
    assert "debugging" in summary.content


def test_thread_walk_reaches_summary_after_compression(store: ConversationStore):
    conv = store.create_conversation()
    for _ in range(11):
        last = store.add_message(conv.id, "user", "x" * 2400)
    chain = store.thread(conv.id, last.id)
    assert len(chain) == 6
    assert chain[0].role == ChatRole.SYSTEM
    assert chain[-1].id == last.id


# ---------------------------------------------------------------------------
# Branches
# ---------------------------------------------------------------------------


def test_create_branch_copies_prefix(store: ConversationStore):
    conv = store.create_conversation()
    m1 = store.add_message(conv.id, "user", "one")
    store.add_message(conv.id, "assistant", "two")
    branch = store.create_branch(conv.id, m1.id)
    assert branch.parent_message_id == m1.id
    assert [m.content for m in branch.messages] == ["one"]
    assert branch.id != MAIN_BRANCH


def test_branches_diverge_independently(store: ConversationStore):
    conv = store.create_conversation()
    m1 = store.add_message(conv.id, "user", "one")
    branch = store.create_branch(conv.id, m1.id)
    store.add_message(conv.id, "assistant", "main reply")
    store.add_message(conv.id, "assistant", "branch reply", branch_id=branch.id)

    main = store.switch_to_branch(conv.id, MAIN_BRANCH)
    forked = store.switch_to_branch(conv.id, branch.id)
    assert [m.content for m in main.messages] == ["one", "main reply"]
    assert [m.content for m in forked.messages] == ["one", "branch reply"]
    assert main.messages[0] is not forked.messages[0]


def test_branch_appends_do_not_change_main_total(store: ConversationStore):
    conv = store.create_conversation()
    m1 = store.add_message(conv.id, "user", "abcd")
    branch = store.create_branch(conv.id, m1.id)
    store.add_message(conv.id, "assistant", "x" * 400, branch_id=branch.id)
    assert store.get_conversation(conv.id).total_token_count == 1


def test_branch_compresses_on_its_own_token_sum(store: ConversationStore):
    conv = store.create_conversation()
    m1 = store.add_message(conv.id, "user", "start")
    branch = store.create_branch(conv.id, m1.id)
    for _ in range(10):
        store.add_message(conv.id, "assistant", "x" * 2400, branch_id=branch.id)
    forked = store.switch_to_branch(conv.id, branch.id)
    assert len(forked.messages) == 6
    assert len(store.get_conversation(conv.id).main.messages) == 1
    assert store.get_conversation(conv.id).total_token_count == _main_sum(store, conv.id)


def test_create_branch_unknown_parent(store: ConversationStore):
    conv = store.create_conversation()
    with pytest.raises(NotFoundError, match="message"):
        store.create_branch(conv.id, "missing")


def test_switch_to_unknown_branch(store: ConversationStore):
    conv = store.create_conversation()
    with pytest.raises(NotFoundError, match="branch"):
        store.switch_to_branch(conv.id, "nope")


# ---------------------------------------------------------------------------
# Lookup helpers
# ---------------------------------------------------------------------------


def test_get_message_and_thread(store: ConversationStore):
    conv = store.create_conversation()
    a = store.add_message(conv.id, "user", "a")
    b = store.add_message(conv.id, "assistant", "b")
    c = store.add_message(conv.id, "user", "c")
    assert store.get_message(conv.id, b.id) == b
    assert [m.id for m in store.thread(conv.id, c.id)] == [a.id, b.id, c.id]
    with pytest.raises(NotFoundError):
        store.get_message(conv.id, "missing")


def test_to_chat_messages(store: ConversationStore):
    conv = store.create_conversation()
    store.add_message(conv.id, "user", "hi")
    chat = ConversationStore.to_chat_messages(store.get_context(conv.id))
    assert chat[0].role == ChatRole.USER
    assert chat[0].content == "hi"


def test_list_conversations_most_recent_first(store: ConversationStore):
    older = store.create_conversation("older")
    newer = store.create_conversation("newer")
    assert [c.id for c in store.list_conversations()] == [newer.id, older.id]
    store.add_message(older.id, "user", "bump")
    assert store.list_conversations()[0].id == older.id


def test_rename_conversation(store: ConversationStore):
    conv = store.create_conversation("old")
    assert store.rename_conversation(conv.id, "new").title == "new"


def test_delete_is_idempotent(store: ConversationStore):
    conv = store.create_conversation()
    store.delete_conversation(conv.id)
    store.delete_conversation(conv.id)
    with pytest.raises(NotFoundError):
        store.get_conversation(conv.id)


# ---------------------------------------------------------------------------
# Import / export / persistence
# ---------------------------------------------------------------------------


def test_json_round_trip_preserves_content(store: ConversationStore):
    conv = store.create_conversation("round trip")
    store.add_message(conv.id, "user", "question?")
    store.add_message(conv.id, "assistant", "answer!")
    exported = store.export_to_json(conv.id)
    assert "exported_at" in json.loads(exported)

    imported = store.import_from_json(exported)
    original = store.get_conversation(conv.id)
    assert imported.id != original.id
    assert [m.content for m in imported.main.messages] == [
        m.content for m in original.main.messages
    ]
    assert imported.total_token_count == original.total_token_count
    assert imported.title == "round trip"


def test_import_recomputes_total(store: ConversationStore):
    conv = store.create_conversation()
    store.add_message(conv.id, "user", "abcdefgh")
    data = json.loads(store.export_to_json(conv.id))
    data["total_token_count"] = 999
    imported = store.import_from_json(json.dumps(data))
    assert imported.total_token_count == 2


@pytest.mark.parametrize("payload", ["not json", "[]", '{"id": "x"}'])
def test_import_rejects_malformed(store: ConversationStore, payload: str):
    with pytest.raises(ValidationError):
        store.import_from_json(payload)


def test_import_requires_main_branch(store: ConversationStore):
    conv = store.create_conversation()
    data = json.loads(store.export_to_json(conv.id))
    data["branches"] = {}
    with pytest.raises(ValidationError, match="main branch"):
        store.import_from_json(json.dumps(data))


def test_export_markdown(store: ConversationStore):
    conv = store.create_conversation("Notes")
    store.add_message(conv.id, "user", "Hi")
    store.add_message(conv.id, "assistant", "Hello")
    markdown = store.export_to_markdown(conv.id)
    assert markdown.startswith("# Notes\n")
    assert "Messages: 2" in markdown
    assert "## User (" in markdown
    assert "## Assistant (" in markdown
    assert markdown.index("Hi") < markdown.index("Hello")


def test_export_unknown_conversation(store: ConversationStore):
    with pytest.raises(NotFoundError):
        store.export_to_markdown("missing")
    with pytest.raises(NotFoundError):
        store.export_to_json("missing")


def test_conversations_reload_from_repository():
    kv = InMemoryKeyValueStore()
    first = ConversationStore(Repository(kv, "conversations", Conversation))
    conv = first.create_conversation("kept")
    first.add_message(conv.id, "user", "persisted")
    second = ConversationStore(Repository(kv, "conversations", Conversation))
    reloaded = second.get_conversation(conv.id)
    assert [m.content for m in reloaded.main.messages] == ["persisted"]


def test_corrupt_stored_conversation_is_skipped(caplog: pytest.LogCaptureFixture):
    kv = InMemoryKeyValueStore()
    kv.put("conversations/broken", "{")
    with caplog.at_level(logging.WARNING):
        store = ConversationStore(Repository(kv, "conversations", Conversation))
    assert store.list_conversations() == []


def test_imported_main_branch_keeps_total_in_sync(store: ConversationStore):
    payload = {
        "id": "ignored",
        "title": "imported",
        "created_at": 1.0,
        "updated_at": 2.0,
        "branches": {"main": {"id": "root", "created_at": 1.0, "messages": []}},
    }
    conv = store.import_from_json(json.dumps(payload))
    assert conv.main.id == MAIN_BRANCH

    for _ in range(11):
        store.add_message(conv.id, "user", "x" * 2400)
    conv = store.get_conversation(conv.id)
    assert len(conv.main.messages) == 6
    assert conv.total_token_count == _main_sum(store, conv.id)


def test_compression_only_reparents_oldest_kept_message(store: ConversationStore):
    conv = store.create_conversation()
    added = [store.add_message(conv.id, "user", f"{i:02d}" + "x" * 2398) for i in range(11)]
    kept = store.get_conversation(conv.id).main.messages[1:]
    assert [m.id for m in kept] == [m.id for m in added[-5:]]
    assert kept[0].parent_id != added[-5].parent_id
    assert kept[1:] == added[-4:]
