import pytest

from duochat.errors import InvalidRequest, StoreUnavailable
from duochat.store import (
    MemoryConversationStore,
    RetryingStore,
    TomlConversationStore,
)


@pytest.fixture(params=["memory", "toml"])
def store(request, tmp_path):
    if request.param == "memory":
        return MemoryConversationStore()
    return TomlConversationStore(str(tmp_path / "conversations.toml"))


def test_ensure_conversation_is_order_independent(store) -> None:
    a = store.ensure_conversation("u1", "u2")
    b = store.ensure_conversation("u2", "u1")
    assert a == b
    assert a.members == ("u1", "u2")
    assert store.find_conversation("u2", "u1") == a
    assert store.get_conversation(a.id) == a


def test_find_conversation_absent(store) -> None:
    assert store.find_conversation("u1", "u2") is None
    assert store.get_conversation("nope") is None


@pytest.mark.parametrize("members", [("u1", "u1"), ("u1", ""), ("u1",), ("a", "b", "c")])
def test_conversation_members_are_validated(store, members) -> None:
    with pytest.raises(InvalidRequest):
        store.create_conversation(members)


def test_messages_get_increasing_seq(store) -> None:
    conv = store.ensure_conversation("u1", "u2")
    for text in ("one", "two", "three"):
        store.append_message(conv.id, "u1", text)

    messages = store.list_messages(conv.id)
    assert [m.text for m in messages] == ["one", "two", "three"]
    assert [m.seq for m in messages] == [1, 2, 3]
    assert all(m.conversation_id == conv.id for m in messages)


def test_list_messages_limit_keeps_most_recent(store) -> None:
    conv = store.ensure_conversation("u1", "u2")
    for i in range(5):
        store.append_message(conv.id, "u2", f"m{i}")
    assert [m.text for m in store.list_messages(conv.id, limit=2)] == ["m3", "m4"]


def test_append_with_known_message_id_is_not_stored_twice(store) -> None:
    conv = store.ensure_conversation("u1", "u2")

    first = store.append_message(conv.id, "u1", "once", message_id="m-1")
    again = store.append_message(conv.id, "u1", "once", message_id="m-1")

    assert again == first
    assert [m.id for m in store.list_messages(conv.id)] == ["m-1"]


def test_list_conversations_for_user(store) -> None:
    c12 = store.ensure_conversation("u1", "u2")
    c13 = store.ensure_conversation("u1", "u3")
    store.ensure_conversation("u2", "u3")

    ids = {c.id for c in store.list_conversations_for_user("u1")}
    assert ids == {c12.id, c13.id}
    assert store.list_conversations_for_user("u9") == []


def test_toml_store_survives_reopen(tmp_path) -> None:
    path = str(tmp_path / "nested" / "conversations.toml")
    first = TomlConversationStore(path)
    conv = first.ensure_conversation("u1", "u2")
    first.append_message(conv.id, "u1", "hello")
    first.append_message(conv.id, "u2", 'quote " and\nnewline')

    second = TomlConversationStore(path)
    assert second.ensure_conversation("u2", "u1") == conv
    msg = second.append_message(conv.id, "u1", "again")
    assert msg.seq == 3
    assert [m.text for m in second.list_messages(conv.id)] == [
        "hello",
        'quote " and\nnewline',
        "again",
    ]


def test_toml_store_append_leaves_index_untouched(tmp_path, monkeypatch) -> None:
    path = tmp_path / "conversations.toml"
    store = TomlConversationStore(str(path))
    conv = store.ensure_conversation("u1", "u2")
    index_before = path.read_bytes()

    reads = []
    real_read = store._read
    monkeypatch.setattr(store, "_read", lambda: reads.append(1) or real_read())

    for i in range(3):
        store.append_message(conv.id, "u1", f"m{i}")
    store.ensure_conversation("u2", "u1")

    assert reads == []
    assert path.read_bytes() == index_before
    log = (tmp_path / "conversations.messages" / f"{conv.id}.toml").read_text(
        encoding="utf-8"
    )
    assert log.count("[[messages]]") == 3


def test_toml_store_reloads_index_changed_by_another_writer(tmp_path) -> None:
    path = str(tmp_path / "conversations.toml")
    first = TomlConversationStore(path)
    first.ensure_conversation("u1", "u2")

    second = TomlConversationStore(path)
    c13 = second.ensure_conversation("u1", "u3")

    assert first.get_conversation(c13.id) == c13
    assert first.ensure_conversation("u3", "u1") == c13
    assert len(first.list_conversations_for_user("u1")) == 2


@pytest.mark.parametrize("cid", ["../escape", "a/b", "", "x" * 200])
def test_toml_store_rejects_unsafe_conversation_ids(tmp_path, cid) -> None:
    store = TomlConversationStore(str(tmp_path / "conversations.toml"))
    with pytest.raises(InvalidRequest):
        store.append_message(cid, "u1", "hi")
    assert not (tmp_path / "escape.toml").exists()


def test_toml_store_rejects_corrupt_file(tmp_path) -> None:
    path = tmp_path / "conversations.toml"
    path.write_text("[conversations\nbroken = ", encoding="utf-8")
    with pytest.raises(StoreUnavailable):
        TomlConversationStore(str(path))


class FlakyStore(MemoryConversationStore):
    def __init__(self, failures: int) -> None:
        super().__init__()
        self.failures = failures
        self.calls = 0

    def append_message(self, conversation_id, sender_id, text, message_id=None):
        self.calls += 1
        if self.calls <= self.failures:
            raise StoreUnavailable("temporarily unavailable")
        return super().append_message(
            conversation_id, sender_id, text, message_id=message_id
        )


def test_retrying_store_recovers_from_transient_failures() -> None:
    inner = FlakyStore(failures=2)
    store = RetryingStore(inner, attempts=3, max_wait_s=0)

    msg = store.append_message("c1", "u1", "hi")

    assert inner.calls == 3
    assert msg.seq == 1


def test_retrying_store_gives_up() -> None:
    inner = FlakyStore(failures=5)
    store = RetryingStore(inner, attempts=2, max_wait_s=0)

    with pytest.raises(StoreUnavailable):
        store.append_message("c1", "u1", "hi")
    assert inner.calls == 2
    assert inner.list_messages("c1") == []


def test_retrying_store_does_not_retry_invalid_requests() -> None:
    store = RetryingStore(MemoryConversationStore(), attempts=5, max_wait_s=0)
    with pytest.raises(InvalidRequest):
        store.ensure_conversation("u1", "u1")


class CommitThenFailStore(MemoryConversationStore):
    """Commits the first append, then reports it as failed."""

    def __init__(self) -> None:
        super().__init__()
        self.calls = 0

    def append_message(self, conversation_id, sender_id, text, message_id=None):
        self.calls += 1
        msg = super().append_message(
            conversation_id, sender_id, text, message_id=message_id
        )
        if self.calls == 1:
            raise StoreUnavailable("timed out waiting for commit ack")
        return msg


def test_retrying_store_does_not_duplicate_committed_append() -> None:
    inner = CommitThenFailStore()
    store = RetryingStore(inner, attempts=3, max_wait_s=0)

    msg = store.append_message("c1", "u1", "hi")

    assert inner.calls == 2
    assert msg.seq == 1
    assert [m.text for m in inner.list_messages("c1")] == ["hi"]
