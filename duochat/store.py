"""Conversation and message persistence.

The hub talks to storage only through :class:`ConversationStore`. Two
backends ship with it: an in-process store (tests, ephemeral hubs) and a
TOML store maintained with tomlkit. :class:`RetryingStore` wraps
either one with bounded exponential backoff.
"""

from __future__ import annotations

import logging
import os
import re
import threading
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Iterable

from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from .errors import InvalidRequest, StoreUnavailable
from .util import normalize_user_id


@dataclass(frozen=True)
class Conversation:
    id: str
    members: tuple[str, str]
    created_ts: float = 0.0

    def has_member(self, user_id: str) -> bool:
        return user_id in self.members

    def other_member(self, user_id: str) -> str | None:
        if user_id not in self.members:
            return None
        a, b = self.members
        return b if a == user_id else a


@dataclass(frozen=True)
class Message:
    id: str
    conversation_id: str
    sender_id: str
    text: str
    seq: int
    ts: float


def member_key(a: str, b: str) -> tuple[str, str]:
    """Order-independent key for a participant pair."""
    x, y = sorted((a, b))
    return x, y


def validate_members(members: Iterable[Any]) -> tuple[str, str]:
    items = list(members)
    if len(items) != 2:
        raise InvalidRequest("a conversation has exactly two members")
    norm = [normalize_user_id(m) for m in items]
    if norm[0] is None or norm[1] is None:
        raise InvalidRequest("conversation members must be non-empty user ids")
    if norm[0] == norm[1]:
        raise InvalidRequest("conversation members must be distinct")
    return member_key(norm[0], norm[1])


def new_id() -> str:
    return uuid.uuid4().hex


class ConversationStore:
    """Interface the routing core needs from durable storage.

    ``ensure_conversation`` is the only way the core creates conversations;
    it must be atomic with respect to other calls on the same store so one
    pair never ends up with two records.

    ``append_message`` takes an optional ``message_id``. When a message with
    that id is already stored in the conversation, the stored message is
    returned and nothing is written. A backend may only raise
    ``StoreUnavailable`` from an append when either nothing was written or
    the write carried a ``message_id``; otherwise a retry duplicates it.
    """

    def find_conversation(self, a: str, b: str) -> Conversation | None:
        raise NotImplementedError

    def create_conversation(self, members: Iterable[str]) -> Conversation:
        raise NotImplementedError

    def ensure_conversation(self, a: str, b: str) -> Conversation:
        raise NotImplementedError

    def get_conversation(self, conversation_id: str) -> Conversation | None:
        raise NotImplementedError

    def append_message(
        self,
        conversation_id: str,
        sender_id: str,
        text: str,
        message_id: str | None = None,
    ) -> Message:
        raise NotImplementedError

    def list_messages(
        self, conversation_id: str, *, limit: int | None = None
    ) -> list[Message]:
        raise NotImplementedError

    def list_conversations_for_user(self, user_id: str) -> list[Conversation]:
        raise NotImplementedError


def _tail(messages: list[Message], limit: int | None) -> list[Message]:
    messages.sort(key=lambda m: m.seq)
    if limit is not None and limit > 0:
        return messages[-limit:]
    return messages


class MemoryConversationStore(ConversationStore):
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._conversations: dict[str, Conversation] = {}
        self._by_pair: dict[tuple[str, str], str] = {}
        self._messages: dict[str, list[Message]] = {}
        self._by_message_id: dict[str, Message] = {}

    def find_conversation(self, a: str, b: str) -> Conversation | None:
        with self._lock:
            cid = self._by_pair.get(member_key(a, b))
            return self._conversations.get(cid) if cid else None

    def _create_locked(self, pair: tuple[str, str]) -> Conversation:
        conv = Conversation(id=new_id(), members=pair, created_ts=time.time())
        self._conversations[conv.id] = conv
        self._by_pair.setdefault(pair, conv.id)
        return conv

    def create_conversation(self, members: Iterable[str]) -> Conversation:
        pair = validate_members(members)
        with self._lock:
            return self._create_locked(pair)

    def ensure_conversation(self, a: str, b: str) -> Conversation:
        pair = validate_members((a, b))
        with self._lock:
            cid = self._by_pair.get(pair)
            if cid is not None:
                return self._conversations[cid]
            return self._create_locked(pair)

    def get_conversation(self, conversation_id: str) -> Conversation | None:
        with self._lock:
            return self._conversations.get(conversation_id)

    def append_message(
        self,
        conversation_id: str,
        sender_id: str,
        text: str,
        message_id: str | None = None,
    ) -> Message:
        with self._lock:
            existing = self._by_message_id.get(message_id) if message_id else None
            if existing is not None and existing.conversation_id == conversation_id:
                return existing

            bucket = self._messages.setdefault(conversation_id, [])
            msg = Message(
                id=message_id or new_id(),
                conversation_id=conversation_id,
                sender_id=sender_id,
                text=text,
                seq=len(bucket) + 1,
                ts=time.time(),
            )
            bucket.append(msg)
            self._by_message_id[msg.id] = msg
            return msg

    def list_messages(
        self, conversation_id: str, *, limit: int | None = None
    ) -> list[Message]:
        with self._lock:
            return _tail(list(self._messages.get(conversation_id, ())), limit)

    def list_conversations_for_user(self, user_id: str) -> list[Conversation]:
        with self._lock:
            return [c for c in self._conversations.values() if c.has_member(user_id)]


_STORE_HEADER = """# duochat conversation store (TOML)
#
# Maintained by duochatd. Each conversation is a table under [conversations]
# keyed by its id. Messages live next to this file, one append-only TOML
# file per conversation in the ".messages" directory.

"""

_MESSAGES_HEADER = "# duochat messages for one conversation, appended by duochatd.\n\n"

# Conversation ids become file names under the messages directory.
_SAFE_ID = re.compile(r"[A-Za-z0-9_-]{1,128}")


class TomlConversationStore(ConversationStore):
    """Conversation store kept in TOML files on disk.

    The conversation index is one tomlkit document. It is cached in memory
    and only re-read when the file's mtime or size changes; writes go
    through a temp file and ``os.replace``. Messages are appended to a
    per-conversation file as ``[[messages]]`` entries, so storing a message
    never rewrites earlier history.
    """

    def __init__(self, path: str) -> None:
        self.path = path
        self.messages_dir = os.path.splitext(path)[0] + ".messages"
        self.log = logging.getLogger("duochat.store")
        self._write_lock = threading.RLock()
        self._doc = None
        self._stamp: tuple[int, int] | None = None
        self._next_seq: dict[str, int] = {}
        self._message_ids: dict[str, set[str]] = {}
        with self._write_lock:
            if not os.path.exists(path):
                self._create_file()
            try:
                os.makedirs(self.messages_dir, exist_ok=True)
            except OSError as e:
                raise StoreUnavailable(
                    f"cannot create {self.messages_dir}: {e}"
                ) from e
            self._load()

    def _create_file(self) -> None:
        parent = os.path.dirname(self.path)
        try:
            if parent:
                os.makedirs(parent, exist_ok=True)
            with open(self.path, "w", encoding="utf-8") as f:
                f.write(_STORE_HEADER + "[conversations]\n")
            os.chmod(self.path, 0o600)
        except OSError as e:
            raise StoreUnavailable(f"cannot create store {self.path}: {e}") from e

    def _file_stamp(self) -> tuple[int, int] | None:
        try:
            st = os.stat(self.path)
        except OSError:
            return None
        return st.st_mtime_ns, st.st_size

    def _read(self):
        from tomlkit import parse, table
        from tomlkit.exceptions import TOMLKitError

        try:
            with open(self.path, encoding="utf-8") as f:
                doc = parse(f.read())
        except (OSError, TOMLKitError) as e:
            raise StoreUnavailable(f"cannot read store {self.path}: {e}") from e

        if doc.get("conversations") is None:
            doc["conversations"] = table()
        return doc

    def _load(self) -> None:
        stamp = self._file_stamp()
        self._doc = self._read()
        self._stamp = stamp

    def _current(self):
        """Cached index document, reloaded if the file changed underneath us."""
        if self._doc is None or self._file_stamp() != self._stamp:
            self.log.debug("Reloading conversation index path=%s", self.path)
            self._load()
        return self._doc

    def _commit(self, mutate: Callable[[Any], Any]):
        from tomlkit import dumps

        with self._write_lock:
            doc = self._current()
            result = mutate(doc)

            file_stat = None
            try:
                file_stat = os.stat(self.path)
            except OSError:
                file_stat = None

            tmp_path = self.path + ".tmp"
            try:
                with open(tmp_path, "w", encoding="utf-8") as f:
                    f.write(dumps(doc))
                if file_stat is not None:
                    os.chmod(tmp_path, file_stat.st_mode)
                os.replace(tmp_path, self.path)
            except OSError as e:
                # The cached document now holds a change the file does not.
                self._doc = None
                raise StoreUnavailable(f"cannot write store {self.path}: {e}") from e

            self._stamp = self._file_stamp()
            return result

    @staticmethod
    def _to_conversation(cid: str, tbl: Any) -> Conversation | None:
        members = tbl.get("members")
        if not isinstance(members, list) or len(members) != 2:
            return None
        a, b = (str(m) for m in members)
        return Conversation(
            id=str(cid),
            members=member_key(a, b),
            created_ts=float(tbl.get("created_ts", 0.0)),
        )

    @staticmethod
    def _to_message(cid: str, tbl: Any) -> Message:
        return Message(
            id=str(tbl.get("id", "")),
            conversation_id=str(cid),
            sender_id=str(tbl.get("sender", "")),
            text=str(tbl.get("text", "")),
            seq=int(tbl.get("seq", 0)),
            ts=float(tbl.get("ts", 0.0)),
        )

    def _iter_conversations(self, doc) -> Iterable[Conversation]:
        for cid, tbl in doc["conversations"].items():
            if not isinstance(tbl, dict):
                continue
            conv = self._to_conversation(cid, tbl)
            if conv is not None:
                yield conv

    def _find_in(self, doc, pair: tuple[str, str]) -> Conversation | None:
        for conv in self._iter_conversations(doc):
            if conv.members == pair:
                return conv
        return None

    @staticmethod
    def _insert_conversation(doc, pair: tuple[str, str]) -> Conversation:
        from tomlkit import table

        conv = Conversation(id=new_id(), members=pair, created_ts=time.time())
        tbl = table()
        tbl["members"] = list(conv.members)
        tbl["created_ts"] = conv.created_ts
        doc["conversations"][conv.id] = tbl
        return conv

    def find_conversation(self, a: str, b: str) -> Conversation | None:
        with self._write_lock:
            return self._find_in(self._current(), member_key(a, b))

    def create_conversation(self, members: Iterable[str]) -> Conversation:
        pair = validate_members(members)
        return self._commit(lambda doc: self._insert_conversation(doc, pair))

    def ensure_conversation(self, a: str, b: str) -> Conversation:
        pair = validate_members((a, b))
        with self._write_lock:
            conv = self._find_in(self._current(), pair)
            if conv is not None:
                return conv
            return self._commit(lambda doc: self._insert_conversation(doc, pair))

    def get_conversation(self, conversation_id: str) -> Conversation | None:
        with self._write_lock:
            tbl = self._current()["conversations"].get(conversation_id)
            if not isinstance(tbl, dict):
                return None
            return self._to_conversation(conversation_id, tbl)

    def _messages_path(self, conversation_id: str) -> str:
        if not isinstance(conversation_id, str) or not _SAFE_ID.fullmatch(
            conversation_id
        ):
            raise InvalidRequest("invalid conversationId")
        return os.path.join(self.messages_dir, conversation_id + ".toml")

    def _read_messages(self, conversation_id: str) -> list[Message]:
        from tomlkit import parse
        from tomlkit.exceptions import TOMLKitError

        path = self._messages_path(conversation_id)
        try:
            with open(path, encoding="utf-8") as f:
                doc = parse(f.read())
        except FileNotFoundError:
            return []
        except (OSError, TOMLKitError) as e:
            raise StoreUnavailable(f"cannot read messages {path}: {e}") from e
        return [self._to_message(conversation_id, t) for t in doc.get("messages", ())]

    def _load_counters(self, conversation_id: str) -> None:
        if conversation_id in self._next_seq:
            return
        existing = self._read_messages(conversation_id)
        self._next_seq[conversation_id] = max((m.seq for m in existing), default=0) + 1
        self._message_ids[conversation_id] = {m.id for m in existing}

    def append_message(
        self,
        conversation_id: str,
        sender_id: str,
        text: str,
        message_id: str | None = None,
    ) -> Message:
        from tomlkit import aot, document, dumps, table

        with self._write_lock:
            path = self._messages_path(conversation_id)
            self._load_counters(conversation_id)
            if message_id and message_id in self._message_ids[conversation_id]:
                for stored in self._read_messages(conversation_id):
                    if stored.id == message_id:
                        return stored

            msg = Message(
                id=message_id or new_id(),
                conversation_id=conversation_id,
                sender_id=sender_id,
                text=text,
                seq=self._next_seq[conversation_id],
                ts=time.time(),
            )
            row = table()
            row["id"] = msg.id
            row["sender"] = msg.sender_id
            row["text"] = msg.text
            row["seq"] = msg.seq
            row["ts"] = msg.ts
            entries = aot()
            entries.append(row)
            chunk = document()
            chunk["messages"] = entries

            try:
                fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o600)
                with os.fdopen(fd, "a", encoding="utf-8") as f:
                    if f.tell() == 0:
                        f.write(_MESSAGES_HEADER)
                    f.write("\n" + dumps(chunk))
            except OSError as e:
                raise StoreUnavailable(f"cannot write messages {path}: {e}") from e

            self._next_seq[conversation_id] = msg.seq + 1
            self._message_ids[conversation_id].add(msg.id)

        self.log.debug(
            "Stored message conversation=%s seq=%s", conversation_id, msg.seq
        )
        return msg

    def list_messages(
        self, conversation_id: str, *, limit: int | None = None
    ) -> list[Message]:
        with self._write_lock:
            messages = self._read_messages(conversation_id)
        return _tail(messages, limit)

    def list_conversations_for_user(self, user_id: str) -> list[Conversation]:
        with self._write_lock:
            return [
                c
                for c in self._iter_conversations(self._current())
                if c.has_member(user_id)
            ]


class RetryingStore(ConversationStore):
    """Retry ``StoreUnavailable`` from another store with jittered backoff.

    Validation errors (``InvalidRequest``) are never retried. Appends carry
    one message id across all attempts, so an attempt that committed before
    failing is not stored twice.
    """

    def __init__(
        self,
        inner: ConversationStore,
        *,
        attempts: int = 3,
        max_wait_s: float = 2.0,
    ) -> None:
        self.inner = inner
        self.log = logging.getLogger("duochat.store")
        self._retrying = Retrying(
            retry=retry_if_exception_type(StoreUnavailable),
            wait=wait_exponential_jitter(
                initial=min(0.1, max_wait_s), max=max_wait_s, jitter=min(0.1, max_wait_s)
            ),
            stop=stop_after_attempt(max(1, int(attempts))),
            before_sleep=before_sleep_log(self.log, logging.WARNING),
            reraise=True,
        )

    def _call(self, fn: Callable[..., Any], *args, **kwargs):
        return self._retrying.copy()(fn, *args, **kwargs)

    def find_conversation(self, a: str, b: str) -> Conversation | None:
        return self._call(self.inner.find_conversation, a, b)

    def create_conversation(self, members: Iterable[str]) -> Conversation:
        return self._call(self.inner.create_conversation, list(members))

    def ensure_conversation(self, a: str, b: str) -> Conversation:
        return self._call(self.inner.ensure_conversation, a, b)

    def get_conversation(self, conversation_id: str) -> Conversation | None:
        return self._call(self.inner.get_conversation, conversation_id)

    def append_message(
        self,
        conversation_id: str,
        sender_id: str,
        text: str,
        message_id: str | None = None,
    ) -> Message:
        return self._call(
            self.inner.append_message,
            conversation_id,
            sender_id,
            text,
            message_id=message_id or new_id(),
        )

    def list_messages(
        self, conversation_id: str, *, limit: int | None = None
    ) -> list[Message]:
        return self._call(self.inner.list_messages, conversation_id, limit=limit)

    def list_conversations_for_user(self, user_id: str) -> list[Conversation]:
        return self._call(self.inner.list_conversations_for_user, user_id)
