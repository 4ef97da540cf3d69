from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import RNS

from .codec import decode
from .constants import (
    CLIENT_EVENTS,
    EV_ADD_USER,
    EV_CONVERSATIONS,
    EV_GET_CONVERSATIONS,
    EV_GET_MESSAGES,
    EV_MESSAGES,
    EV_PING,
    EV_PONG,
    EV_RECEIVE_MESSAGE,
    EV_SEND_MESSAGE,
    F_CONVERSATION_ID,
    F_MESSAGE,
    F_RECEIVER_ID,
    F_SENDER_ID,
    F_SEQ,
    F_TS,
    F_USER_ID,
    K_BODY,
    K_EVENT,
)
from .envelope import make_envelope, validate_envelope
from .errors import InvalidRequest, StoreUnavailable
from .store import Message
from .util import normalize_user_id, optional_str

if TYPE_CHECKING:
    from .service import HubService


@dataclass(frozen=True)
class RouteResult:
    """Outcome of one ``route`` call.

    Persistence and live delivery succeed or fail independently.
    """

    conversation_id: str | None
    message: Message | None
    persisted: bool
    delivered: bool
    store_error: str | None = None


class MessageRouter:
    """
    Decodes client packets and routes chat messages.

    This class is responsible for:
    - Decoding and validating incoming envelopes
    - Dispatching by event name (addUser, sendMessage, history queries, ping)
    - Persisting each message and pushing it live to an online recipient
    - Answering conversation list and history queries

    Unlike session handling, routing does its own locking: presence reads
    take the hub state lock briefly, store and transport I/O run without it.
    """

    def __init__(self, hub: HubService) -> None:
        self.hub = hub
        self.log = logging.getLogger("duochat.router")

    def route_packet(
        self,
        link: RNS.Link,
        data: bytes,
        outgoing: list[tuple[RNS.Link, bytes]],
    ) -> None:
        """Main entry point for one packet received on ``link``."""
        with self.hub.state_lock:
            sess = self.hub.session_manager.get_session(link)
            if sess is None:
                return
            self.hub.stats_manager.inc("pkts_in")
            self.hub.stats_manager.inc("bytes_in", len(data))

            if not self.hub.session_manager.refill_and_take(link, 1.0):
                self.hub.stats_manager.inc("rate_limited")
                self.log.debug("Rate limited link_id=%s", self.hub.fmt_link_id(link))
                self.hub.emit_error(outgoing, link, "rate limited")
                return

        try:
            env = decode(data)
            validate_envelope(env)
        except Exception as e:
            self.hub.stats_manager.inc("pkts_bad")
            self.log.debug(
                "Bad packet link_id=%s bytes=%s err=%s",
                self.hub.fmt_link_id(link),
                len(data),
                e,
            )
            self.hub.emit_error(outgoing, link, f"bad message: {e}")
            return

        event = env.get(K_EVENT)
        body = env.get(K_BODY)

        if self.log.isEnabledFor(logging.DEBUG):
            self.log.debug(
                "RX link_id=%s event=%s bytes=%s body_type=%s",
                self.hub.fmt_link_id(link),
                event,
                len(data),
                type(body).__name__,
            )

        if event == EV_PONG:
            with self.hub.state_lock:
                sess["awaiting_pong"] = None
            return
        if event == EV_PING:
            self.hub.queue_env(
                outgoing, link, make_envelope(EV_PONG, src=self.hub.src_hash, body=body)
            )
            return
        if event == EV_ADD_USER:
            self._handle_add_user(link, body, outgoing)
            return

        with self.hub.state_lock:
            user_id = self.hub.session_manager.identified_user(link)

        if event not in CLIENT_EVENTS:
            self.hub.emit_error(outgoing, link, f"unknown event {event!r}")
            return
        if user_id is None:
            self.hub.emit_error(outgoing, link, "identify first with addUser")
            return

        try:
            if event == EV_SEND_MESSAGE:
                self._handle_send_message(link, user_id, body, outgoing)
            elif event == EV_GET_CONVERSATIONS:
                self._handle_get_conversations(link, user_id, outgoing)
            else:
                self._handle_get_messages(link, user_id, body, outgoing)
        except InvalidRequest as e:
            self.hub.emit_error(outgoing, link, str(e))
        except StoreUnavailable as e:
            self.log.warning(
                "Store unavailable event=%s user=%s err=%s", event, user_id, e
            )
            self.hub.emit_error(outgoing, link, "store unavailable")

    def _handle_add_user(
        self, link: RNS.Link, body: Any, outgoing: list[tuple[RNS.Link, bytes]]
    ) -> None:
        with self.hub.state_lock:
            try:
                self.hub.session_manager.identify(link, body)
            except ValueError as e:
                self.hub.emit_error(outgoing, link, str(e))
            except LookupError:
                return

    def _handle_send_message(
        self,
        link: RNS.Link,
        user_id: str,
        body: Any,
        outgoing: list[tuple[RNS.Link, bytes]],
    ) -> None:
        if not isinstance(body, dict):
            raise InvalidRequest("sendMessage body must be a map")

        # The sender is whoever identified on this link; a payload senderId
        # is accepted only when it agrees.
        claimed = body.get(F_SENDER_ID)
        if claimed is not None and normalize_user_id(claimed) != user_id:
            raise InvalidRequest("senderId does not match the identified user")

        result = self.route(
            user_id,
            body.get(F_RECEIVER_ID),
            body.get(F_MESSAGE),
            body.get(F_CONVERSATION_ID),
        )
        if not result.persisted:
            self.hub.emit_error(
                outgoing, link, f"message not saved: {result.store_error}"
            )

    def route(
        self,
        sender_id: Any,
        recipient_id: Any,
        text: Any,
        conversation_id: Any = None,
    ) -> RouteResult:
        """
        Persist one message and push it to the recipient if online.

        Raises ``InvalidRequest`` before any side effect when the sender or
        text is missing, or when neither a recipient nor a conversation is
        given. Store failures are reported in the result, not raised.
        """
        sender = normalize_user_id(sender_id)
        if sender is None:
            raise InvalidRequest("senderId is required")
        if not isinstance(text, str) or not text:
            raise InvalidRequest("message text is required")
        if len(text) > int(self.hub.config.max_message_chars):
            raise InvalidRequest("message text too long")

        recipient = normalize_user_id(recipient_id)
        cid = optional_str(conversation_id)
        if recipient is None and cid is None:
            raise InvalidRequest("receiverId or conversationId is required")
        if recipient == sender:
            raise InvalidRequest("receiverId must differ from senderId")

        store = self.hub.store
        message: Message | None = None
        store_error: str | None = None
        try:
            if cid is None:
                cid = store.ensure_conversation(sender, recipient).id
            elif recipient is None:
                conv = store.get_conversation(cid)
                recipient = conv.other_member(sender) if conv is not None else None
            message = store.append_message(cid, sender, text)
        except StoreUnavailable as e:
            store_error = str(e)
            self.hub.stats_manager.inc("store_errors")
            self.log.warning(
                "Message not persisted sender=%s recipient=%s conversation=%s err=%s",
                sender,
                recipient,
                cid,
                e,
            )
        else:
            self.hub.stats_manager.inc("msgs_persisted")

        delivered = False
        if recipient is not None:
            with self.hub.state_lock:
                target = self.hub.presence.lookup(recipient)
            if target is not None:
                push = make_envelope(
                    EV_RECEIVE_MESSAGE,
                    src=self.hub.src_hash,
                    body={
                        F_SENDER_ID: sender,
                        F_MESSAGE: text,
                        F_CONVERSATION_ID: cid,
                        F_RECEIVER_ID: recipient,
                    },
                )
                delivered = self.hub.send(target, push)
                if delivered:
                    self.hub.stats_manager.inc("msgs_delivered")

        self.log.info(
            "Routed sender=%s recipient=%s conversation=%s persisted=%s delivered=%s",
            sender,
            recipient,
            cid,
            message is not None,
            delivered,
        )
        return RouteResult(
            conversation_id=cid,
            message=message,
            persisted=message is not None,
            delivered=delivered,
            store_error=store_error,
        )

    def _handle_get_conversations(
        self, link: RNS.Link, user_id: str, outgoing: list[tuple[RNS.Link, bytes]]
    ) -> None:
        conversations = self.hub.store.list_conversations_for_user(user_id)
        body = [
            {F_CONVERSATION_ID: c.id, F_USER_ID: c.other_member(user_id)}
            for c in conversations
        ]
        self.hub.queue_env(
            outgoing, link, make_envelope(EV_CONVERSATIONS, src=self.hub.src_hash, body=body)
        )

    def _handle_get_messages(
        self,
        link: RNS.Link,
        user_id: str,
        body: Any,
        outgoing: list[tuple[RNS.Link, bytes]],
    ) -> None:
        cid = body.get(F_CONVERSATION_ID) if isinstance(body, dict) else body
        cid = optional_str(cid)
        if cid is None:
            raise InvalidRequest("getMessages requires a conversationId")

        conv = self.hub.store.get_conversation(cid)
        if conv is None or not conv.has_member(user_id):
            raise InvalidRequest("unknown conversation")

        messages = self.hub.store.list_messages(
            cid, limit=int(self.hub.config.history_limit)
        )
        reply = {
            F_CONVERSATION_ID: cid,
            "messages": [
                {
                    F_SENDER_ID: m.sender_id,
                    F_MESSAGE: m.text,
                    F_SEQ: m.seq,
                    F_TS: m.ts,
                }
                for m in messages
            ],
        }
        self.hub.queue_env(
            outgoing, link, make_envelope(EV_MESSAGES, src=self.hub.src_hash, body=reply)
        )
