from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import RNS

from .constants import EV_GET_USERS
from .envelope import make_envelope
from .util import normalize_user_id

if TYPE_CHECKING:
    from .service import HubService


# Link lifecycle states. CLOSED is terminal.
UNIDENTIFIED = "unidentified"
IDENTIFIED = "identified"
CLOSED = "closed"


@dataclass
class _RateState:
    """Token bucket state for rate limiting."""

    tokens: float
    last_refill: float


class SessionManager:
    """
    Connection lifecycle for hub links.

    This class is responsible for:
    - Session creation when a link is established
    - The UNIDENTIFIED -> IDENTIFIED -> CLOSED state machine
    - Keeping the presence registry in step with identify/close
    - Staging the ``getUsers`` broadcast after every presence change
    - Rate limiting with a token bucket per link

    It is the only writer of ``hub.presence``. All methods must be called
    with the hub state lock held; they never send anything themselves.
    """

    def __init__(self, hub: HubService) -> None:
        self.hub = hub
        self.log = logging.getLogger("duochat.session")
        self.sessions: dict[RNS.Link, dict[str, Any]] = {}
        self._rate: dict[RNS.Link, _RateState] = {}

    def on_link_established(self, link: RNS.Link) -> None:
        self.sessions[link] = {
            "state": UNIDENTIFIED,
            "user_id": None,
            "connected_at": time.time(),
            "awaiting_pong": None,
        }
        self._rate[link] = _RateState(
            tokens=float(self.hub.config.rate_limit_msgs_per_minute),
            last_refill=time.monotonic(),
        )
        self.log.info("Session created link_id=%s", self.hub.fmt_link_id(link))

    def identify(self, link: RNS.Link, user_id: Any) -> str:
        """
        Bind ``user_id`` to ``link`` and broadcast the new online set.

        Re-identifying an identified link is a fresh registration, possibly
        under another user id. Raises ``ValueError`` for an unusable user id
        and ``LookupError`` for an unknown or closed link.
        """
        sess = self.sessions.get(link)
        if sess is None or sess["state"] == CLOSED:
            raise LookupError("link is not open")

        uid = normalize_user_id(user_id)
        if uid is None:
            raise ValueError("addUser requires a user id")

        old_uid = sess.get("user_id")
        superseded = self.hub.presence.register(uid, link)
        sess["state"] = IDENTIFIED
        sess["user_id"] = uid

        if superseded is not None:
            old_sess = self.sessions.get(superseded)
            if old_sess is not None and old_sess.get("user_id") == uid:
                # The older link stays open but no longer receives for uid.
                old_sess["state"] = UNIDENTIFIED
                old_sess["user_id"] = None
            self.log.info(
                "User moved to a new link user=%s old_link_id=%s link_id=%s",
                uid,
                self.hub.fmt_link_id(superseded),
                self.hub.fmt_link_id(link),
            )

        self.log.info(
            "Identified user=%s previous=%s link_id=%s",
            uid,
            old_uid,
            self.hub.fmt_link_id(link),
        )
        self.hub.stats_manager.inc("identifies")
        self.stage_presence()
        return uid

    def on_link_closed(self, link: RNS.Link) -> tuple[str | None, str | None]:
        """
        Tear down session state for a closed link.

        Returns (user_id, previous_state). The ``getUsers`` broadcast is only
        staged if the link still held a presence entry.
        """
        sess = self.sessions.pop(link, None)
        self._rate.pop(link, None)
        if sess is None:
            return None, None

        prev_state = sess.get("state")
        sess["state"] = CLOSED

        removed = self.hub.presence.unregister(link)
        if removed is not None:
            self.stage_presence()

        return sess.get("user_id"), prev_state

    def stage_presence(self) -> int:
        """Snapshot the online set for every registered link; returns its generation."""
        snapshot = self.hub.presence.snapshot()
        env = make_envelope(EV_GET_USERS, src=self.hub.src_hash, body=snapshot)
        generation = self.hub.stage_presence(env, self.hub.presence.links())
        self.hub.stats_manager.inc("presence_broadcasts")
        return generation

    def refill_and_take(self, link: RNS.Link, cost: float = 1.0) -> bool:
        """
        Token bucket rate limiting.

        Refills tokens based on elapsed time and attempts to take `cost` tokens.
        Returns True if tokens were available and taken, False if rate limited.
        """
        state = self._rate.get(link)
        if state is None:
            return True

        now = time.monotonic()
        per_min = float(max(1, int(self.hub.config.rate_limit_msgs_per_minute)))
        elapsed = max(0.0, now - state.last_refill)
        state.tokens = min(per_min, state.tokens + elapsed * per_min / 60.0)
        state.last_refill = now

        if state.tokens < cost:
            return False

        state.tokens -= cost
        return True

    def get_session(self, link: RNS.Link) -> dict[str, Any] | None:
        return self.sessions.get(link)

    def identified_user(self, link: RNS.Link) -> str | None:
        sess = self.sessions.get(link)
        if sess is None or sess["state"] != IDENTIFIED:
            return None
        return sess.get("user_id")

    def clear_all(self) -> list[RNS.Link]:
        """Drop all sessions and presence; returns the links for teardown."""
        links = list(self.sessions.keys())
        self.sessions.clear()
        self._rate.clear()
        self.hub.presence.clear()
        return links

    def get_stats(self) -> dict[str, int]:
        total = len(self.sessions)
        identified = sum(1 for s in self.sessions.values() if s["state"] == IDENTIFIED)
        return {
            "total": total,
            "identified": identified,
            "online_users": len(self.hub.presence),
        }
