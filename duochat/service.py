from __future__ import annotations

import logging
import os
import signal
import threading
import time
from typing import Any

import RNS

from .codec import encode
from .config import HubRuntimeConfig
from .constants import EV_ERROR, EV_PING
from .envelope import make_envelope
from .presence import PresenceRegistry
from .router import MessageRouter
from .session import SessionManager
from .stats import StatsManager
from .store import ConversationStore, RetryingStore, TomlConversationStore
from .util import expand_path


class HubService:
    def __init__(
        self, config: HubRuntimeConfig, store: ConversationStore | None = None
    ) -> None:
        self.config = config
        self.log = logging.getLogger("duochat.hub")

        # Sessions and presence are touched from Reticulum callbacks and the
        # ping thread. Guard them with a single re-entrant lock; never hold it
        # across store or transport I/O.
        self.state_lock = threading.RLock()

        # getUsers snapshots are numbered under state_lock and sent under
        # broadcast_lock. A link is never sent a generation older than one it
        # already has.
        self.broadcast_lock = threading.Lock()
        self._presence_generation = 0
        self._presence_pending: tuple[int, bytes, list[RNS.Link]] | None = None
        self._presence_sent: dict[RNS.Link, int] = {}
        self._shutdown = threading.Event()

        self.stats_manager = StatsManager()
        self.presence = PresenceRegistry(link_id=self.fmt_link_id)
        self.session_manager = SessionManager(self)
        self.router = MessageRouter(self)

        self.store: ConversationStore | None = store

        self.identity: RNS.Identity | None = None
        self.destination: RNS.Destination | None = None

        self._ping_thread: threading.Thread | None = None
        self._announce_thread: threading.Thread | None = None

    @property
    def src_hash(self) -> bytes:
        return self.identity.hash if self.identity is not None else b""

    def fmt_hash(self, h: Any, *, prefix: int = 12) -> str:
        if isinstance(h, (bytes, bytearray)):
            s = bytes(h).hex()
            return s if prefix <= 0 else s[: min(prefix, len(s))]
        return "-"

    def fmt_link_id(self, link: Any) -> str:
        lid = getattr(link, "link_id", None)
        if isinstance(lid, (bytes, bytearray)):
            return bytes(lid).hex()
        h = getattr(link, "hash", None)
        if isinstance(h, (bytes, bytearray)):
            return bytes(h).hex()
        return "-"

    def open_store(self) -> ConversationStore:
        if not self.config.store_path:
            raise RuntimeError("store_path is not set")
        inner = TomlConversationStore(expand_path(self.config.store_path))
        return RetryingStore(
            inner,
            attempts=self.config.store_retry_attempts,
            max_wait_s=self.config.store_retry_max_wait_s,
        )

    def start(self) -> None:
        self.stats_manager.set_start_time()

        if self.store is None:
            self.store = self.open_store()
            self.log.info("Conversation store path=%s", self.config.store_path)

        self.log.info("Starting Reticulum")
        RNS.Reticulum(configdir=self.config.configdir, require_shared_instance=False)

        if not self.config.identity_path:
            raise RuntimeError("identity_path is not set")
        self.identity = self._load_identity(self.config.identity_path)

        parts = [p for p in str(self.config.dest_name).split(".") if p]
        if not parts:
            raise ValueError("dest_name must not be empty")
        app_name, aspects = parts[0], parts[1:]

        self.destination = RNS.Destination(
            self.identity,
            RNS.Destination.IN,
            RNS.Destination.SINGLE,
            app_name,
            *aspects,
        )
        self.destination.set_link_established_callback(self._on_link)

        if self.config.announce_on_start:
            self._announce_once()

        if self.config.announce_period_s and self.config.announce_period_s > 0:
            self._announce_thread = threading.Thread(
                target=self._announce_loop, name="duochat-announce", daemon=True
            )
            self._announce_thread.start()

        if self.config.ping_interval_s and self.config.ping_interval_s > 0:
            self._ping_thread = threading.Thread(
                target=self._ping_loop, name="duochat-ping", daemon=True
            )
            self._ping_thread.start()

        self.log.info(
            "Hub running dest_name=%s dest_hash=%s",
            self.config.dest_name,
            self.destination.hash.hex() if self.destination else "-",
        )

    def _announce_once(self) -> None:
        if self.destination is None:
            return
        try:
            self.destination.announce(
                app_data=encode({"proto": "duochat", "v": 1, "hub": self.config.hub_name})
            )
            self.stats_manager.inc("announces")
        except Exception:
            self.log.exception("Announce failed")

    def _announce_loop(self) -> None:
        period = float(self.config.announce_period_s)
        while not self._shutdown.wait(period):
            self._announce_once()

    def run_forever(self) -> None:
        if self.destination is None:
            self.start()

        signal.signal(signal.SIGINT, lambda *_: self.stop())
        signal.signal(signal.SIGTERM, lambda *_: self.stop())

        while not self._shutdown.is_set():
            time.sleep(0.25)

    def stop(self) -> None:
        if self._shutdown.is_set():
            return
        self._shutdown.set()

        with self.state_lock:
            stats = self.session_manager.get_stats()
            links = self.session_manager.clear_all()
            self._presence_pending = None

        for link in links:
            try:
                link.teardown()
            except Exception:
                self.log.debug("Teardown failed link_id=%s", self.fmt_link_id(link))

        self.log.info("Hub stopped\n%s", self.stats_manager.format_stats(stats))

    def _load_identity(self, path: str) -> RNS.Identity:
        p = expand_path(path)
        if not os.path.exists(p):
            raise RuntimeError(f"Identity not found at {p}")
        ident = RNS.Identity.from_file(p)
        if ident is None:
            raise RuntimeError(f"Failed to load identity from {p}")
        return ident

    # Link callbacks

    def _on_link(self, link: RNS.Link) -> None:
        with self.state_lock:
            self.session_manager.on_link_established(link)

        link.set_packet_callback(lambda data, pkt: self._on_packet(link, data))
        link.set_link_closed_callback(lambda closed_link: self._on_close(closed_link))

        self.log.info("Link established link_id=%s", self.fmt_link_id(link))

    def _on_packet(self, link: RNS.Link, data: bytes) -> None:
        outgoing: list[tuple[RNS.Link, bytes]] = []
        try:
            self.router.route_packet(link, data, outgoing)
        finally:
            self.flush(outgoing)

    def _on_close(self, link: RNS.Link) -> None:
        outgoing: list[tuple[RNS.Link, bytes]] = []
        with self.state_lock:
            user_id, prev_state = self.session_manager.on_link_closed(link)

        self.log.info(
            "Link closed user=%s state=%s link_id=%s",
            user_id,
            prev_state,
            self.fmt_link_id(link),
        )
        self.flush(outgoing)

    # Outgoing

    def queue_payload(
        self, outgoing: list[tuple[RNS.Link, bytes]], link: RNS.Link, payload: bytes
    ) -> None:
        outgoing.append((link, payload))

    def queue_env(
        self, outgoing: list[tuple[RNS.Link, bytes]], link: RNS.Link, env: dict
    ) -> None:
        self.queue_payload(outgoing, link, encode(env))

    def emit_error(
        self,
        outgoing: list[tuple[RNS.Link, bytes]] | None,
        link: RNS.Link,
        text: str,
    ) -> None:
        self.stats_manager.inc("errors_sent")
        env = make_envelope(EV_ERROR, src=self.src_hash, body=text)
        if outgoing is None:
            self.send(link, env)
        else:
            self.queue_env(outgoing, link, env)

    def transmit(self, link: RNS.Link, payload: bytes) -> None:
        RNS.Packet(link, payload).send()

    def send_payload(self, link: RNS.Link, payload: bytes) -> bool:
        try:
            self.transmit(link, payload)
        except OSError as e:
            # Common failure mode on low-MTU links: packet too large.
            self.stats_manager.inc("send_failures")
            self.log.warning(
                "Send failed link_id=%s bytes=%s err=%s",
                self.fmt_link_id(link),
                len(payload),
                e,
            )
            return False
        except Exception:
            self.stats_manager.inc("send_failures")
            self.log.debug(
                "Send failed link_id=%s bytes=%s",
                self.fmt_link_id(link),
                len(payload),
                exc_info=True,
            )
            return False
        self.stats_manager.inc("bytes_out", len(payload))
        return True

    def send(self, link: RNS.Link, env: dict) -> bool:
        return self.send_payload(link, encode(env))

    def flush(self, outgoing: list[tuple[RNS.Link, bytes]]) -> None:
        """Send queued packets. Must be called without the state lock held."""
        if self.log.isEnabledFor(logging.DEBUG) and outgoing:
            self.log.debug("Sending %d queued packet(s)", len(outgoing))
        for out_link, payload in outgoing:
            self.send_payload(out_link, payload)
        self.flush_presence()

    def stage_presence(self, env: dict, links: list[RNS.Link]) -> int:
        """Record the newest getUsers snapshot. Call with the state lock held."""
        self._presence_generation += 1
        self._presence_pending = (self._presence_generation, encode(env), list(links))
        return self._presence_generation

    def flush_presence(self) -> None:
        """
        Send the newest staged getUsers snapshot to links that lack it.

        Concurrent flushes are serialized, and a snapshot is skipped for any
        link that already received a newer one, so every link ends on the
        latest online set.
        """
        with self.broadcast_lock:
            with self.state_lock:
                pending = self._presence_pending
            if pending is None:
                return

            generation, payload, links = pending
            for link in links:
                if self._presence_sent.get(link, 0) >= generation:
                    continue
                self._presence_sent[link] = generation
                self.send_payload(link, payload)

            current = set(links)
            for link in [s for s in self._presence_sent if s not in current]:
                del self._presence_sent[link]

    def _ping_loop(self) -> None:
        interval = float(self.config.ping_interval_s)
        while not self._shutdown.wait(interval):
            self.ping_once()

    def ping_once(self) -> None:
        """Ping identified links; tear down those that missed the last ping."""
        timeout = float(self.config.ping_timeout_s)
        now = time.monotonic()
        to_teardown: list[RNS.Link] = []
        to_ping: list[RNS.Link] = []

        with self.state_lock:
            for link, sess in list(self.session_manager.sessions.items()):
                awaiting = sess.get("awaiting_pong")
                if timeout > 0 and awaiting is not None and (now - awaiting) > timeout:
                    to_teardown.append(link)
                    continue
                if awaiting is None:
                    sess["awaiting_pong"] = now
                    to_ping.append(link)

        for link in to_teardown:
            self.log.info("Ping timeout link_id=%s", self.fmt_link_id(link))
            try:
                link.teardown()
            except Exception:
                self.log.debug("Teardown failed link_id=%s", self.fmt_link_id(link))

        for link in to_ping:
            self.stats_manager.inc("pings_out")
            self.send(link, make_envelope(EV_PING, src=self.src_hash, body=now))
