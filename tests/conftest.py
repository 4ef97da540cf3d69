import itertools

import pytest

from duochat.codec import decode, encode
from duochat.config import HubRuntimeConfig
from duochat.constants import K_BODY, K_EVENT
from duochat.envelope import make_envelope
from duochat.service import HubService
from duochat.store import MemoryConversationStore

_link_ids = itertools.count(1)


class FakeLink:
    """Stand-in for RNS.Link: hashable by identity, records callbacks."""

    def __init__(self) -> None:
        self.link_id = next(_link_ids).to_bytes(16, "big")
        self.torn_down = False
        self.packet_callback = None
        self.closed_callback = None

    def set_packet_callback(self, cb) -> None:
        self.packet_callback = cb

    def set_link_closed_callback(self, cb) -> None:
        self.closed_callback = cb

    def teardown(self) -> None:
        self.torn_down = True


class RecordingHub(HubService):
    """HubService that records outgoing envelopes instead of using RNS."""

    def __init__(self, config=None, store=None) -> None:
        super().__init__(
            config or HubRuntimeConfig(),
            store=store if store is not None else MemoryConversationStore(),
        )
        self.sent: list[tuple[FakeLink, dict]] = []
        self.fail_links: set[FakeLink] = set()

    def transmit(self, link, payload: bytes) -> None:
        if link in self.fail_links:
            raise OSError("link down")
        self.sent.append((link, decode(payload)))

    def connect(self) -> FakeLink:
        link = FakeLink()
        self._on_link(link)
        return link

    def deliver(self, link: FakeLink, event: str, body=None) -> None:
        self._on_packet(link, encode(make_envelope(event, src=b"client", body=body)))

    def close(self, link: FakeLink) -> None:
        self._on_close(link)

    def events(self, link: FakeLink, event: str | None = None) -> list:
        return [
            env.get(K_BODY)
            for out_link, env in self.sent
            if out_link is link and (event is None or env[K_EVENT] == event)
        ]

    def event_names(self, link: FakeLink) -> list[str]:
        return [env[K_EVENT] for out_link, env in self.sent if out_link is link]


@pytest.fixture
def hub() -> RecordingHub:
    return RecordingHub()


@pytest.fixture
def make_hub():
    def _make(config=None, store=None) -> RecordingHub:
        return RecordingHub(config=config, store=store)

    return _make
