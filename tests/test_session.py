import threading
import time

from duochat.codec import decode
from duochat.constants import (
    EV_ADD_USER,
    EV_ERROR,
    EV_GET_USERS,
    EV_SEND_MESSAGE,
    K_EVENT,
)
from duochat.session import IDENTIFIED, UNIDENTIFIED


def _users(body) -> list[str]:
    return [entry["userId"] for entry in body]


def test_new_link_starts_unidentified(hub) -> None:
    link = hub.connect()
    assert hub.session_manager.get_session(link)["state"] == UNIDENTIFIED
    assert len(hub.presence) == 0
    assert link.packet_callback is not None
    assert link.closed_callback is not None


def test_identify_registers_and_broadcasts_to_self(hub) -> None:
    link = hub.connect()
    hub.deliver(link, EV_ADD_USER, "u1")

    assert hub.presence.lookup("u1") is link
    assert hub.session_manager.get_session(link)["state"] == IDENTIFIED
    [snapshot] = hub.events(link, EV_GET_USERS)
    assert snapshot == [{"userId": "u1", "connectionId": link.link_id.hex()}]


def test_presence_change_is_broadcast_to_everyone(hub) -> None:
    l1 = hub.connect()
    l2 = hub.connect()
    hub.deliver(l1, EV_ADD_USER, "u1")
    hub.deliver(l2, EV_ADD_USER, "u2")

    assert _users(hub.events(l1, EV_GET_USERS)[-1]) == ["u1", "u2"]
    assert _users(hub.events(l2, EV_GET_USERS)[-1]) == ["u1", "u2"]


def test_close_unregisters_and_broadcasts_to_remaining(hub) -> None:
    l1 = hub.connect()
    l2 = hub.connect()
    hub.deliver(l1, EV_ADD_USER, "u1")
    hub.deliver(l2, EV_ADD_USER, "u2")
    sent_to_l1 = len(hub.events(l1))

    hub.close(l1)

    assert hub.presence.lookup("u1") is None
    assert hub.session_manager.get_session(l1) is None
    assert _users(hub.events(l2, EV_GET_USERS)[-1]) == ["u2"]
    assert len(hub.events(l1)) == sent_to_l1


def test_closing_unidentified_link_does_not_broadcast(hub) -> None:
    l1 = hub.connect()
    hub.deliver(l1, EV_ADD_USER, "u1")
    before = len(hub.sent)

    l2 = hub.connect()
    hub.close(l2)
    assert len(hub.sent) == before


def test_superseded_link_close_is_noop_for_presence(hub) -> None:
    old = hub.connect()
    new = hub.connect()
    hub.deliver(old, EV_ADD_USER, "u1")
    hub.deliver(new, EV_ADD_USER, "u1")
    assert hub.presence.lookup("u1") is new
    assert hub.session_manager.get_session(old)["state"] == UNIDENTIFIED
    before = len(hub.sent)

    hub.close(old)

    assert hub.presence.lookup("u1") is new
    assert len(hub.sent) == before


def test_reidentify_with_other_user_id(hub) -> None:
    link = hub.connect()
    hub.deliver(link, EV_ADD_USER, "u1")
    hub.deliver(link, EV_ADD_USER, "u9")

    assert hub.presence.lookup("u1") is None
    assert hub.presence.lookup("u9") is link
    assert _users(hub.events(link, EV_GET_USERS)[-1]) == ["u9"]


def test_identify_requires_user_id(hub) -> None:
    link = hub.connect()
    hub.deliver(link, EV_ADD_USER, "   ")
    assert hub.events(link, EV_ERROR) == ["addUser requires a user id"]
    assert len(hub.presence) == 0


def test_unidentified_link_cannot_send(hub) -> None:
    link = hub.connect()
    hub.deliver(
        link,
        EV_SEND_MESSAGE,
        {"senderId": "u1", "receiverId": "u2", "message": "hi", "conversationId": None},
    )
    assert hub.events(link, EV_ERROR) == ["identify first with addUser"]
    assert hub.store.list_conversations_for_user("u1") == []


def test_packets_after_close_are_ignored(hub) -> None:
    link = hub.connect()
    hub.close(link)
    hub.deliver(link, EV_ADD_USER, "u1")
    assert len(hub.presence) == 0
    assert hub.sent == []


def test_stop_clears_presence_and_tears_down(hub) -> None:
    l1 = hub.connect()
    hub.deliver(l1, EV_ADD_USER, "u1")
    hub.stop()
    assert len(hub.presence) == 0
    assert l1.torn_down


def test_ping_once_tears_down_silent_links(make_hub) -> None:
    from duochat.config import HubRuntimeConfig

    hub = make_hub(config=HubRuntimeConfig(ping_interval_s=10.0, ping_timeout_s=0.001))
    link = hub.connect()
    hub.ping_once()
    assert hub.event_names(link) == ["ping"]

    hub.session_manager.get_session(link)["awaiting_pong"] -= 1.0
    hub.ping_once()
    assert link.torn_down


def test_delayed_presence_send_never_overwrites_newer_view(hub) -> None:
    l1 = hub.connect()
    l2 = hub.connect()
    hub.deliver(l1, EV_ADD_USER, "u1")

    release = threading.Event()
    held = threading.Event()
    transmit = hub.transmit

    def slow_transmit(link, payload: bytes) -> None:
        if (
            link is l1
            and not release.is_set()
            and decode(payload)[K_EVENT] == EV_GET_USERS
        ):
            held.set()
            release.wait(5)
        transmit(link, payload)

    hub.transmit = slow_transmit

    joiner = threading.Thread(target=hub.deliver, args=(l2, EV_ADD_USER, "u2"))
    joiner.start()
    assert held.wait(5)

    closer = threading.Thread(target=hub.close, args=(l2,))
    closer.start()
    deadline = time.monotonic() + 5
    while hub.presence.lookup("u2") is not None and time.monotonic() < deadline:
        time.sleep(0.01)
    assert hub.presence.lookup("u2") is None

    release.set()
    joiner.join(5)
    closer.join(5)

    views = [_users(body) for body in hub.events(l1, EV_GET_USERS)]
    assert views == [["u1"], ["u1", "u2"], ["u1"]]


def test_presence_generations_only_increase_per_link(hub) -> None:
    l1 = hub.connect()
    hub.deliver(l1, EV_ADD_USER, "u1")
    first = hub._presence_sent[l1]

    l2 = hub.connect()
    hub.deliver(l2, EV_ADD_USER, "u2")
    hub.flush_presence()

    assert hub._presence_sent[l1] > first
    assert len(hub.events(l1, EV_GET_USERS)) == 2
