import pytest

from duochat.util import normalize_user_id, optional_str


def test_normalize_user_id_strips_whitespace() -> None:
    assert normalize_user_id("  alice ") == "alice"


@pytest.mark.parametrize(
    "value",
    [None, 42, "", "   ", "a" * 65, "bad\nid", "nul\x00id", "half\ud800pair"],
)
def test_normalize_user_id_rejects(value) -> None:
    assert normalize_user_id(value) is None


def test_lone_surrogate_user_id_cannot_identify(hub) -> None:
    link = hub.connect()
    with hub.state_lock:
        with pytest.raises(ValueError):
            hub.session_manager.identify(link, "u\udc80")
    assert len(hub.presence) == 0


def test_optional_str() -> None:
    assert optional_str(None) is None
    assert optional_str(" c1 ") == "c1"
    assert optional_str("  ") is None
    assert optional_str(7) is None
