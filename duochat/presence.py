from __future__ import annotations

import logging
from typing import Any, Callable, Hashable

from .constants import F_CONNECTION_ID, F_USER_ID


def _default_link_id(link: Any) -> str:
    lid = getattr(link, "link_id", None)
    if isinstance(lid, (bytes, bytearray)):
        return bytes(lid).hex()
    h = getattr(link, "hash", None)
    if isinstance(h, (bytes, bytearray)):
        return bytes(h).hex()
    return "-"


class PresenceRegistry:
    """
    Which user is online on which link, for this process.

    One link per user id: registering a user again replaces the previous
    link (last registration wins). A link maps to at most one user.

    The registry does no locking of its own. The hub mutates it only with
    its state lock held, together with building the ``getUsers`` snapshot
    that follows the change.
    """

    def __init__(self, link_id: Callable[[Any], str] = _default_link_id) -> None:
        self.log = logging.getLogger("duochat.presence")
        self._link_id = link_id
        # dicts keep insertion order, which is the snapshot order
        self._by_user: dict[str, Hashable] = {}
        self._by_link: dict[Hashable, str] = {}

    def register(self, user_id: str, link: Hashable) -> Hashable | None:
        """
        Upsert ``user_id -> link``.

        Returns the link that was superseded for this user, if any. If the
        link was registered under another user id, that entry is dropped.
        """
        previous_user = self._by_link.pop(link, None)
        if previous_user is not None and previous_user != user_id:
            self._by_user.pop(previous_user, None)

        superseded = self._by_user.pop(user_id, None)
        if superseded is not None and superseded is not link:
            self._by_link.pop(superseded, None)
        else:
            superseded = None

        self._by_user[user_id] = link
        self._by_link[link] = user_id

        self.log.debug(
            "Registered user=%s link_id=%s superseded=%s",
            user_id,
            self._link_id(link),
            self._link_id(superseded) if superseded is not None else None,
        )
        return superseded

    def unregister(self, link: Hashable) -> str | None:
        """Remove the entry held by ``link``; returns its user id, or None."""
        user_id = self._by_link.pop(link, None)
        if user_id is None:
            return None
        if self._by_user.get(user_id) is link:
            self._by_user.pop(user_id, None)
        self.log.debug("Unregistered user=%s link_id=%s", user_id, self._link_id(link))
        return user_id

    def lookup(self, user_id: str) -> Hashable | None:
        return self._by_user.get(user_id)

    def user_for(self, link: Hashable) -> str | None:
        return self._by_link.get(link)

    def links(self) -> list[Hashable]:
        return list(self._by_user.values())

    def snapshot(self) -> list[dict[str, str]]:
        return [
            {F_USER_ID: user_id, F_CONNECTION_ID: self._link_id(link)}
            for user_id, link in self._by_user.items()
        ]

    def clear(self) -> None:
        self._by_user.clear()
        self._by_link.clear()

    def __len__(self) -> int:
        return len(self._by_user)

    def __contains__(self, user_id: object) -> bool:
        return user_id in self._by_user
