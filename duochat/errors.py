"""Error taxonomy for the presence and routing core."""

from __future__ import annotations


class ChatError(Exception):
    """Base class for errors reported back to a connected client."""


class InvalidRequest(ChatError, ValueError):
    """A request is missing a required field or is otherwise malformed.

    Raised before any persistence or delivery side effect.
    """


class StoreUnavailable(ChatError, RuntimeError):
    """The conversation store could not complete a read or write."""
