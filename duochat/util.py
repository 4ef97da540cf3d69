from __future__ import annotations

import os

from .constants import USER_ID_MAX_CHARS


def expand_path(p: str) -> str:
    return os.path.expanduser(os.path.expandvars(p))


def normalize_user_id(value) -> str | None:
    if not isinstance(value, str):
        return None

    s = value.strip()
    if not s:
        return None

    if len(s) > int(USER_ID_MAX_CHARS):
        return None

    # User ids are store-assigned opaque keys; anything with control
    # characters did not come from the store.
    if any(ch in s for ch in ("\n", "\r", "\x00")):
        return None

    # Ids are written to CBOR and TOML, neither of which can carry a lone
    # surrogate.
    try:
        s.encode("utf-8", "strict")
    except UnicodeError:
        return None

    return s


def optional_str(value) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        return None
    s = value.strip()
    return s or None
