from __future__ import annotations

import os
from pathlib import Path


def default_duochat_dir() -> Path:
    override = os.environ.get("DUOCHAT_HOME")
    if override:
        return Path(override)
    return Path.home() / ".duochat"


def default_config_path() -> Path:
    return default_duochat_dir() / "duochat.toml"


def default_identity_path() -> Path:
    return default_duochat_dir() / "hub_identity"


def default_store_path() -> Path:
    return default_duochat_dir() / "conversations.toml"


def ensure_private_dir(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)
    try:
        # Best-effort tightening; may fail on some filesystems.
        os.chmod(path, 0o700)
    except OSError:
        pass
