from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

from .config import HubRuntimeConfig
from .util import optional_str

_DEFAULT_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def parse_level(value: Any, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, int):
        return value
    text = str(value).strip().upper()
    if not text:
        return default
    if text == "WARN":
        text = "WARNING"

    level = logging.getLevelName(text)
    if isinstance(level, int):
        return level

    try:
        return int(text)
    except ValueError:
        return default


def _file_handler(path: str) -> logging.Handler:
    p = Path(os.path.expanduser(path))
    p.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(p, encoding="utf-8")
    try:
        os.chmod(p, 0o600)
    except OSError:
        pass
    return handler


def configure_logging(
    cfg: HubRuntimeConfig,
    *,
    override_level: str | None = None,
    override_file: str | None = None,
) -> None:
    """Install root handlers for the hub.

    Replaces any handlers already on the root logger, so calling it twice
    does not duplicate output.
    """

    level = parse_level(override_level or cfg.log_level, logging.INFO)

    handlers: list[logging.Handler] = []
    if cfg.log_console:
        handlers.append(logging.StreamHandler())

    log_file = optional_str(override_file) if override_file is not None else None
    if log_file is None:
        log_file = optional_str(cfg.log_file)
    if log_file:
        handlers.append(_file_handler(log_file))

    formatter = logging.Formatter(
        fmt=optional_str(cfg.log_format) or _DEFAULT_FORMAT,
        datefmt=optional_str(cfg.log_datefmt),
    )

    root = logging.getLogger()
    for h in list(root.handlers):
        root.removeHandler(h)
    for h in handlers:
        h.setFormatter(formatter)
        root.addHandler(h)
    root.setLevel(level)

    logging.getLogger("RNS").setLevel(parse_level(cfg.log_rns_level, logging.WARNING))
    logging.captureWarnings(True)
