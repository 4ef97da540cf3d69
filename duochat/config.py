from __future__ import annotations

from dataclasses import asdict, dataclass, replace


@dataclass(frozen=True)
class HubRuntimeConfig:
    config_path: str | None = None
    store_path: str | None = None
    configdir: str | None = None
    identity_path: str | None = None
    dest_name: str = "duochat.hub"
    announce_on_start: bool = True
    announce_period_s: float = 0.0
    hub_name: str = "duochat"
    rate_limit_msgs_per_minute: int = 240
    max_message_chars: int = 2000
    history_limit: int = 200
    ping_interval_s: float = 0.0
    ping_timeout_s: float = 0.0
    store_retry_attempts: int = 3
    store_retry_max_wait_s: float = 2.0
    log_level: str = "INFO"
    log_rns_level: str = "WARNING"
    log_console: bool = True
    log_file: str | None = None
    log_format: str = "%(asctime)s %(levelname)s %(name)s[%(threadName)s]: %(message)s"
    log_datefmt: str | None = None


_LOGGING_KEYS = {
    "level": "log_level",
    "rns_level": "log_rns_level",
    "console": "log_console",
    "file": "log_file",
    "format": "log_format",
    "datefmt": "log_datefmt",
}

_EMPTY_MEANS_UNSET = ("configdir", "store_path", "log_file", "log_datefmt")


def load_toml(path: str) -> dict:
    import tomllib

    with open(path, "rb") as f:
        data = tomllib.load(f)
    return data if isinstance(data, dict) else {}


def apply_config_data(base: HubRuntimeConfig, data: dict) -> HubRuntimeConfig:
    """Overlay a parsed TOML document onto ``base``.

    The ``[hub]`` table and the top level are merged; ``[logging]`` keys are
    mapped onto the ``log_*`` fields. Unknown keys are ignored.
    """
    hub = data.get("hub") if isinstance(data, dict) else None
    if isinstance(hub, dict):
        data = {**data, **hub}

    log_table = data.get("logging") if isinstance(data, dict) else None
    if isinstance(log_table, dict):
        mapped = {
            field: log_table.get(key)
            for key, field in _LOGGING_KEYS.items()
            if key in log_table
        }
        data = {**data, **mapped}

    allowed = set(asdict(base).keys())
    # This identifies where the config was loaded from; do not let the file override it.
    allowed.discard("config_path")
    updates = {k: v for k, v in data.items() if k in allowed}

    if "announce" in data and "announce_on_start" not in updates:
        updates["announce_on_start"] = bool(data["announce"])

    for key in _EMPTY_MEANS_UNSET:
        if key in updates and updates[key] == "":
            updates[key] = None

    return replace(base, **updates) if updates else base
