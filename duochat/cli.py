from __future__ import annotations

import argparse
import os
import sys
from dataclasses import replace
from pathlib import Path

import RNS

from .config import HubRuntimeConfig, apply_config_data, load_toml
from .logging_config import configure_logging
from .paths import (
    default_config_path,
    default_identity_path,
    default_store_path,
    ensure_private_dir,
)
from .service import HubService
from .store import TomlConversationStore


def _default_config_text(identity_path: str, store_path: str) -> str:
    return f"""# duochatd configuration (TOML)
#
# This file was created on first run.
# Edit it, then start duochatd again.

[hub]

# Optional: Reticulum configuration directory.
# If left unset, Reticulum will choose its default (usually ~/.reticulum).
configdir = ""

# Where duochatd stores its persistent identity (Reticulum Identity file).
identity_path = {identity_path!r}

# Conversation and message store (TOML document maintained by duochatd).
store_path = {store_path!r}

# Destination name to host the hub on.
dest_name = "duochat.hub"

# announce_on_start: send a single announce right after startup.
# announce_period_s: if >0, periodically re-announce.
announce_on_start = true
announce_period_s = 0.0

hub_name = "duochat"

# Limits.
rate_limit_msgs_per_minute = 240
max_message_chars = 2000

# Most recent messages returned for one getMessages request.
history_limit = 200

# Hub-initiated liveness checks (0 disables).
ping_interval_s = 0.0
ping_timeout_s = 0.0

# Store writes are retried with jittered exponential backoff.
store_retry_attempts = 3
store_retry_max_wait_s = 2.0

[logging]

# Log level for duochatd itself.
level = "INFO"

# Log level for Reticulum/RNS Python logging.
rns_level = "WARNING"

# Log to stderr (systemd/journald friendly).
console = true

# Optional file path for logs (leave empty to disable).
file = ""

format = "%(asctime)s %(levelname)s %(name)s[%(threadName)s]: %(message)s"
datefmt = ""
"""


def _ensure_first_run_files(
    config_path: str, identity_path: str, store_path: str
) -> bool:
    created_any = False

    if not os.path.exists(config_path):
        cfg_dir = os.path.dirname(config_path)
        if cfg_dir:
            ensure_private_dir(Path(cfg_dir))
        with open(config_path, "w", encoding="utf-8") as f:
            f.write(_default_config_text(identity_path, store_path))
        created_any = True

    if not os.path.exists(identity_path):
        storage_dir = os.path.dirname(identity_path)
        if storage_dir:
            ensure_private_dir(Path(storage_dir))
        ident = RNS.Identity()
        ident.to_file(identity_path)
        try:
            os.chmod(identity_path, 0o600)
        except OSError:
            pass
        created_any = True

    if store_path and not os.path.exists(store_path):
        storage_dir = os.path.dirname(store_path)
        if storage_dir:
            ensure_private_dir(Path(storage_dir))
        TomlConversationStore(store_path)
        created_any = True

    return created_any


def _build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="duochatd", description="Run a duochat hub daemon")

    p.add_argument(
        "--config",
        default=str(default_config_path()),
        help="Path to a TOML config file (created on first run)",
    )
    p.add_argument("--configdir", default=None, help="Reticulum config directory")
    p.add_argument(
        "--identity",
        default=str(default_identity_path()),
        help="Path to hub identity file (created on first run)",
    )
    p.add_argument(
        "--store",
        default=str(default_store_path()),
        help="Path to the conversation store TOML (created on first run)",
    )
    p.add_argument("--dest-name", default=None, help="Destination app name (default: duochat.hub)")
    p.add_argument(
        "--no-announce",
        action="store_true",
        help="Disable announce on start (does not affect periodic announce)",
    )
    p.add_argument(
        "--announce-period",
        type=float,
        default=None,
        help="Periodic announce interval seconds (0 disables)",
    )
    p.add_argument("--hub-name", default=None, help="Hub name used in announces")
    p.add_argument(
        "--rate-limit-msgs-per-minute",
        type=int,
        default=None,
        help="Per-link message rate limit",
    )
    p.add_argument(
        "--max-message-chars", type=int, default=None, help="Maximum chat message length"
    )
    p.add_argument(
        "--ping-interval",
        type=float,
        default=None,
        help="Hub-initiated ping interval seconds (0 disables)",
    )
    p.add_argument(
        "--ping-timeout",
        type=float,
        default=None,
        help="Close link if pong not received within this many seconds (0 disables)",
    )
    p.add_argument(
        "--log-level",
        default=None,
        help="Logging level override (DEBUG, INFO, WARNING, ERROR). Default comes from config.",
    )
    p.add_argument(
        "--log-file",
        default=None,
        help="Log file path override (empty disables file logging). Default comes from config.",
    )
    return p


def build_config(args: argparse.Namespace) -> HubRuntimeConfig:
    cfg = HubRuntimeConfig(
        config_path=str(args.config),
        configdir=args.configdir,
        identity_path=str(args.identity),
        store_path=str(args.store),
    )
    if args.config and os.path.exists(args.config):
        cfg = apply_config_data(cfg, load_toml(str(args.config)))

    overrides: dict[str, object] = {}
    if args.configdir is not None:
        overrides["configdir"] = args.configdir
    if args.dest_name is not None:
        overrides["dest_name"] = args.dest_name
    if args.no_announce:
        overrides["announce_on_start"] = False
    if args.announce_period is not None:
        overrides["announce_period_s"] = float(args.announce_period)
    if args.hub_name is not None:
        overrides["hub_name"] = args.hub_name
    if args.rate_limit_msgs_per_minute is not None:
        overrides["rate_limit_msgs_per_minute"] = int(args.rate_limit_msgs_per_minute)
    if args.max_message_chars is not None:
        overrides["max_message_chars"] = int(args.max_message_chars)
    if args.ping_interval is not None:
        overrides["ping_interval_s"] = float(args.ping_interval)
    if args.ping_timeout is not None:
        overrides["ping_timeout_s"] = float(args.ping_timeout)
    if args.log_level is not None:
        overrides["log_level"] = str(args.log_level)
    if args.log_file is not None:
        overrides["log_file"] = str(args.log_file) or None

    return replace(cfg, **overrides) if overrides else cfg


def main(argv: list[str] | None = None) -> None:
    args = _build_arg_parser().parse_args(sys.argv[1:] if argv is None else argv)

    config_path = str(args.config)
    identity_path = str(args.identity)
    store_path = str(args.store)

    if _ensure_first_run_files(config_path, identity_path, store_path):
        print(
            "Created default duochatd files. Edit the configuration before starting:\n"
            f"- Config:   {config_path}\n"
            f"- Identity: {identity_path}\n"
            f"- Store:    {store_path}\n"
            "\nThen re-run duochatd.",
            file=sys.stderr,
        )
        raise SystemExit(0)

    cfg = build_config(args)
    configure_logging(cfg, override_level=args.log_level, override_file=args.log_file)

    svc = HubService(cfg)
    svc.start()
    svc.run_forever()


if __name__ == "__main__":
    main()
