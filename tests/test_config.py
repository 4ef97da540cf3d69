import logging

from duochat.cli import _build_arg_parser, build_config
from duochat.config import HubRuntimeConfig, apply_config_data
from duochat.logging_config import parse_level


def test_apply_config_merges_hub_and_logging_tables() -> None:
    base = HubRuntimeConfig(config_path="/etc/duochat.toml")
    data = {
        "hub": {"hub_name": "den", "history_limit": 50, "unknown_key": 1},
        "logging": {"level": "DEBUG", "file": "", "console": False},
        "config_path": "/elsewhere.toml",
    }

    cfg = apply_config_data(base, data)

    assert cfg.hub_name == "den"
    assert cfg.history_limit == 50
    assert cfg.log_level == "DEBUG"
    assert cfg.log_file is None
    assert cfg.log_console is False
    assert cfg.config_path == "/etc/duochat.toml"


def test_apply_config_empty_strings_unset_paths() -> None:
    cfg = apply_config_data(HubRuntimeConfig(), {"configdir": "", "store_path": ""})
    assert cfg.configdir is None
    assert cfg.store_path is None


def test_apply_config_legacy_announce_key() -> None:
    cfg = apply_config_data(HubRuntimeConfig(), {"announce": False})
    assert cfg.announce_on_start is False


def test_parse_level() -> None:
    assert parse_level("debug", logging.INFO) == logging.DEBUG
    assert parse_level("WARN", logging.INFO) == logging.WARNING
    assert parse_level("15", logging.INFO) == 15
    assert parse_level("", logging.INFO) == logging.INFO
    assert parse_level("nonsense", logging.ERROR) == logging.ERROR
    assert parse_level(None, logging.INFO) == logging.INFO


def test_build_config_file_then_cli_overrides(tmp_path) -> None:
    config_path = tmp_path / "duochat.toml"
    config_path.write_text(
        '[hub]\nhub_name = "from-file"\nping_interval_s = 30.0\n'
        'store_path = "/data/conv.toml"\n',
        encoding="utf-8",
    )
    args = _build_arg_parser().parse_args(
        ["--config", str(config_path), "--ping-interval", "5", "--no-announce"]
    )

    cfg = build_config(args)

    assert cfg.hub_name == "from-file"
    assert cfg.store_path == "/data/conv.toml"
    assert cfg.ping_interval_s == 5.0
    assert cfg.announce_on_start is False
    assert cfg.config_path == str(config_path)
