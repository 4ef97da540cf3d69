"""Statistics tracking and reporting for the duochat hub."""

from __future__ import annotations

import threading
import time


class StatsManager:
    """
    Lifetime counters for the hub.

    Tracks:
    - Bytes and packets in/out, bad packets, rate limiting
    - Presence changes (identifies, getUsers broadcasts)
    - Messages persisted, delivered live, and store failures
    - Errors sent and pings
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.started_wall_time: float | None = None
        self.started_monotonic: float | None = None
        self._counters: dict[str, int] = {
            "bytes_in": 0,
            "bytes_out": 0,
            "pkts_in": 0,
            "pkts_bad": 0,
            "rate_limited": 0,
            "errors_sent": 0,
            "identifies": 0,
            "presence_broadcasts": 0,
            "msgs_persisted": 0,
            "msgs_delivered": 0,
            "store_errors": 0,
            "send_failures": 0,
            "pings_out": 0,
            "announces": 0,
        }

    def set_start_time(self) -> None:
        self.started_wall_time = time.time()
        self.started_monotonic = time.monotonic()

    def inc(self, key: str, delta: int = 1) -> None:
        with self._lock:
            self._counters[key] = self._counters.get(key, 0) + int(delta)

    def get(self, key: str) -> int:
        with self._lock:
            return self._counters.get(key, 0)

    def snapshot(self) -> dict[str, int]:
        with self._lock:
            return dict(self._counters)

    def format_stats(self, session_stats: dict[str, int] | None = None) -> str:
        from . import __version__

        started = self.started_monotonic
        uptime_s = (time.monotonic() - started) if started is not None else 0.0
        c = self.snapshot()

        lines = [f"duochat {__version__} stats", f"uptime_s={uptime_s:.1f}"]
        if session_stats:
            lines.append(
                "links={total} identified={identified} online_users={online_users}".format(
                    **session_stats
                )
            )
        lines.append(
            "io: pkts_in={} pkts_bad={} bytes_in={} bytes_out={} send_failures={}".format(
                c["pkts_in"], c["pkts_bad"], c["bytes_in"], c["bytes_out"], c["send_failures"]
            )
        )
        lines.append(
            "presence: identifies={} broadcasts={}".format(
                c["identifies"], c["presence_broadcasts"]
            )
        )
        lines.append(
            "messages: persisted={} delivered={} store_errors={} errors_sent={} rate_limited={}".format(
                c["msgs_persisted"],
                c["msgs_delivered"],
                c["store_errors"],
                c["errors_sent"],
                c["rate_limited"],
            )
        )
        return "\n".join(lines)
