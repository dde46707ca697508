from __future__ import annotations

import math
import re
import threading
from dataclasses import dataclass
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

DEFAULT_URL = "ws://localhost:4000/socket/websocket"
DEFAULT_VSN = "2.0.0"
DEFAULT_TOPIC = "order:123"
DEFAULT_VUS = 50
DEFAULT_DURATION = "30s"
DEFAULT_MESSAGE_INTERVAL_MS = 2_000
DEFAULT_LIFETIME_MS = 60_000

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


class ConfigError(ValueError):
    """Raised when a load test option cannot be used."""


@dataclass(frozen=True)
class ConnectionConfig:
    """Per-connection settings shared read-only by every virtual user."""

    base_url: str = DEFAULT_URL
    vsn: str = DEFAULT_VSN
    message_interval_ms: int = DEFAULT_MESSAGE_INTERVAL_MS
    lifetime_ms: int = DEFAULT_LIFETIME_MS
    topic: str = DEFAULT_TOPIC
    ping_event: str = "ping"
    connect_timeout_s: float = 10.0
    close_timeout_s: float = 3.0
    poll_interval_s: float = 0.25

    def __post_init__(self) -> None:
        if self.message_interval_ms <= 0:
            raise ConfigError("message interval must be > 0 ms")
        if self.lifetime_ms <= 0:
            raise ConfigError("connection lifetime must be > 0 ms")
        if self.poll_interval_s <= 0:
            raise ConfigError("poll interval must be > 0 s")

    @property
    def message_interval_s(self) -> float:
        return self.message_interval_ms / 1000.0

    @property
    def lifetime_s(self) -> float:
        return self.lifetime_ms / 1000.0

    def url_for(self, vu_id: int) -> str:
        parts = urlsplit(self.base_url)
        query = parse_qsl(parts.query, keep_blank_values=True)
        query.extend([("user_id", str(vu_id)), ("vsn", self.vsn)])
        return urlunsplit(parts._replace(query=urlencode(query)))


@dataclass(frozen=True)
class LoadOptions:
    """Shape of the whole run: how many users and for how long."""

    vus: int = DEFAULT_VUS
    duration_s: float = 30.0
    iteration_pause_s: float = 1.0
    graceful_stop_s: float = 5.0

    def __post_init__(self) -> None:
        if self.vus <= 0:
            raise ConfigError("VUS must be > 0")
        if not math.isfinite(self.duration_s):
            raise ConfigError("duration must be finite")
        if self.duration_s < 0:
            raise ConfigError("duration must not be negative")
        if self.duration_s > threading.TIMEOUT_MAX:
            raise ConfigError("duration is too long")


def parse_duration(value: str | float | int) -> float:
    """Parse a k6 style duration ("30s", "1m30s", "500ms") into seconds.

    Bare numbers are taken as seconds.
    """
    if isinstance(value, (int, float)):
        seconds = float(value)
    else:
        text = value.strip().lower()
        if not text:
            raise ConfigError("empty duration")
        try:
            seconds = float(text)
        except ValueError:
            seconds = 0.0
            position = 0
            for match in _DURATION_PART.finditer(text):
                if match.start() != position:
                    raise ConfigError(f"invalid duration {value!r}") from None
                seconds += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
                position = match.end()
            if position != len(text):
                raise ConfigError(f"invalid duration {value!r}") from None
    if not math.isfinite(seconds):
        raise ConfigError(f"duration must be finite: {value!r}")
    if seconds < 0:
        raise ConfigError(f"duration must not be negative: {value!r}")
    if seconds > threading.TIMEOUT_MAX:
        raise ConfigError(f"duration is too long: {value!r}")
    return seconds


def format_duration(seconds: float) -> str:
    if seconds < 1:
        return f"{seconds * 1000:g}ms"
    minutes, secs = divmod(seconds, 60)
    if minutes:
        return f"{int(minutes)}m{secs:g}s"
    return f"{secs:g}s"


__all__ = [
    "DEFAULT_URL",
    "DEFAULT_VSN",
    "DEFAULT_TOPIC",
    "ConfigError",
    "ConnectionConfig",
    "LoadOptions",
    "format_duration",
    "parse_duration",
]
