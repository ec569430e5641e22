"""backup-runner: backup_runner/__util__.py
Common helpers shared by the runner, the notifier and the CLI.
"""

import re
import threading

DURATION_UNITS = {"s": 1, "m": 60, "h": 3600, "d": 86400}
_DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([smhd]?)\s*$")


class BackupRunnerError(Exception):
    """Base class for errors raised by backup-runner."""


class OutputTail:
    """Thread safe byte buffer that only keeps the last ``limit`` bytes."""

    def __init__(self, limit: int = 8192) -> None:
        self.limit = limit
        self.total = 0
        self._buffer = bytearray()
        self._lock = threading.Lock()

    def feed(self, data: bytes) -> None:
        with self._lock:
            self.total += len(data)
            self._buffer.extend(data)
            overflow = len(self._buffer) - self.limit
            if overflow > 0:
                del self._buffer[:overflow]

    @property
    def truncated(self) -> bool:
        return self.total > len(self._buffer)

    def text(self) -> str:
        with self._lock:
            return self._buffer.decode("utf-8", errors="replace")


def parse_duration(value) -> float:
    """Convert ``value`` to seconds.

    Accepts plain numbers (seconds) and strings such as "90", "30s", "15m",
    "2h" or "1d".

    Raises:
        ValueError: If the value cannot be interpreted as a duration
    """
    if isinstance(value, bool):
        raise ValueError(f"Invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        return float(value)
    if not isinstance(value, str):
        raise ValueError(f"Invalid duration: {value!r}")

    match = _DURATION_RE.match(value.lower())
    if not match:
        raise ValueError(f"Invalid duration: {value!r}")
    amount, unit = match.groups()
    return float(amount) * DURATION_UNITS[unit or "s"]


def format_duration(seconds: float) -> str:
    """Render a duration in seconds for humans, e.g. ``1h 02m 03s``."""
    if seconds < 60:
        return f"{seconds:.1f}s"
    minutes, secs = divmod(int(round(seconds)), 60)
    hours, minutes = divmod(minutes, 60)
    if hours:
        return f"{hours}h {minutes:02d}m {secs:02d}s"
    return f"{minutes}m {secs:02d}s"


def excerpt(text: str, limit: int) -> str:
    """Return the last ``limit`` characters of ``text``, marking the cut."""
    text = text.strip()
    if limit <= 0:
        return ""
    if len(text) <= limit:
        return text
    return "..." + text[-limit:]


def log_heading(msg: str) -> str:
    """Formatted heading for logging output sections."""
    return f"--[ {msg} ]--"
