"""Utility helpers for the AMP relay service."""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

_AGENT_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,127}$")
_CONTROL_CHARS_RE = re.compile(r"[\x00-\x1f\x7f]")


def utcnow_naive() -> datetime:
    """Return current UTC time as a naive datetime for SQLite compatibility.

    SQLite stores datetimes without timezone info; keeping every stored value
    naive UTC avoids offset-naive/offset-aware comparison errors.
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)


def iso_utc(value: datetime) -> str:
    """Render a naive-UTC or aware datetime as an ISO-8601 string with a Z suffix."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value.isoformat(timespec="milliseconds") + "Z"


def validate_agent_name_format(name: str) -> bool:
    """Agent names are the local part of an address: ASCII alphanumerics plus '.', '_', '-'."""
    return bool(name) and _AGENT_NAME_RE.fullmatch(name) is not None


def sanitize_description(value: Optional[str], *, fallback: str, max_length: int = 500) -> str:
    """Strip control characters and bound the length of a peer-supplied description."""
    text = value if value else fallback
    return _CONTROL_CHARS_RE.sub("", text)[:max_length]


@dataclass(slots=True)
class SweepSchedule:
    """Amortized cleanup: a sweep is due once ``interval`` has elapsed since the last one.

    Stores call ``claim(now)`` on each request; only the caller that gets True
    runs the sweep. ``last_swept_at`` starts at None so the first request sweeps.
    """

    interval: timedelta
    last_swept_at: Optional[datetime] = None

    def due(self, now: datetime) -> bool:
        return self.last_swept_at is None or now - self.last_swept_at >= self.interval

    def claim(self, now: datetime) -> bool:
        if not self.due(now):
            return False
        self.last_swept_at = now
        return True
