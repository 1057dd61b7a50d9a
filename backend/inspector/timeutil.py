from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone
from typing import Optional

from .constants import DEFAULT_TIMEOUT, TIMESTAMP_FORMAT

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")
_UNIT_SECONDS = {"h": 3600.0, "m": 60.0, "s": 1.0, "ms": 0.001}


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def format_timestamp(value: datetime) -> str:
    return value.strftime(TIMESTAMP_FORMAT)


def parse_timestamp(value: str) -> datetime:
    return datetime.strptime(value.strip(), TIMESTAMP_FORMAT)


def parse_duration(value: Optional[str]) -> timedelta:
    """Parse a Go style duration such as ``1h30m`` or ``90s``.

    Raises ``ValueError`` when the text is empty or contains anything else.
    """
    text = (value or "").strip()
    if not text:
        raise ValueError("empty duration")
    position = 0
    seconds = 0.0
    for match in _DURATION_PART.finditer(text):
        if match.start() != position:
            raise ValueError(f"invalid duration {value!r}")
        seconds += float(match.group(1)) * _UNIT_SECONDS[match.group(2)]
        position = match.end()
    if position != len(text):
        raise ValueError(f"invalid duration {value!r}")
    return timedelta(seconds=seconds)


def parse_timeout(value: Optional[str], default: str = DEFAULT_TIMEOUT) -> timedelta:
    try:
        return parse_duration(value)
    except ValueError:
        return parse_duration(default)


def is_timeout(started_at: datetime, timeout: timedelta, now: Optional[datetime] = None) -> bool:
    current = now if now is not None else utcnow()
    return started_at + timeout < current


def format_duration(delta: timedelta) -> str:
    total = int(delta.total_seconds())
    if total == 0:
        return "0s"
    sign = "-" if total < 0 else ""
    total = abs(total)
    hours, remainder = divmod(total, 3600)
    minutes, seconds = divmod(remainder, 60)
    parts = []
    if hours:
        parts.append(f"{hours}h")
    if hours or minutes:
        parts.append(f"{minutes}m")
    parts.append(f"{seconds}s")
    return sign + "".join(parts)
