from __future__ import annotations

import re
from datetime import date, datetime, timezone

_UNITS = ("B", "KB", "MB", "GB", "TB", "PB")

# Longer suffixes first so "B" does not swallow "MB".
_MULTIPLIERS: tuple[tuple[str, int], ...] = (
    ("TB", 1024**4),
    ("GB", 1024**3),
    ("MB", 1024**2),
    ("KB", 1024),
    ("B", 1),
)

_VERSION_PART = re.compile(r"\d+")


def format_bytes(num_bytes: int) -> str:
    value = float(num_bytes)
    for unit in _UNITS:
        if abs(value) < 1024 or unit == _UNITS[-1]:
            if unit == "B":
                return f"{int(value)} B"
            return f"{value:.1f} {unit}"
        value /= 1024
    return f"{num_bytes} B"


def parse_bytes(text: str | int) -> int:
    """Parse ``"10GB"``, ``"512 kb"`` or a bare integer into bytes."""
    if isinstance(text, int):
        return text
    raw = text.strip().upper()
    for suffix, multiplier in _MULTIPLIERS:
        if raw.endswith(suffix):
            number = raw[: -len(suffix)].strip()
            return int(float(number) * multiplier)
    return int(raw)


def parse_timestamp(text: str) -> float:
    """Parse an ISO date or datetime into a POSIX timestamp (naive values are UTC)."""
    raw = text.strip()
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError:
        parsed = datetime.combine(date.fromisoformat(raw), datetime.min.time())
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.timestamp()


def parse_version(text: str) -> tuple[int, ...]:
    """Numeric components of a dotted version string: ``"1.84.2"`` -> ``(1, 84, 2)``."""
    parts = tuple(int(p) for p in _VERSION_PART.findall(text))
    if not parts:
        msg = f"Not a version string: {text!r}"
        raise ValueError(msg)
    return parts


def backup_stamp(moment: datetime) -> str:
    """ISO 8601 basic-format UTC stamp, safe as a directory name on every OS."""
    return moment.astimezone(timezone.utc).strftime("%Y%m%dT%H%M%SZ")


def parse_backup_stamp(name: str) -> datetime | None:
    try:
        return datetime.strptime(name, "%Y%m%dT%H%M%SZ").replace(tzinfo=timezone.utc)
    except ValueError:
        return None
