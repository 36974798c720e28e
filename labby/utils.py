from __future__ import annotations

import re
import secrets
import string
from datetime import datetime, timedelta, timezone
from uuid import uuid4

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")
_DURATION_UNITS = {"h": 3600.0, "m": 60.0, "s": 1.0, "ms": 0.001}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on read)."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def generate_lab_id() -> str:
    """Short opaque lab identifier: the first 8 characters of a UUID4."""
    return str(uuid4())[:8]


def strip_lab_prefix(lab_id: str) -> str:
    """Accept both "abc123" and "lab-abc123" from operators."""
    return lab_id[4:] if lab_id.startswith("lab-") else lab_id


def parse_duration(value: str) -> timedelta:
    """Parse a duration such as "2h", "90m" or "1h30m".

    Raises:
        ValueError: If the string is empty, malformed or not positive
    """
    text = value.strip()
    if not text:
        raise ValueError("empty duration")

    position = 0
    total = 0.0
    for match in _DURATION_PART.finditer(text):
        if match.start() != position:
            raise ValueError(f"invalid duration: {value!r}")
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        position = match.end()
    if position != len(text):
        raise ValueError(f"invalid duration: {value!r}")
    if total <= 0:
        raise ValueError(f"duration must be positive: {value!r}")
    return timedelta(seconds=total)


def generate_password(length: int = 16) -> str:
    """Random password containing upper, lower, digit and symbol characters."""
    symbols = "!@#%^*-_"
    alphabet = string.ascii_letters + string.digits + symbols
    required = [
        secrets.choice(string.ascii_uppercase),
        secrets.choice(string.ascii_lowercase),
        secrets.choice(string.digits),
        secrets.choice(symbols),
    ]
    rest = [secrets.choice(alphabet) for _ in range(max(length - len(required), 0))]
    chars = required + rest
    secrets.SystemRandom().shuffle(chars)
    return "".join(chars)
