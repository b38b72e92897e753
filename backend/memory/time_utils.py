from __future__ import annotations

from datetime import datetime, timezone

from chat_protocol.timestamps import parse_iso

__all__ = ["parse_iso", "to_iso", "utc_now"]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    # Fixed width so stored stamps sort lexicographically.
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")
