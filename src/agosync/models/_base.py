"""Base model for agosync records.

Every model inherits from :class:`AgoBaseModel` which provides:

* frozen instances, so the in-memory projection is only ever replaced,
  never mutated in place;
* ``extra="ignore"`` so store rows and device payloads may carry columns
  or keys this version does not know about;
* :data:`AgoTimestamp`, which accepts ISO-8601 strings, epoch seconds or
  epoch milliseconds and always yields a timezone-aware UTC datetime.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Annotated, Any

from pydantic import BaseModel, BeforeValidator, ConfigDict

# Threshold to distinguish seconds from milliseconds.
_MS_THRESHOLD = 1_000_000_000_000


def utcnow() -> datetime:
    return datetime.now(UTC)


def parse_timestamp(value: Any) -> datetime:
    """Coerce a stored timestamp into an aware UTC datetime.

    SQLite's ``datetime('now')`` default yields ``"YYYY-MM-DD HH:MM:SS"``
    without a zone; such values are taken to be UTC.
    """
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)):
        ts = int(value)
        if ts >= _MS_THRESHOLD:
            ts = ts // 1000
        return datetime.fromtimestamp(ts, tz=UTC)
    elif isinstance(value, str) and value.strip():
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    else:
        return utcnow()
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


AgoTimestamp = Annotated[datetime, BeforeValidator(parse_timestamp)]
"""Annotated type that coerces stored timestamps to UTC datetimes."""


class AgoBaseModel(BaseModel):
    """Base for agosync records and device payloads."""

    model_config = ConfigDict(
        frozen=True,
        extra="ignore",
        populate_by_name=True,
    )
