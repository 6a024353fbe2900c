"""
Timestamp normalization for CRM payloads.

HubSpot returns ``hs_timestamp`` as epoch milliseconds, but values written by
older integrations arrive as epoch seconds, and some endpoints return ISO-8601
strings.  Everything is normalized to an aware UTC ``datetime``.
"""

from __future__ import annotations

import logging
import math
from datetime import datetime, timezone
from typing import Optional, Union

logger = logging.getLogger(__name__)

# 2000-01-01T00:00:00Z in epoch milliseconds.  Smaller magnitudes are seconds.
EPOCH_MILLIS_THRESHOLD: int = 946_684_800_000

RawTimestamp = Union[str, int, float, datetime, None]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC; convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _as_number(raw: Union[str, int, float]) -> Optional[float]:
    if isinstance(raw, (int, float)):
        return float(raw)
    text = raw.strip()
    if not text:
        return None
    try:
        return float(text)
    except ValueError:
        return None


def _parse_iso(raw: str) -> Optional[datetime]:
    text = raw.strip()
    if not text:
        return None
    if text.endswith(("Z", "z")):
        text = f"{text[:-1]}+00:00"
    try:
        return as_utc(datetime.fromisoformat(text))
    except ValueError:
        return None


def parse_timestamp(raw: RawTimestamp) -> Optional[datetime]:
    """Like ``normalize`` but returns None instead of falling back to now."""
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, datetime):
        return as_utc(raw)

    value = _as_number(raw)
    if value is None:
        if isinstance(raw, str):
            parsed = _parse_iso(raw)
            if parsed is not None:
                return parsed
        logger.debug("Unparseable timestamp %r", raw)
        return None

    if not math.isfinite(value):
        return None

    millis: float = value * 1000 if abs(value) < EPOCH_MILLIS_THRESHOLD else value
    try:
        return datetime.fromtimestamp(millis / 1000, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        logger.debug("Out-of-range timestamp %r", raw)
        return None


def normalize(raw: RawTimestamp, now: Optional[datetime] = None) -> datetime:
    """
    Normalize a CRM timestamp to an aware UTC datetime.

    - Numbers (or numeric strings) below 946,684,800,000 in magnitude are
      epoch seconds, anything else is epoch milliseconds.
    - Non-numeric strings are parsed as ISO-8601 (naive values are UTC).
    - Absent, unparseable, non-finite or out-of-range input yields ``now``.

    Never raises.
    """
    parsed = parse_timestamp(raw)
    if parsed is not None:
        return parsed
    return as_utc(now) if now is not None else utcnow()


def to_epoch_millis(value: datetime) -> str:
    """Epoch milliseconds as a string, the form HubSpot expects in payloads."""
    return str(round(as_utc(value).timestamp() * 1000))
