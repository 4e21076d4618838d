"""
Numeric and timestamp coercion helpers shared by the result normalizer and
the metrics deriver.

Backend payloads mix numbers, numeric strings and date strings freely, so every
helper here accepts anything and returns ``None`` instead of raising.
"""

import math
import re
from collections.abc import Mapping
from datetime import date, datetime, timedelta, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Optional

SENTINEL_RESOLUTION_METERS = 10
AREA_PER_PIXEL_M2 = SENTINEL_RESOLUTION_METERS * SENTINEL_RESOLUTION_METERS
SQUARE_METERS_PER_HECTARE = 10_000.0
SQUARE_METERS_PER_KM2 = 1_000_000.0

# Epoch values above this are milliseconds, below it seconds
EPOCH_MILLISECONDS_THRESHOLD = 1e12

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_LEADING_FLOAT = re.compile(r"^\s*[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?")


def is_mapping(value: Any) -> bool:
    return isinstance(value, Mapping)


def _finite(value: float) -> Optional[float]:
    return value if math.isfinite(value) else None


def parse_numeric(value: Any) -> Optional[float]:
    """Parse a finite number from a number or the numeric prefix of a string."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return _finite(float(value))
    if isinstance(value, str):
        match = _LEADING_FLOAT.match(value)
        if match:
            try:
                return _finite(float(match.group(0)))
            except (OverflowError, ValueError):
                return None
    return None


def clamp_percent(value: float) -> float:
    return max(0.0, min(100.0, value))


def _strict_numeric(text: str) -> Optional[float]:
    """Whole-string numeric parse, as opposed to the prefix parse above."""
    try:
        parsed = float(text)
    except ValueError:
        return None
    return _finite(parsed)


def _epoch_to_datetime(value: float) -> Optional[datetime]:
    milliseconds = value if value > EPOCH_MILLISECONDS_THRESHOLD else value * 1000
    try:
        return _EPOCH + timedelta(milliseconds=milliseconds)
    except (OverflowError, ValueError):
        return None


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _parse_date_string(text: str) -> Optional[datetime]:
    try:
        return as_utc(datetime.fromisoformat(text))
    except ValueError:
        pass
    try:
        return as_utc(parsedate_to_datetime(text))
    except (TypeError, ValueError, IndexError):
        return None


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse a timestamp into an aware UTC datetime.

    Accepts datetimes, dates, epoch numbers (seconds or milliseconds, told
    apart by magnitude), numeric strings and ISO-8601 / RFC-2822 strings.
    """
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, datetime):
        try:
            return as_utc(value)
        except (OverflowError, ValueError):
            return None

    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)

    if isinstance(value, (int, float)):
        if not math.isfinite(value):
            return None
        return _epoch_to_datetime(float(value))

    if isinstance(value, str):
        trimmed = value.strip()
        if not trimmed:
            return None

        numeric = _strict_numeric(trimmed)
        if numeric is not None:
            from_number = _epoch_to_datetime(numeric)
            if from_number is not None:
                return from_number

        return _parse_date_string(trimmed)

    return None


def format_timestamp(value: datetime) -> str:
    """Render an aware datetime as ``YYYY-MM-DDTHH:MM:SS.mmmZ``."""
    utc_value = as_utc(value)
    return f"{utc_value.strftime('%Y-%m-%dT%H:%M:%S')}.{utc_value.microsecond // 1000:03d}Z"


def coerce_timestamp(value: Any) -> Optional[str]:
    parsed = parse_timestamp(value)
    if parsed is None:
        return None
    return format_timestamp(parsed)


def coerce_duration_seconds(value: Any, divisor: float = 1) -> Optional[float]:
    numeric = parse_numeric(value)
    if numeric is None or divisor == 0:
        return None

    scaled = numeric / divisor
    if math.isfinite(scaled) and scaled >= 0:
        return scaled
    return None


def get_value_by_path(source: Any, path: str) -> Any:
    """Look up a dotted path (``timing.startTime``) through nested mappings."""
    if not is_mapping(source):
        return None

    current: Any = source
    for key in path.split("."):
        if is_mapping(current) and key in current:
            current = current[key]
        else:
            return None
    return current
