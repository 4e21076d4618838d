"""
Display formatting for dashboard numbers. Missing values render as ``--``.
"""

import math
from typing import Optional, Union

from .numeric import SQUARE_METERS_PER_HECTARE, parse_numeric

MISSING = "--"


def _is_missing(value: Optional[float]) -> bool:
    return value is None or (isinstance(value, float) and not math.isfinite(value))


def format_decimal(value: Optional[float], fraction_digits: int = 2) -> str:
    if _is_missing(value):
        return MISSING
    return f"{float(value):,.{fraction_digits}f}"


def format_hectares(area_m2: Optional[float], fraction_digits: int = 2) -> str:
    if _is_missing(area_m2):
        return MISSING
    return format_decimal(area_m2 / SQUARE_METERS_PER_HECTARE, fraction_digits)


def format_percent(value: Optional[float], fraction_digits: int = 1) -> str:
    """``12.5%`` for a value already in percent."""
    if _is_missing(value):
        return MISSING
    return f"{format_decimal(value, fraction_digits)}%"


def format_duration(seconds: Union[int, float, str, None]) -> str:
    """Format seconds as ``1h 2m 3s``; ``N/A`` when unknown or negative."""
    if seconds is None:
        return "N/A"

    if isinstance(seconds, str):
        parsed = parse_numeric(seconds)
        total_seconds = math.trunc(parsed) if parsed is not None else None
    else:
        total_seconds = parse_numeric(seconds)

    if total_seconds is None or total_seconds < 0:
        return "N/A"
    if total_seconds == 0:
        return "0s"

    hours = int(total_seconds // 3600)
    minutes = int((total_seconds % 3600) // 60)
    remaining_seconds = int(total_seconds % 60)

    parts = []
    if hours > 0:
        parts.append(f"{hours}h")
    if minutes > 0:
        parts.append(f"{minutes}m")
    if remaining_seconds > 0 or not parts:
        parts.append(f"{remaining_seconds}s")
    return " ".join(parts)


def format_elapsed(seconds: float) -> str:
    """Elapsed polling time as ``m:ss``."""
    minutes, secs = divmod(max(0, int(seconds)), 60)
    return f"{minutes}:{secs:02d}"
