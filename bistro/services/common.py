"""
Small helpers shared by the domain services: exact money arithmetic
and timezone normalisation.
"""

from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Union

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def money(value: Union[Decimal, int, float, str, None]) -> Decimal:
    """Round any numeric value half-up to whole cents."""
    if value is None:
        return ZERO
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """
    Return an aware UTC datetime.

    SQLite hands back naive datetimes even for timezone-aware columns;
    those are stored in UTC, so they are tagged rather than converted.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def page_bounds(page: int, page_size: int) -> tuple[int, int]:
    """Clamp pagination input and return (offset, limit)."""
    page = max(page, 1)
    page_size = min(max(page_size, 1), 100)
    return (page - 1) * page_size, page_size
