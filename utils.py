"""Utility / helper functions used across the application."""

from __future__ import annotations

import datetime
import logging
from datetime import timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Optional
from zoneinfo import ZoneInfo

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


# ---------------------------------------------------------------------------
# Datetime helpers
# ---------------------------------------------------------------------------

def utc_now() -> datetime.datetime:
    """Return current UTC datetime.  Used as SQLAlchemy column default."""
    return datetime.datetime.now(timezone.utc)


def local_now(tz_name: str = "UTC") -> datetime.datetime:
    """Return the current wall-clock time in *tz_name* as a naive datetime.

    The store keeps naive datetimes, so billing decisions are made on the
    configured zone's wall clock.
    """
    return datetime.datetime.now(ZoneInfo(tz_name)).replace(tzinfo=None)


def parse_date(raw: Optional[str]) -> Optional[datetime.date]:
    if not raw:
        return None
    try:
        return datetime.datetime.strptime(raw, "%Y-%m-%d").date()
    except (ValueError, TypeError):
        logger.warning("Could not parse date: %r", raw)
        return None


def parse_datetime(raw: Optional[str]) -> Optional[datetime.datetime]:
    if not raw:
        return None
    try:
        return datetime.datetime.fromisoformat(raw)
    except (ValueError, TypeError):
        logger.warning("Could not parse datetime: %r", raw)
        return None


# ---------------------------------------------------------------------------
# Safe type conversions
# ---------------------------------------------------------------------------

def safe_int(value, default: int = 0) -> int:
    """Safely convert *value* to ``int``, returning *default* on failure."""
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (ValueError, TypeError):
        logger.warning("Could not convert %r to int, using default %s", value, default)
        return default


def safe_decimal(value, default: Decimal = Decimal("0")) -> Decimal:
    """Safely convert *value* to ``Decimal``, returning *default* on failure."""
    if value is None or value == "":
        return default
    if isinstance(value, Decimal):
        return value
    try:
        result = Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        logger.warning("Could not convert %r to Decimal, using default %s", value, default)
        return default
    if not result.is_finite():
        logger.warning("Non-finite amount %r, using default %s", value, default)
        return default
    return result


def money(value) -> Decimal:
    """Round an amount to the smallest currency unit (0.01, half up)."""
    return safe_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)
