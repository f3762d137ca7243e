"""Billing date calculator.

Decides whether a subscription's next billing cycle is due.  The anchor's
position inside its period (day of month, weekday, day of year) is projected
onto the period containing *now*, clamped to the last valid day, and a cycle
is due once *now* has reached that target date.

Pure functions only, so they can be exercised against fixed clock values.
"""

from __future__ import annotations

import calendar
import datetime
import logging
from typing import NamedTuple, Optional

from utils import parse_date

logger = logging.getLogger(__name__)


class RenewalDecision(NamedTuple):
    due: bool
    target_date: Optional[datetime.date]


def _as_date(value) -> Optional[datetime.date]:
    """Coerce a date, datetime or ``YYYY-MM-DD`` string to a ``date``."""
    if value is None:
        return None
    if isinstance(value, datetime.datetime):
        return value.date()
    if isinstance(value, datetime.date):
        return value
    if isinstance(value, str):
        parsed = parse_date(value[:10])
        if parsed is None:
            raise ValueError(f"Malformed date: {value!r}")
        return parsed
    raise TypeError(f"Unsupported date value: {value!r}")


def _clamped(year: int, month: int, day: int) -> datetime.date:
    last_day = calendar.monthrange(year, month)[1]
    return datetime.date(year, month, min(day, last_day))


# ---------------------------------------------------------------------------
# Target date projection, one per billing period
# ---------------------------------------------------------------------------

def daily_target_date(anchor: datetime.date, ref: datetime.date) -> datetime.date:
    return ref


def weekly_target_date(anchor: datetime.date, ref: datetime.date) -> datetime.date:
    """Anchor's weekday within the ISO week of *ref*."""
    return ref + datetime.timedelta(days=anchor.weekday() - ref.weekday())


def monthly_target_date(anchor: datetime.date, ref: datetime.date) -> datetime.date:
    """Anchor's day of month within *ref*'s month, clamped (31 -> 30 in June)."""
    return _clamped(ref.year, ref.month, anchor.day)


def yearly_target_date(anchor: datetime.date, ref: datetime.date) -> datetime.date:
    """Anchor's month and day within *ref*'s year (Feb 29 -> Feb 28)."""
    return _clamped(ref.year, anchor.month, anchor.day)


def _same_day(a: datetime.date, b: datetime.date) -> bool:
    return a == b


def _same_week(a: datetime.date, b: datetime.date) -> bool:
    return a.isocalendar()[:2] == b.isocalendar()[:2]


def _same_month(a: datetime.date, b: datetime.date) -> bool:
    return (a.year, a.month) == (b.year, b.month)


def _same_year(a: datetime.date, b: datetime.date) -> bool:
    return a.year == b.year


_PERIODS = {
    "DAILY": (daily_target_date, _same_day),
    "WEEKLY": (weekly_target_date, _same_week),
    "MONTHLY": (monthly_target_date, _same_month),
    "YEARLY": (yearly_target_date, _same_year),
}

SUPPORTED_PERIODS = tuple(_PERIODS)


def target_date(anchor, now, period: str = "MONTHLY") -> datetime.date:
    project, _ = _PERIODS[period]
    return project(_as_date(anchor), _as_date(now))


def same_cycle(a, b, period: str = "MONTHLY") -> bool:
    """True when *a* and *b* fall in the same billing window for *period*."""
    _, same = _PERIODS[period]
    return same(_as_date(a), _as_date(b))


def is_renewal_due(
    anchor,
    now,
    latest_invoice_date=None,
    end_date=None,
    period: str = "MONTHLY",
) -> RenewalDecision:
    """Decide whether a new billing cycle is due at *now*.

    Not due when an invoice was already issued in the current window, when
    *now* has not reached the target date, or when the target date lies
    beyond *end_date*.  Never raises: malformed input yields "not due".
    """
    try:
        project, same = _PERIODS[str(period).upper()]
        anchor_d = _as_date(anchor)
        now_d = _as_date(now)
        if anchor_d is None or now_d is None:
            return RenewalDecision(False, None)
        latest_d = _as_date(latest_invoice_date)
        end_d = _as_date(end_date)

        target = project(anchor_d, now_d)
        if latest_d is not None and same(latest_d, now_d):
            return RenewalDecision(False, target)
        if now_d < target:
            return RenewalDecision(False, target)
        if end_d is not None and target > end_d:
            return RenewalDecision(False, target)
        return RenewalDecision(True, target)
    except (KeyError, TypeError, ValueError, OverflowError) as exc:
        logger.warning("Renewal check treated as not due: %s", exc)
        return RenewalDecision(False, None)
