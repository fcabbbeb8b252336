'''
Computes when a payment falls due under a student's billing policy.

Rules, highest priority first:
1- payment_due_day_of_month: the next occurrence of that day strictly after
   the reference date (clamped to the month's last day).
2- payment_due_days: the reference plus that many days.
3- neither: due immediately, at the reference itself.

Calendar arithmetic is done on the local date of the organization timezone.
'''
import calendar
from datetime import date, datetime, time, timedelta
from typing import Optional, Union
from zoneinfo import ZoneInfo

from ..common.config import settings

DateLike = Union[date, datetime]


def organization_zone(name: Optional[str] = None) -> ZoneInfo:
    return ZoneInfo(name or settings.ORGANIZATION_TIMEZONE)


def _with_day(month_anchor: date, day: int) -> date:
    last_day = calendar.monthrange(month_anchor.year, month_anchor.month)[1]
    return month_anchor.replace(day=min(day, last_day))


def _first_of_next_month(day: date) -> date:
    if day.month == 12:
        return date(day.year + 1, 1, 1)
    return date(day.year, day.month + 1, 1)


def next_day_of_month(reference: date, day_of_month: int) -> date:
    """First calendar date carrying `day_of_month` that lies after `reference`."""
    candidate = _with_day(reference, day_of_month)
    if candidate <= reference:
        candidate = _with_day(_first_of_next_month(reference), day_of_month)
    return candidate


def compute_due_date(reference: DateLike, policy, tz: Optional[ZoneInfo] = None) -> DateLike:
    """
    Returns the due date for a payment whose clock starts at `reference`.

    `policy` is anything exposing `payment_due_day_of_month` and
    `payment_due_days` (a Students row or a StudentBillingPolicy).
    A plain date yields a date; an aware datetime yields an aware datetime,
    with day-of-month results placed at local midnight.
    """
    day_of_month = getattr(policy, "payment_due_day_of_month", None)
    due_days = getattr(policy, "payment_due_days", None)

    if not isinstance(reference, datetime):
        if day_of_month:
            return next_day_of_month(reference, day_of_month)
        if due_days:
            return reference + timedelta(days=due_days)
        return reference

    if reference.tzinfo is None:
        raise ValueError("compute_due_date needs a timezone-aware datetime.")

    zone = tz or organization_zone()
    local = reference.astimezone(zone)
    if day_of_month:
        due_day = next_day_of_month(local.date(), day_of_month)
        return datetime.combine(due_day, time.min, tzinfo=zone)
    if due_days:
        # wall-clock days, so DST changes keep the local time of day
        return (local.replace(tzinfo=None) + timedelta(days=due_days)).replace(tzinfo=zone)
    return reference
