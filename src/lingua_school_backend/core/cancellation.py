'''
Cancellation fee and cancellation limit rules.
'''
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional
from zoneinfo import ZoneInfo

from ..database.db_enums import CancellationLimitPeriodEnum
from ..models.policy import CancellationFeeDecision
from .due_dates import organization_zone
from .money import ZERO, percent_of


def hours_between(scheduled_at: datetime, cancelled_at: datetime) -> float:
    return (scheduled_at - cancelled_at).total_seconds() / 3600


def evaluate_cancellation(lesson, cancelled_at: datetime, policy, lesson_price: Optional[Decimal] = None) -> CancellationFeeDecision:
    """
    Decides whether cancelling `lesson` at `cancelled_at` costs the student a fee.

    A fee applies only when the policy has it enabled with both a threshold
    and a percent, and the cancellation happens before the start but inside
    the threshold window. Cancelling after the start never triggers a fee here.
    """
    price = lesson.price if lesson_price is None else lesson_price
    hours_before = hours_between(lesson.scheduled_at, cancelled_at)

    threshold = getattr(policy, "cancellation_hours_threshold", None)
    percent = getattr(policy, "cancellation_fee_percent", None)
    if not getattr(policy, "cancellation_fee_enabled", False) or threshold is None or percent is None:
        return CancellationFeeDecision(fee_applied=False, hours_before_start=hours_before)

    # compared as timedeltas so 23h59m59.9s is never rounded up to the threshold
    lead_time = lesson.scheduled_at - cancelled_at
    if timedelta(0) <= lead_time < timedelta(hours=threshold):
        fee = percent_of(price, percent)
        return CancellationFeeDecision(fee_applied=fee > ZERO, fee_amount=fee, hours_before_start=hours_before)

    return CancellationFeeDecision(fee_applied=False, hours_before_start=hours_before)


def limit_period_bounds(
    period: CancellationLimitPeriodEnum | str,
    as_of: datetime,
    enrolled_at: Optional[datetime] = None,
    tz: Optional[ZoneInfo] = None
) -> tuple[Optional[datetime], Optional[datetime]]:
    """
    Returns the half-open window [start, end) of the counting period that
    contains `as_of`. Calendar periods follow the organization timezone;
    'enrollment' runs from enrolment with no end.
    """
    period = CancellationLimitPeriodEnum(period)
    if period == CancellationLimitPeriodEnum.ENROLLMENT:
        return enrolled_at, None

    zone = tz or organization_zone()
    local = as_of.astimezone(zone)

    if period == CancellationLimitPeriodEnum.MONTH:
        start_month, months = local.month, 1
    elif period == CancellationLimitPeriodEnum.QUARTER:
        start_month, months = 3 * ((local.month - 1) // 3) + 1, 3
    else:
        start_month, months = 1, 12

    start = datetime(local.year, start_month, 1, tzinfo=zone)
    end_month_index = start_month - 1 + months
    end = datetime(local.year + end_month_index // 12, end_month_index % 12 + 1, 1, tzinfo=zone)
    return start, end
