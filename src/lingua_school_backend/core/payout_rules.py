'''
Decides which lessons a teacher is paid for, and how much.
'''
from datetime import datetime, timedelta
from decimal import Decimal

from ..common.config import settings
from ..database.db_enums import LessonStatusEnum, QualificationReasonEnum
from ..models.payout import LessonQualification
from .money import to_money

NOT_QUALIFIED = LessonQualification(qualified=False)


def qualify_lesson(lesson, teacher, now: datetime) -> LessonQualification:
    """
    COMPLETED lessons always qualify. CONFIRMED lessons qualify once their
    start has passed. A CANCELLED lesson qualifies as a late cancellation
    when the teacher has cancellation payouts enabled and it was cancelled
    before the start but inside the teacher's window.
    """
    status = lesson.status
    if status == LessonStatusEnum.COMPLETED.value:
        return LessonQualification(qualified=True, reason=QualificationReasonEnum.COMPLETED)

    if status == LessonStatusEnum.CONFIRMED.value:
        if lesson.scheduled_at < now:
            return LessonQualification(qualified=True, reason=QualificationReasonEnum.CONFIRMED)
        return NOT_QUALIFIED

    if status == LessonStatusEnum.CANCELLED.value:
        if lesson.cancelled_at is None or not teacher.cancellation_payout_enabled:
            return NOT_QUALIFIED
        window_hours = teacher.cancellation_payout_hours or settings.DEFAULT_TEACHER_CANCELLATION_HOURS
        lead_time = lesson.scheduled_at - lesson.cancelled_at
        if timedelta(0) <= lead_time < timedelta(hours=window_hours):
            percent = teacher.cancellation_payout_percent
            return LessonQualification(
                qualified=True,
                reason=QualificationReasonEnum.LATE_CANCELLATION,
                payout_percent=100 if percent is None else percent
            )

    return NOT_QUALIFIED


def lesson_hours(duration_minutes: int) -> Decimal:
    return Decimal(duration_minutes) / Decimal(60)


def lesson_payout_amount(hourly_rate: Decimal, duration_minutes: int, payout_percent: int = 100) -> Decimal:
    """rate * hours * percent, rounded half-up once at the end."""
    raw = Decimal(hourly_rate) * lesson_hours(duration_minutes) * Decimal(payout_percent) / Decimal(100)
    return to_money(raw)
