'''
Teacher payouts: which lessons a teacher is paid for over a period, and the
PENDING -> APPROVED -> PAID lifecycle of the resulting payout batch.
'''
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from typing import Optional, Annotated
from uuid import UUID

from fastapi import Depends
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from ..common.config import settings
from ..common.exceptions import (
    BillingError, NotFoundError, InvalidPeriodError, NoQualifiedLessonsError,
    OnlyPendingDeletableError, InvalidStatusTransitionError
)
from ..common.logger import log
from ..core.money import ZERO, money_sum, to_money
from ..core.payout_rules import qualify_lesson, lesson_hours, lesson_payout_amount
from ..database import models as db_models
from ..database.db_enums import PayoutStatusEnum
from ..database.engine import get_db_session, atomic
from ..database.utils import utc_now
from ..models import payout as payout_models
from .due_date_service import DueDateService

TERMINAL_STATUSES = (PayoutStatusEnum.PAID.value, PayoutStatusEnum.CANCELLED.value)
UNPAID_STATUSES = (PayoutStatusEnum.PENDING.value, PayoutStatusEnum.APPROVED.value)


class PayoutService:
    """
    Service for previewing, creating and managing teacher payouts.
    """
    def __init__(
        self,
        db: Annotated[AsyncSession, Depends(get_db_session)],
        due_date_service: Annotated[DueDateService, Depends(DueDateService)]
    ):
        self.db = db
        self.due_date_service = due_date_service

    # --- 1. Internal Helpers ---

    async def _get_teacher(self, teacher_id: UUID, organization_id: UUID, for_update: bool = False) -> db_models.Teachers:
        stmt = select(db_models.Teachers).where(
            db_models.Teachers.id == teacher_id,
            db_models.Teachers.organization_id == organization_id
        )
        if for_update:
            stmt = stmt.with_for_update()
        teacher = (await self.db.execute(stmt)).scalars().first()
        if not teacher:
            log.warning(f"Teacher {teacher_id} not found in organization {organization_id}.")
            raise NotFoundError("Teacher", teacher_id)
        return teacher

    async def _get_payout(self, payout_id: UUID, organization_id: UUID) -> db_models.TeacherPayouts:
        stmt = select(db_models.TeacherPayouts).where(
            db_models.TeacherPayouts.id == payout_id,
            db_models.TeacherPayouts.organization_id == organization_id
        )
        payout = (await self.db.execute(stmt)).scalars().first()
        if not payout:
            log.warning(f"Payout {payout_id} not found in organization {organization_id}.")
            raise NotFoundError("Payout", payout_id)
        return payout

    async def _teacher_lessons(
        self,
        teacher_id: UUID,
        organization_id: UUID,
        period_start: datetime,
        period_end: datetime
    ) -> list[db_models.Lessons]:
        stmt = select(db_models.Lessons).options(
            selectinload(db_models.Lessons.student)
        ).where(
            db_models.Lessons.teacher_id == teacher_id,
            db_models.Lessons.organization_id == organization_id,
            db_models.Lessons.scheduled_at >= period_start,
            db_models.Lessons.scheduled_at < period_end
        ).order_by(db_models.Lessons.scheduled_at)
        return list((await self.db.execute(stmt)).scalars().all())

    async def _payout_references(self, lesson_ids: list[UUID]) -> dict[UUID, db_models.TeacherPayouts]:
        """Maps each lesson to the live (non-cancelled) payout that already contains it."""
        if not lesson_ids:
            return {}
        stmt = select(db_models.TeacherPayoutLessons.lesson_id, db_models.TeacherPayouts).join(
            db_models.TeacherPayouts,
            db_models.TeacherPayouts.id == db_models.TeacherPayoutLessons.payout_id
        ).where(
            db_models.TeacherPayoutLessons.lesson_id.in_(lesson_ids),
            db_models.TeacherPayouts.status != PayoutStatusEnum.CANCELLED.value
        )
        return {lesson_id: payout for lesson_id, payout in (await self.db.execute(stmt)).all()}

    @staticmethod
    def _check_period(period_start: datetime, period_end: datetime) -> None:
        if period_end <= period_start:
            raise InvalidPeriodError(
                f"Period end {period_end.isoformat()} must be after period start {period_start.isoformat()}."
            )

    # --- 2. Preview & Create ---

    async def preview_payout(
        self,
        teacher_id: UUID,
        organization_id: UUID,
        period_start: datetime,
        period_end: datetime,
        now: Optional[datetime] = None
    ) -> payout_models.PayoutPreview:
        """
        Lessons scheduled in [period_start, period_end) that qualify for pay
        and are not already part of another live payout.
        """
        self._check_period(period_start, period_end)
        now = now or utc_now()
        teacher = await self._get_teacher(teacher_id, organization_id)
        log.info(f"Previewing payout for teacher {teacher_id} from {period_start.isoformat()} to {period_end.isoformat()}.")

        lessons = await self._teacher_lessons(teacher_id, organization_id, period_start, period_end)
        already_paid = await self._payout_references([lesson.id for lesson in lessons])

        qualified = []
        for lesson in lessons:
            if lesson.id in already_paid:
                continue
            qualification = qualify_lesson(lesson, teacher, now)
            if not qualification.qualified:
                continue
            qualified.append(payout_models.QualifiedLesson(
                id=lesson.id,
                title=lesson.title,
                scheduled_at=lesson.scheduled_at,
                duration_minutes=lesson.duration_minutes,
                status=lesson.status,
                cancelled_at=lesson.cancelled_at,
                student_name=lesson.student.full_name if lesson.student else "",
                hourly_rate=teacher.hourly_rate,
                amount=lesson_payout_amount(teacher.hourly_rate, lesson.duration_minutes, qualification.payout_percent),
                currency=lesson.currency,
                qualification_reason=qualification.reason,
                payout_percent=qualification.payout_percent
            ))

        if qualified:
            currency = qualified[0].currency
        else:
            organization = await self.db.get(db_models.Organizations, organization_id)
            currency = organization.currency if organization else settings.DEFAULT_CURRENCY

        return payout_models.PayoutPreview(
            teacher_id=teacher.id,
            teacher_name=teacher.full_name,
            period_start=period_start,
            period_end=period_end,
            qualified_lessons=qualified,
            total_hours=to_money(sum((lesson_hours(q.duration_minutes) for q in qualified), Decimal(0))),
            total_amount=money_sum(q.amount for q in qualified),
            currency=currency
        )

    async def create_payout(
        self,
        data: payout_models.PayoutCreate,
        organization_id: UUID,
        now: Optional[datetime] = None
    ) -> payout_models.PayoutCreateResult:
        """Persists a PENDING payout for everything the preview qualifies."""
        log.info(f"Creating payout for teacher {data.teacher_id}.")
        try:
            async with atomic(self.db):
                # Serializes payout creation per teacher so a lesson cannot land in two payouts
                await self._get_teacher(data.teacher_id, organization_id, for_update=True)
                preview = await self.preview_payout(
                    data.teacher_id, organization_id, data.period_start, data.period_end, now
                )
                if not preview.qualified_lessons:
                    raise NoQualifiedLessonsError(
                        f"Teacher {data.teacher_id} has no qualifying lessons between {data.period_start.isoformat()} and {data.period_end.isoformat()}."
                    )

                payout = db_models.TeacherPayouts(
                    organization_id=organization_id,
                    teacher_id=data.teacher_id,
                    period_start=data.period_start,
                    period_end=data.period_end,
                    total_hours=preview.total_hours,
                    total_amount=preview.total_amount,
                    currency=preview.currency,
                    status=PayoutStatusEnum.PENDING.value,
                    notes=data.notes,
                    created_at=utc_now(),
                    lessons=[
                        db_models.TeacherPayoutLessons(
                            lesson_id=q.id,
                            lesson_date=q.scheduled_at,
                            duration_minutes=q.duration_minutes,
                            hourly_rate=q.hourly_rate,
                            payout_percent=q.payout_percent,
                            amount=q.amount,
                            qualification_reason=q.qualification_reason.value,
                            lesson_title=q.title,
                            student_name=q.student_name
                        )
                        for q in preview.qualified_lessons
                    ]
                )
                self.db.add(payout)
                await self.db.flush()

            log.info(f"Created payout {payout.id} for teacher {data.teacher_id}: {len(preview.qualified_lessons)} lessons, {preview.total_amount}.")
            return payout_models.PayoutCreateResult(
                payout=payout_models.PayoutRead.model_validate(payout),
                preview=preview
            )
        except BillingError as e:
            log.warning(f"Payout for teacher {data.teacher_id} rejected: {e.message}")
            raise
        except Exception as e:
            log.error(f"Failed to create payout for teacher {data.teacher_id}: {e}", exc_info=True)
            raise

    # --- 3. Lifecycle ---

    async def update_payout_status(
        self,
        payout_id: UUID,
        organization_id: UUID,
        status: PayoutStatusEnum,
        notes: Optional[str] = None
    ) -> db_models.TeacherPayouts:
        """
        Moves a payout to `status`. PAID and CANCELLED are final; any other
        move is allowed. Marking PAID stamps paid_at.
        """
        status = PayoutStatusEnum(status)
        log.info(f"Updating payout {payout_id} to {status.value}.")
        async with atomic(self.db):
            payout = await self._get_payout(payout_id, organization_id)
            if payout.status in TERMINAL_STATUSES and payout.status != status.value:
                log.warning(f"Refusing to move payout {payout_id} from {payout.status} to {status.value}.")
                raise InvalidStatusTransitionError(f"Payout {payout_id} is {payout.status} and can no longer change status.")

            payout.status = status.value
            if status == PayoutStatusEnum.PAID and payout.paid_at is None:
                payout.paid_at = utc_now()
            if notes is not None:
                payout.notes = notes
            await self.db.flush()
        return payout

    async def delete_payout(self, payout_id: UUID, organization_id: UUID) -> None:
        log.info(f"Deleting payout {payout_id}.")
        async with atomic(self.db):
            payout = await self._get_payout(payout_id, organization_id)
            if payout.status != PayoutStatusEnum.PENDING.value:
                log.warning(f"Refusing to delete payout {payout_id} in status {payout.status}.")
                raise OnlyPendingDeletableError(f"Payout {payout_id} is {payout.status}; only PENDING payouts can be deleted.")
            await self.db.delete(payout)
            await self.db.flush()

    # --- 4. Reads ---

    async def get_payout(self, payout_id: UUID, organization_id: UUID) -> db_models.TeacherPayouts:
        return await self._get_payout(payout_id, organization_id)

    async def list_payouts(
        self,
        organization_id: UUID,
        teacher_id: Optional[UUID] = None,
        status: Optional[PayoutStatusEnum] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None
    ) -> list[db_models.TeacherPayouts]:
        stmt = select(db_models.TeacherPayouts).where(
            db_models.TeacherPayouts.organization_id == organization_id
        ).order_by(db_models.TeacherPayouts.created_at.desc())
        if teacher_id is not None:
            stmt = stmt.where(db_models.TeacherPayouts.teacher_id == teacher_id)
        if status is not None:
            stmt = stmt.where(db_models.TeacherPayouts.status == PayoutStatusEnum(status).value)
        if date_from is not None:
            stmt = stmt.where(db_models.TeacherPayouts.period_end > date_from)
        if date_to is not None:
            stmt = stmt.where(db_models.TeacherPayouts.period_start < date_to)
        return list((await self.db.execute(stmt)).scalars().all())

    async def get_lessons_for_range(
        self,
        teacher_id: UUID,
        organization_id: UUID,
        range_start: datetime,
        range_end: datetime,
        now: Optional[datetime] = None
    ) -> list[payout_models.LessonPayoutView]:
        """Every lesson of the teacher in the range, with its payout outcome."""
        self._check_period(range_start, range_end)
        now = now or utc_now()
        teacher = await self._get_teacher(teacher_id, organization_id)
        lessons = await self._teacher_lessons(teacher_id, organization_id, range_start, range_end)
        references = await self._payout_references([lesson.id for lesson in lessons])

        views = []
        for lesson in lessons:
            qualification = qualify_lesson(lesson, teacher, now)
            payout = references.get(lesson.id)
            views.append(payout_models.LessonPayoutView(
                id=lesson.id,
                title=lesson.title,
                scheduled_at=lesson.scheduled_at,
                duration_minutes=lesson.duration_minutes,
                status=lesson.status,
                cancelled_at=lesson.cancelled_at,
                student_name=lesson.student.full_name if lesson.student else "",
                hourly_rate=teacher.hourly_rate,
                amount=lesson_payout_amount(teacher.hourly_rate, lesson.duration_minutes, qualification.payout_percent) if qualification.qualified else ZERO,
                currency=lesson.currency,
                qualifies_for_payout=qualification.qualified,
                qualification_reason=qualification.reason,
                payout_percent=qualification.payout_percent if qualification.qualified else None,
                payout=payout_models.PayoutReference(id=payout.id, status=payout.status, paid_at=payout.paid_at) if payout else None
            ))
        return views

    async def get_lessons_for_day(
        self,
        teacher_id: UUID,
        organization_id: UUID,
        day: date,
        now: Optional[datetime] = None
    ) -> list[payout_models.LessonPayoutView]:
        """Lessons on one calendar day of the organization's timezone."""
        zone = await self.due_date_service.zone_for(organization_id)
        day_start = datetime.combine(day, time.min, tzinfo=zone)
        day_end = datetime.combine(day + timedelta(days=1), time.min, tzinfo=zone)
        return await self.get_lessons_for_range(teacher_id, organization_id, day_start, day_end, now)

    async def get_teachers_summary(self, organization_id: UUID) -> list[payout_models.TeacherPayoutSummary]:
        """Active teachers with the count and total of their unpaid payouts."""
        teachers = (await self.db.execute(
            select(db_models.Teachers).where(
                db_models.Teachers.organization_id == organization_id,
                db_models.Teachers.is_active.is_(True)
            ).order_by(db_models.Teachers.last_name, db_models.Teachers.first_name)
        )).scalars().all()

        rows = (await self.db.execute(
            select(
                db_models.TeacherPayouts.teacher_id,
                func.count(db_models.TeacherPayouts.id),
                func.coalesce(func.sum(db_models.TeacherPayouts.total_amount), 0)
            ).where(
                db_models.TeacherPayouts.organization_id == organization_id,
                db_models.TeacherPayouts.status.in_(UNPAID_STATUSES)
            ).group_by(db_models.TeacherPayouts.teacher_id)
        )).all()
        unpaid = {row[0]: (row[1], to_money(row[2])) for row in rows}

        return [
            payout_models.TeacherPayoutSummary(
                id=teacher.id,
                first_name=teacher.first_name,
                last_name=teacher.last_name,
                email=teacher.email,
                hourly_rate=teacher.hourly_rate,
                pending_payouts_count=unpaid.get(teacher.id, (0, ZERO))[0],
                pending_payouts_total=unpaid.get(teacher.id, (0, ZERO))[1]
            )
            for teacher in teachers
        ]
