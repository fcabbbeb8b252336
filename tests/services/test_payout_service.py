import pytest
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from sqlalchemy.ext.asyncio import AsyncSession

from lingua_school_backend.common.exceptions import (
    InvalidPeriodError, InvalidStatusTransitionError, NoQualifiedLessonsError, NotFoundError, OnlyPendingDeletableError
)
from lingua_school_backend.database.db_enums import LessonStatusEnum, PayoutStatusEnum, QualificationReasonEnum
from lingua_school_backend.models.payout import PayoutCreate
from lingua_school_backend.services.payout_service import PayoutService
from tests.constants import TEST_ORGANIZATION_ID, UNKNOWN_ID
from tests.database.factories import LessonFactory, TeacherFactory

ORG = TEST_ORGANIZATION_ID
NOW = datetime(2024, 5, 20, 12, 0, tzinfo=timezone.utc)
PERIOD_START = datetime(2024, 5, 1, tzinfo=timezone.utc)
PERIOD_END = datetime(2024, 6, 1, tzinfo=timezone.utc)


def make_lesson(student, teacher, status, scheduled_at, **kwargs):
    return LessonFactory(
        student_id=student.id,
        teacher_id=teacher.id,
        status=status.value,
        scheduled_at=scheduled_at,
        **kwargs
    )


@pytest.mark.anyio
class TestPreviewPayout:

    async def test_completed_lesson_pays_full_rate(self, payout_service: PayoutService, student, teacher, db_session: AsyncSession):
        lesson = make_lesson(student, teacher, LessonStatusEnum.COMPLETED, datetime(2024, 5, 10, 15, 0, tzinfo=timezone.utc))
        await db_session.flush()

        preview = await payout_service.preview_payout(teacher.id, ORG, PERIOD_START, PERIOD_END, now=NOW)

        assert [q.id for q in preview.qualified_lessons] == [lesson.id]
        assert preview.qualified_lessons[0].qualification_reason == QualificationReasonEnum.COMPLETED
        assert preview.total_amount == Decimal("100.00")
        assert preview.total_hours == Decimal("1.00")
        assert preview.teacher_name == teacher.full_name

    async def test_future_confirmed_and_plain_scheduled_are_excluded(self, payout_service: PayoutService, student, teacher, db_session: AsyncSession):
        past_confirmed = make_lesson(student, teacher, LessonStatusEnum.CONFIRMED, NOW - timedelta(days=2), duration_minutes=90)
        make_lesson(student, teacher, LessonStatusEnum.CONFIRMED, NOW + timedelta(days=2))
        make_lesson(student, teacher, LessonStatusEnum.SCHEDULED, NOW - timedelta(days=3))
        await db_session.flush()

        preview = await payout_service.preview_payout(teacher.id, ORG, PERIOD_START, PERIOD_END, now=NOW)

        assert [q.id for q in preview.qualified_lessons] == [past_confirmed.id]
        assert preview.total_amount == Decimal("150.00")
        assert preview.total_hours == Decimal("1.50")

    async def test_lessons_recorded_under_another_organization_are_ignored(
        self, payout_service: PayoutService, student, teacher, other_organization, db_session: AsyncSession
    ):
        own = make_lesson(student, teacher, LessonStatusEnum.COMPLETED, datetime(2024, 5, 10, 15, 0, tzinfo=timezone.utc))
        make_lesson(
            student, teacher, LessonStatusEnum.COMPLETED, datetime(2024, 5, 11, 15, 0, tzinfo=timezone.utc),
            organization_id=other_organization.id
        )
        await db_session.flush()

        preview = await payout_service.preview_payout(teacher.id, ORG, PERIOD_START, PERIOD_END, now=NOW)
        assert [q.id for q in preview.qualified_lessons] == [own.id]

        views = await payout_service.get_lessons_for_range(teacher.id, ORG, PERIOD_START, PERIOD_END, now=NOW)
        assert [view.id for view in views] == [own.id]

    async def test_late_cancellation_depends_on_teacher_settings(self, payout_service: PayoutService, student, db_session: AsyncSession):
        strict = TeacherFactory(hourly_rate=Decimal("100.00"), cancellation_payout_enabled=False)
        generous = TeacherFactory(
            hourly_rate=Decimal("100.00"),
            cancellation_payout_enabled=True,
            cancellation_payout_hours=24,
            cancellation_payout_percent=50
        )
        start = datetime(2024, 5, 12, 10, 0, tzinfo=timezone.utc)
        for teacher in (strict, generous):
            make_lesson(student, teacher, LessonStatusEnum.CANCELLED, start, cancelled_at=start - timedelta(hours=3))
        await db_session.flush()

        strict_preview = await payout_service.preview_payout(strict.id, ORG, PERIOD_START, PERIOD_END, now=NOW)
        generous_preview = await payout_service.preview_payout(generous.id, ORG, PERIOD_START, PERIOD_END, now=NOW)

        assert strict_preview.qualified_lessons == []
        assert strict_preview.total_amount == Decimal("0.00")
        assert len(generous_preview.qualified_lessons) == 1
        assert generous_preview.qualified_lessons[0].qualification_reason == QualificationReasonEnum.LATE_CANCELLATION
        assert generous_preview.qualified_lessons[0].payout_percent == 50
        assert generous_preview.total_amount == Decimal("50.00")

    async def test_lessons_outside_period_are_ignored(self, payout_service: PayoutService, student, teacher, db_session: AsyncSession):
        make_lesson(student, teacher, LessonStatusEnum.COMPLETED, PERIOD_END)
        make_lesson(student, teacher, LessonStatusEnum.COMPLETED, PERIOD_START - timedelta(seconds=1))
        await db_session.flush()

        preview = await payout_service.preview_payout(teacher.id, ORG, PERIOD_START, PERIOD_END, now=NOW)
        assert preview.qualified_lessons == []

    async def test_invalid_period(self, payout_service: PayoutService, teacher):
        with pytest.raises(InvalidPeriodError):
            await payout_service.preview_payout(teacher.id, ORG, PERIOD_END, PERIOD_START, now=NOW)


@pytest.mark.anyio
class TestCreatePayout:

    async def test_creates_pending_payout_and_excludes_its_lessons_afterwards(
        self, payout_service: PayoutService, student, teacher, db_session: AsyncSession
    ):
        make_lesson(student, teacher, LessonStatusEnum.COMPLETED, datetime(2024, 5, 3, 9, 0, tzinfo=timezone.utc))
        make_lesson(student, teacher, LessonStatusEnum.COMPLETED, datetime(2024, 5, 4, 9, 0, tzinfo=timezone.utc), duration_minutes=30)
        await db_session.flush()
        data = PayoutCreate(teacher_id=teacher.id, period_start=PERIOD_START, period_end=PERIOD_END, notes="May")

        result = await payout_service.create_payout(data, ORG, now=NOW)

        assert result.payout.status == PayoutStatusEnum.PENDING
        assert result.payout.total_amount == Decimal("150.00")
        assert result.payout.total_amount == sum(l.amount for l in result.payout.lessons)
        assert result.payout.lessons_count == 2
        assert result.payout.lessons[0].student_name == student.full_name

        with pytest.raises(NoQualifiedLessonsError):
            await payout_service.create_payout(data, ORG, now=NOW)

    async def test_cancelled_payout_releases_its_lessons(self, payout_service: PayoutService, student, teacher, db_session: AsyncSession):
        make_lesson(student, teacher, LessonStatusEnum.COMPLETED, datetime(2024, 5, 3, 9, 0, tzinfo=timezone.utc))
        await db_session.flush()
        data = PayoutCreate(teacher_id=teacher.id, period_start=PERIOD_START, period_end=PERIOD_END)

        first = await payout_service.create_payout(data, ORG, now=NOW)
        await payout_service.update_payout_status(first.payout.id, ORG, PayoutStatusEnum.CANCELLED)

        second = await payout_service.create_payout(data, ORG, now=NOW)
        assert second.payout.total_amount == Decimal("100.00")

    async def test_nothing_to_pay(self, payout_service: PayoutService, teacher):
        data = PayoutCreate(teacher_id=teacher.id, period_start=PERIOD_START, period_end=PERIOD_END)
        with pytest.raises(NoQualifiedLessonsError):
            await payout_service.create_payout(data, ORG, now=NOW)


@pytest.mark.anyio
class TestPayoutLifecycle:

    async def create(self, payout_service: PayoutService, student, teacher, db_session: AsyncSession):
        make_lesson(student, teacher, LessonStatusEnum.COMPLETED, datetime(2024, 5, 3, 9, 0, tzinfo=timezone.utc))
        await db_session.flush()
        data = PayoutCreate(teacher_id=teacher.id, period_start=PERIOD_START, period_end=PERIOD_END)
        return (await payout_service.create_payout(data, ORG, now=NOW)).payout

    async def test_pending_to_paid(self, payout_service: PayoutService, student, teacher, db_session: AsyncSession):
        payout = await self.create(payout_service, student, teacher, db_session)

        approved = await payout_service.update_payout_status(payout.id, ORG, PayoutStatusEnum.APPROVED)
        assert approved.paid_at is None

        paid = await payout_service.update_payout_status(payout.id, ORG, PayoutStatusEnum.PAID, notes="Bank transfer")
        assert paid.status == PayoutStatusEnum.PAID.value
        assert paid.paid_at is not None
        assert paid.notes == "Bank transfer"

        with pytest.raises(InvalidStatusTransitionError):
            await payout_service.update_payout_status(payout.id, ORG, PayoutStatusEnum.PENDING)

    async def test_approved_payout_cannot_be_deleted(self, payout_service: PayoutService, student, teacher, db_session: AsyncSession):
        payout = await self.create(payout_service, student, teacher, db_session)
        await payout_service.update_payout_status(payout.id, ORG, PayoutStatusEnum.APPROVED)

        with pytest.raises(OnlyPendingDeletableError):
            await payout_service.delete_payout(payout.id, ORG)
        assert (await payout_service.get_payout(payout.id, ORG)).status == PayoutStatusEnum.APPROVED.value

    async def test_pending_payout_is_deleted(self, payout_service: PayoutService, student, teacher, db_session: AsyncSession):
        payout = await self.create(payout_service, student, teacher, db_session)

        await payout_service.delete_payout(payout.id, ORG)

        with pytest.raises(NotFoundError):
            await payout_service.get_payout(payout.id, ORG)

    async def test_unknown_payout(self, payout_service: PayoutService, organization):
        with pytest.raises(NotFoundError):
            await payout_service.update_payout_status(UNKNOWN_ID, ORG, PayoutStatusEnum.PAID)
        with pytest.raises(NotFoundError):
            await payout_service.delete_payout(UNKNOWN_ID, ORG)


@pytest.mark.anyio
class TestPayoutReads:

    async def test_lessons_for_day_show_payout_reference(self, payout_service: PayoutService, student, teacher, db_session: AsyncSession):
        # 09:00 Warsaw time on May 3rd
        paid_lesson = make_lesson(student, teacher, LessonStatusEnum.COMPLETED, datetime(2024, 5, 3, 7, 0, tzinfo=timezone.utc))
        open_lesson = make_lesson(student, teacher, LessonStatusEnum.SCHEDULED, datetime(2024, 5, 3, 20, 0, tzinfo=timezone.utc))
        make_lesson(student, teacher, LessonStatusEnum.COMPLETED, datetime(2024, 5, 3, 22, 30, tzinfo=timezone.utc))  # May 4th locally
        await db_session.flush()
        data = PayoutCreate(teacher_id=teacher.id, period_start=PERIOD_START, period_end=datetime(2024, 5, 3, 12, 0, tzinfo=timezone.utc))
        payout = (await payout_service.create_payout(data, ORG, now=NOW)).payout

        views = await payout_service.get_lessons_for_day(teacher.id, ORG, date(2024, 5, 3), now=NOW)

        by_id = {view.id: view for view in views}
        assert set(by_id) == {paid_lesson.id, open_lesson.id}
        assert by_id[paid_lesson.id].payout.id == payout.id
        assert by_id[paid_lesson.id].amount == Decimal("100.00")
        assert by_id[open_lesson.id].qualifies_for_payout is False
        assert by_id[open_lesson.id].payout is None

    async def test_list_and_summary(self, payout_service: PayoutService, student, teacher, db_session: AsyncSession):
        make_lesson(student, teacher, LessonStatusEnum.COMPLETED, datetime(2024, 5, 3, 9, 0, tzinfo=timezone.utc))
        idle_teacher = TeacherFactory()
        await db_session.flush()
        data = PayoutCreate(teacher_id=teacher.id, period_start=PERIOD_START, period_end=PERIOD_END)
        await payout_service.create_payout(data, ORG, now=NOW)

        assert len(await payout_service.list_payouts(ORG, teacher_id=teacher.id)) == 1
        assert await payout_service.list_payouts(ORG, status=PayoutStatusEnum.PAID) == []

        summary = {row.id: row for row in await payout_service.get_teachers_summary(ORG)}
        assert summary[teacher.id].pending_payouts_count == 1
        assert summary[teacher.id].pending_payouts_total == Decimal("100.00")
        assert summary[idle_teacher.id].pending_payouts_count == 0
