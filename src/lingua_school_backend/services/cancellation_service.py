'''
Lesson cancellation workflow: late-cancellation fees and the advisory
per-period cancellation limit.
'''
from datetime import datetime
from typing import Optional, Annotated
from uuid import UUID

from fastapi import Depends
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from ..common.exceptions import BillingError, NotFoundError, InvalidStatusTransitionError
from ..common.logger import log
from ..core.cancellation import evaluate_cancellation, limit_period_bounds
from ..database import models as db_models
from ..database.db_enums import BalanceTransactionTypeEnum, CancellationLimitPeriodEnum, LessonStatusEnum
from ..database.engine import get_db_session, atomic
from ..database.utils import utc_now
from ..models import policy as policy_models
from .due_date_service import DueDateService
from .ledger_service import LedgerService


class CancellationService:
    def __init__(
        self,
        db: Annotated[AsyncSession, Depends(get_db_session)],
        ledger_service: Annotated[LedgerService, Depends(LedgerService)],
        due_date_service: Annotated[DueDateService, Depends(DueDateService)]
    ):
        self.db = db
        self.ledger_service = ledger_service
        self.due_date_service = due_date_service

    async def _get_lesson(self, lesson_id: UUID, organization_id: UUID) -> db_models.Lessons:
        stmt = select(db_models.Lessons).options(
            selectinload(db_models.Lessons.student)
        ).where(
            db_models.Lessons.id == lesson_id,
            db_models.Lessons.organization_id == organization_id
        )
        lesson = (await self.db.execute(stmt)).scalars().first()
        if not lesson:
            log.warning(f"Lesson {lesson_id} not found in organization {organization_id}.")
            raise NotFoundError("Lesson", lesson_id)
        return lesson

    async def _has_fee(self, lesson: db_models.Lessons) -> bool:
        stmt = select(func.count(db_models.BalanceTransactions.id)).where(
            db_models.BalanceTransactions.student_id == lesson.student_id,
            db_models.BalanceTransactions.lesson_id == lesson.id,
            db_models.BalanceTransactions.type == BalanceTransactionTypeEnum.CANCELLATION_FEE.value
        )
        return (await self.db.execute(stmt)).scalar_one() > 0

    async def _charge_fee(self, lesson: db_models.Lessons, cancelled_at: datetime) -> policy_models.LessonCancellationResult:
        decision = evaluate_cancellation(lesson, cancelled_at, lesson.student)
        transaction_id = None
        if decision.fee_applied:
            transaction = await self.ledger_service.append_transaction(
                lesson.student_id,
                BalanceTransactionTypeEnum.CANCELLATION_FEE,
                -decision.fee_amount,
                f"Late cancellation fee: {lesson.title}",
                lesson_id=lesson.id
            )
            transaction_id = transaction.id
            log.info(f"Charged cancellation fee {decision.fee_amount} for lesson {lesson.id} ({decision.hours_before_start:.2f}h before start).")
        return policy_models.LessonCancellationResult(
            lesson_id=lesson.id,
            student_id=lesson.student_id,
            cancelled_at=cancelled_at,
            fee_applied=decision.fee_applied,
            fee_amount=decision.fee_amount,
            transaction_id=transaction_id
        )

    async def preview_cancellation_fee(
        self,
        lesson_id: UUID,
        organization_id: UUID,
        cancelled_at: Optional[datetime] = None
    ) -> policy_models.CancellationFeeDecision:
        """What cancelling the lesson now (or at `cancelled_at`) would cost. No side effects."""
        lesson = await self._get_lesson(lesson_id, organization_id)
        return evaluate_cancellation(lesson, cancelled_at or utc_now(), lesson.student)

    async def cancel_lesson(
        self,
        lesson_id: UUID,
        organization_id: UUID,
        cancelled_at: Optional[datetime] = None,
        reason: Optional[str] = None
    ) -> policy_models.LessonCancellationResult:
        """
        Marks the lesson CANCELLED and, when the student's policy says so,
        charges the late-cancellation fee in the same unit of work.
        """
        cancelled_at = cancelled_at or utc_now()
        log.info(f"Cancelling lesson {lesson_id} at {cancelled_at.isoformat()}.")
        try:
            async with atomic(self.db):
                lesson = await self._get_lesson(lesson_id, organization_id)
                if lesson.status in (LessonStatusEnum.CANCELLED.value, LessonStatusEnum.COMPLETED.value):
                    raise InvalidStatusTransitionError(f"Lesson {lesson_id} is {lesson.status} and cannot be cancelled.")

                lesson.status = LessonStatusEnum.CANCELLED.value
                lesson.cancelled_at = cancelled_at
                lesson.cancellation_reason = reason
                await self.db.flush()

                return await self._charge_fee(lesson, cancelled_at)
        except BillingError as e:
            log.warning(f"Cancellation of lesson {lesson_id} rejected: {e.message}")
            raise
        except Exception as e:
            log.error(f"Failed to cancel lesson {lesson_id}: {e}", exc_info=True)
            raise

    async def apply_cancellation_fees(
        self,
        lesson_ids: list[UUID],
        organization_id: UUID
    ) -> list[policy_models.LessonCancellationResult]:
        """
        Charges outstanding fees for lessons that were already cancelled.
        Lessons that are not cancelled, or already carry a fee, are skipped.
        Either every fee is written or none is.
        """
        log.info(f"Applying cancellation fees for {len(lesson_ids)} lessons.")
        results = []
        try:
            async with atomic(self.db):
                for lesson_id in lesson_ids:
                    lesson = await self._get_lesson(lesson_id, organization_id)
                    if lesson.status != LessonStatusEnum.CANCELLED.value or lesson.cancelled_at is None:
                        log.info(f"Lesson {lesson_id} is not cancelled, skipping.")
                        continue
                    if await self._has_fee(lesson):
                        log.info(f"Lesson {lesson_id} already has a cancellation fee, skipping.")
                        continue
                    results.append(await self._charge_fee(lesson, lesson.cancelled_at))
        except BillingError:
            raise
        except Exception as e:
            log.error(f"Bulk cancellation fee run failed, nothing was charged: {e}", exc_info=True)
            raise
        return results

    async def check_cancellation_limit(
        self,
        student_id: UUID,
        organization_id: UUID,
        as_of: Optional[datetime] = None,
        policy=None
    ) -> policy_models.CancellationLimitStatus:
        """
        Counts the student's cancellations in the period containing `as_of`.
        Advisory only: nothing is blocked by this check.
        """
        as_of = as_of or utc_now()
        stmt = select(db_models.Students).where(
            db_models.Students.id == student_id,
            db_models.Students.organization_id == organization_id
        )
        student = (await self.db.execute(stmt)).scalars().first()
        if not student:
            raise NotFoundError("Student", student_id)
        policy = policy or student

        period = CancellationLimitPeriodEnum(policy.cancellation_limit_period or CancellationLimitPeriodEnum.MONTH)
        zone = await self.due_date_service.zone_for(organization_id)
        period_start, period_end = limit_period_bounds(period, as_of, student.enrolled_at, zone)

        conditions = [
            db_models.Lessons.student_id == student_id,
            db_models.Lessons.status == LessonStatusEnum.CANCELLED.value,
            db_models.Lessons.cancelled_at.is_not(None)
        ]
        if period_start is not None:
            conditions.append(db_models.Lessons.cancelled_at >= period_start)
        if period_end is not None:
            conditions.append(db_models.Lessons.cancelled_at < period_end)
        used = (await self.db.execute(select(func.count(db_models.Lessons.id)).where(*conditions))).scalar_one()

        if not policy.cancellation_limit_enabled or policy.cancellation_limit_count is None:
            return policy_models.CancellationLimitStatus(
                can_cancel=True, used=used, period=period,
                period_start=period_start, period_end=period_end
            )

        limit = policy.cancellation_limit_count
        return policy_models.CancellationLimitStatus(
            can_cancel=used < limit,
            used=used,
            remaining=max(limit - used, 0),
            limit=limit,
            period=period,
            period_start=period_start,
            period_end=period_end
        )
