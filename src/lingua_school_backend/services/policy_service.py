'''
Reads and writes student billing policies and teacher payout settings.
'''
from typing import Annotated
from uuid import UUID

from fastapi import Depends
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..common.exceptions import BillingError, NotFoundError, PolicyMisconfiguredError
from ..common.logger import log
from ..database import models as db_models
from ..database.engine import get_db_session, atomic
from ..models import policy as policy_models
from .due_date_service import DueDateService

DUE_DATE_FIELDS = ('payment_due_days', 'payment_due_day_of_month')


def validate_student_policy(policy: policy_models.StudentBillingPolicy) -> None:
    if policy.payment_due_days is not None and policy.payment_due_day_of_month is not None:
        raise PolicyMisconfiguredError("Only one of payment_due_days and payment_due_day_of_month may be set.")
    if policy.cancellation_fee_enabled and (
        policy.cancellation_hours_threshold is None or policy.cancellation_fee_percent is None
    ):
        raise PolicyMisconfiguredError("An enabled cancellation fee needs both cancellation_hours_threshold and cancellation_fee_percent.")
    if policy.cancellation_limit_enabled and policy.cancellation_limit_count is None:
        raise PolicyMisconfiguredError("An enabled cancellation limit needs cancellation_limit_count.")


def merge_policy_changes(
    current: policy_models.StudentBillingPolicy,
    changes: policy_models.StudentBillingPolicyUpdate
) -> policy_models.StudentBillingPolicy:
    """
    Applies the fields present in `changes` on top of `current`.
    Setting one due-date rule clears the other.
    """
    updates = changes.model_dump(exclude_unset=True)
    if updates.get('payment_due_days') is not None and updates.get('payment_due_day_of_month') is not None:
        raise PolicyMisconfiguredError("Only one of payment_due_days and payment_due_day_of_month may be set.")

    merged = current.model_dump()
    merged.update(updates)
    if updates.get('payment_due_days') is not None:
        merged['payment_due_day_of_month'] = None
    if updates.get('payment_due_day_of_month') is not None:
        merged['payment_due_days'] = None
    for flag in ('cancellation_fee_enabled', 'cancellation_limit_enabled', 'cancellation_limit_period'):
        if merged[flag] is None:
            merged[flag] = getattr(current, flag)

    merged_policy = policy_models.StudentBillingPolicy(**merged)
    validate_student_policy(merged_policy)
    return merged_policy


class PolicyService:
    """
    Service for the billing policy attributes of students and teachers.
    """
    def __init__(
        self,
        db: Annotated[AsyncSession, Depends(get_db_session)],
        due_date_service: Annotated[DueDateService, Depends(DueDateService)]
    ):
        self.db = db
        self.due_date_service = due_date_service

    async def _get_student(self, student_id: UUID, organization_id: UUID) -> db_models.Students:
        stmt = select(db_models.Students).where(
            db_models.Students.id == student_id,
            db_models.Students.organization_id == organization_id
        )
        student = (await self.db.execute(stmt)).scalars().first()
        if not student:
            log.warning(f"Student {student_id} not found in organization {organization_id}.")
            raise NotFoundError("Student", student_id)
        return student

    async def _get_teacher(self, teacher_id: UUID, organization_id: UUID) -> db_models.Teachers:
        stmt = select(db_models.Teachers).where(
            db_models.Teachers.id == teacher_id,
            db_models.Teachers.organization_id == organization_id
        )
        teacher = (await self.db.execute(stmt)).scalars().first()
        if not teacher:
            log.warning(f"Teacher {teacher_id} not found in organization {organization_id}.")
            raise NotFoundError("Teacher", teacher_id)
        return teacher

    async def get_policy(self, student_id: UUID, organization_id: UUID) -> policy_models.StudentBillingPolicy:
        student = await self._get_student(student_id, organization_id)
        return policy_models.StudentBillingPolicy.model_validate(student)

    async def update_policy(
        self,
        student_id: UUID,
        organization_id: UUID,
        changes: policy_models.StudentBillingPolicyUpdate
    ) -> policy_models.PolicyUpdateResult:
        """
        Applies a partial policy update. When a due-date rule changes, every
        pending payment of the student is re-dated in the same unit of work.
        """
        log.info(f"Updating billing policy of student {student_id}: {changes.model_dump(exclude_unset=True)}")
        try:
            async with atomic(self.db):
                student = await self._get_student(student_id, organization_id)
                current = policy_models.StudentBillingPolicy.model_validate(student)
                new_policy = merge_policy_changes(current, changes)

                for field, value in new_policy.model_dump().items():
                    setattr(student, field, value.value if hasattr(value, 'value') else value)
                await self.db.flush()

                recalculated = 0
                if any(getattr(current, f) != getattr(new_policy, f) for f in DUE_DATE_FIELDS):
                    recalculated = await self.due_date_service.recalculate_pending_due_dates(student_id, new_policy)

            return policy_models.PolicyUpdateResult(
                student_id=student_id,
                policy=new_policy,
                recalculated_payments=recalculated
            )
        except BillingError as e:
            log.warning(f"Policy update for student {student_id} rejected: {e.message}")
            raise
        except Exception as e:
            log.error(f"Failed to update policy of student {student_id}: {e}", exc_info=True)
            raise

    async def get_teacher_payout_settings(self, teacher_id: UUID, organization_id: UUID) -> policy_models.TeacherPayoutSettings:
        teacher = await self._get_teacher(teacher_id, organization_id)
        return policy_models.TeacherPayoutSettings.model_validate(teacher)

    async def update_teacher_payout_settings(
        self,
        teacher_id: UUID,
        organization_id: UUID,
        changes: policy_models.TeacherPayoutSettingsUpdate
    ) -> policy_models.TeacherPayoutSettings:
        log.info(f"Updating payout settings of teacher {teacher_id}: {changes.model_dump(exclude_unset=True)}")
        async with atomic(self.db):
            teacher = await self._get_teacher(teacher_id, organization_id)
            merged = policy_models.TeacherPayoutSettings.model_validate(teacher).model_dump()
            merged.update(changes.model_dump(exclude_unset=True))
            for field in ('hourly_rate', 'cancellation_payout_enabled'):
                if merged[field] is None:
                    merged[field] = getattr(teacher, field)
            new_settings = policy_models.TeacherPayoutSettings(**merged)
            if new_settings.cancellation_payout_enabled and new_settings.cancellation_payout_percent is None:
                log.info(f"Teacher {teacher_id} enabled cancellation payouts without a percent, paying 100%.")

            for field, value in new_settings.model_dump().items():
                setattr(teacher, field, value)
            await self.db.flush()
        return new_settings
