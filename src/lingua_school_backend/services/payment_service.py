'''
Student payments: creation with policy-driven due dates, settlement of a
payment against the ledger, and the debtor list.
'''
from collections import defaultdict
from datetime import datetime
from decimal import Decimal
from typing import Optional, Annotated
from uuid import UUID

from fastapi import Depends
from sqlalchemy import select, or_
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from ..common.config import settings
from ..common.exceptions import BillingError, NotFoundError, InvalidAmountError, InvalidStatusTransitionError
from ..common.logger import log
from ..core.money import ZERO, money_sum, to_money
from ..database import models as db_models
from ..database.db_enums import LessonStatusEnum, PaymentStatusEnum
from ..database.engine import get_db_session, atomic
from ..database.utils import utc_now
from ..models import payment as payment_models
from .due_date_service import DueDateService
from .ledger_service import LedgerService


class PaymentService:
    """
    Service for the payment lifecycle PENDING -> COMPLETED / CANCELLED
    and the lesson completion that starts it.
    """
    def __init__(
        self,
        db: Annotated[AsyncSession, Depends(get_db_session)],
        ledger_service: Annotated[LedgerService, Depends(LedgerService)],
        due_date_service: Annotated[DueDateService, Depends(DueDateService)]
    ):
        self.db = db
        self.ledger_service = ledger_service
        self.due_date_service = due_date_service

    # --- 1. Internal Helpers ---

    async def _get_payment(self, payment_id: UUID, organization_id: UUID) -> db_models.Payments:
        stmt = select(db_models.Payments).options(
            selectinload(db_models.Payments.lesson)
        ).where(
            db_models.Payments.id == payment_id,
            db_models.Payments.organization_id == organization_id
        )
        payment = (await self.db.execute(stmt)).scalars().first()
        if not payment:
            log.warning(f"Payment {payment_id} not found in organization {organization_id}.")
            raise NotFoundError("Payment", payment_id)
        return payment

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

    async def _open_lesson_payments(self, lesson_id: UUID, statuses: tuple[str, ...]) -> list[db_models.Payments]:
        stmt = select(db_models.Payments).where(
            db_models.Payments.lesson_id == lesson_id,
            db_models.Payments.status.in_(statuses)
        ).order_by(db_models.Payments.created_at)
        return list((await self.db.execute(stmt)).scalars().all())

    # --- 2. Creation ---

    async def create_lesson_payment(self, lesson: db_models.Lessons) -> Optional[db_models.Payments]:
        """
        Creates the PENDING payment for a completed lesson and charges the
        lesson on the ledger. Calling it again for the same lesson returns
        the existing payment instead of creating another one.
        """
        existing = await self._open_lesson_payments(
            lesson.id, (PaymentStatusEnum.PENDING.value, PaymentStatusEnum.COMPLETED.value)
        )
        if existing:
            log.info(f"Lesson {lesson.id} already has payment {existing[0].id}.")
            await self.ledger_service.charge_for_lesson(lesson.student_id, lesson.id, lesson.price, lesson.title)
            return existing[0]

        if to_money(lesson.price) <= ZERO:
            log.info(f"Lesson {lesson.id} is free, no payment created.")
            return None

        student = await self.db.get(db_models.Students, lesson.student_id)
        reference = lesson.completed_at or utc_now()
        payment = db_models.Payments(
            organization_id=lesson.organization_id,
            student_id=lesson.student_id,
            lesson_id=lesson.id,
            amount=to_money(lesson.price),
            currency=lesson.currency,
            status=PaymentStatusEnum.PENDING.value,
            due_at=await self.due_date_service.due_date_for(student, reference),
            notes=f"Lesson: {lesson.title}",
            created_at=utc_now()
        )
        self.db.add(payment)
        await self.db.flush()

        await self.ledger_service.charge_for_lesson(lesson.student_id, lesson.id, lesson.price, lesson.title)
        log.info(f"Created payment {payment.id} of {payment.amount} for lesson {lesson.id}, due {payment.due_at}.")
        return payment

    async def create_manual_payment(
        self,
        student_id: UUID,
        organization_id: UUID,
        amount: Decimal,
        notes: Optional[str] = None
    ) -> db_models.Payments:
        """A PENDING payment not tied to a lesson; its due date counts from creation."""
        amount = to_money(amount)
        if amount <= ZERO:
            raise InvalidAmountError(f"Payment amount must be positive, got {amount}.")
        log.info(f"Creating manual payment of {amount} for student {student_id}.")

        async with atomic(self.db):
            stmt = select(db_models.Students).where(
                db_models.Students.id == student_id,
                db_models.Students.organization_id == organization_id
            )
            student = (await self.db.execute(stmt)).scalars().first()
            if not student:
                raise NotFoundError("Student", student_id)

            organization = await self.db.get(db_models.Organizations, organization_id)
            created_at = utc_now()
            payment = db_models.Payments(
                organization_id=organization_id,
                student_id=student_id,
                amount=amount,
                currency=organization.currency if organization else settings.DEFAULT_CURRENCY,
                status=PaymentStatusEnum.PENDING.value,
                due_at=await self.due_date_service.due_date_for(student, created_at),
                notes=notes,
                created_at=created_at
            )
            self.db.add(payment)
            await self.db.flush()
        return payment

    # --- 3. Status changes ---

    async def complete_payment(
        self,
        payment_id: UUID,
        organization_id: UUID,
        paid_at: Optional[datetime] = None
    ) -> db_models.Payments:
        """Marks a PENDING payment as paid and credits it on the ledger."""
        log.info(f"Completing payment {payment_id}.")
        try:
            async with atomic(self.db):
                payment = await self._get_payment(payment_id, organization_id)
                if payment.status != PaymentStatusEnum.PENDING.value:
                    raise InvalidStatusTransitionError(f"Payment {payment_id} is {payment.status}, only PENDING payments can be completed.")

                payment.status = PaymentStatusEnum.COMPLETED.value
                payment.paid_at = paid_at or utc_now()
                await self.db.flush()

                description = f"Payment: {payment.lesson.title}" if payment.lesson else (payment.notes or "Payment received")
                await self.ledger_service.record_payment(payment.student_id, payment.id, payment.amount, description)
            return payment
        except BillingError as e:
            log.warning(f"Completing payment {payment_id} rejected: {e.message}")
            raise
        except Exception as e:
            log.error(f"Failed to complete payment {payment_id}: {e}", exc_info=True)
            raise

    async def cancel_payment(self, payment_id: UUID, organization_id: UUID) -> db_models.Payments:
        """Cancels a payment; a completed one has its deposit reverted on the ledger."""
        log.info(f"Cancelling payment {payment_id}.")
        try:
            async with atomic(self.db):
                payment = await self._get_payment(payment_id, organization_id)
                if payment.status == PaymentStatusEnum.CANCELLED.value:
                    raise InvalidStatusTransitionError(f"Payment {payment_id} is already cancelled.")

                if payment.status == PaymentStatusEnum.COMPLETED.value:
                    await self.ledger_service.revert_payment(payment.student_id, payment.id)
                payment.status = PaymentStatusEnum.CANCELLED.value
                await self.db.flush()
            return payment
        except BillingError as e:
            log.warning(f"Cancelling payment {payment_id} rejected: {e.message}")
            raise
        except Exception as e:
            log.error(f"Failed to cancel payment {payment_id}: {e}", exc_info=True)
            raise

    # --- 4. Lesson lifecycle ---

    async def complete_lesson(
        self,
        lesson_id: UUID,
        organization_id: UUID,
        completed_at: Optional[datetime] = None
    ) -> payment_models.LessonCompletionResult:
        log.info(f"Completing lesson {lesson_id}.")
        async with atomic(self.db):
            lesson = await self._get_lesson(lesson_id, organization_id)
            if lesson.status == LessonStatusEnum.CANCELLED.value:
                raise InvalidStatusTransitionError(f"Lesson {lesson_id} is cancelled and cannot be completed.")

            if lesson.status != LessonStatusEnum.COMPLETED.value:
                lesson.status = LessonStatusEnum.COMPLETED.value
                lesson.completed_at = completed_at or utc_now()
                await self.db.flush()

            payment = await self.create_lesson_payment(lesson)

        return payment_models.LessonCompletionResult(
            lesson_id=lesson.id,
            status=lesson.status,
            completed_at=lesson.completed_at,
            payment=payment_models.PaymentRead.model_validate(payment) if payment else None
        )

    async def uncomplete_lesson(self, lesson_id: UUID, organization_id: UUID) -> payment_models.LessonCompletionResult:
        """
        Reverts a COMPLETED lesson to SCHEDULED: its pending payment is
        cancelled and the lesson charge refunded.
        """
        log.info(f"Reverting completion of lesson {lesson_id}.")
        async with atomic(self.db):
            lesson = await self._get_lesson(lesson_id, organization_id)
            if lesson.status != LessonStatusEnum.COMPLETED.value:
                raise InvalidStatusTransitionError(f"Lesson {lesson_id} is {lesson.status}, not COMPLETED.")

            lesson.status = LessonStatusEnum.SCHEDULED.value
            lesson.completed_at = None
            for payment in await self._open_lesson_payments(lesson.id, (PaymentStatusEnum.PENDING.value,)):
                payment.status = PaymentStatusEnum.CANCELLED.value
            await self.db.flush()

            refund = await self.ledger_service.refund_lesson(lesson.student_id, lesson.id, lesson.title)

        return payment_models.LessonCompletionResult(
            lesson_id=lesson.id,
            status=lesson.status,
            completed_at=None,
            ledger_transaction_id=refund.id if refund else None
        )

    # --- 5. Reads ---

    async def list_student_payments(
        self,
        student_id: UUID,
        organization_id: UUID,
        status: Optional[PaymentStatusEnum] = None
    ) -> list[payment_models.PaymentRead]:
        stmt = select(db_models.Payments).where(
            db_models.Payments.student_id == student_id,
            db_models.Payments.organization_id == organization_id
        ).order_by(db_models.Payments.created_at.desc())
        if status is not None:
            stmt = stmt.where(db_models.Payments.status == PaymentStatusEnum(status).value)
        payments = (await self.db.execute(stmt)).scalars().all()
        return [payment_models.PaymentRead.model_validate(p) for p in payments]

    async def get_debtors(self, organization_id: UUID, as_of: Optional[datetime] = None) -> list[payment_models.DebtorRead]:
        """
        Students owing money: PENDING payments that are due (no due date, or
        due on or before `as_of`), grouped per student, largest debt first.
        """
        as_of = as_of or utc_now()
        log.info(f"Building debtor list for organization {organization_id} as of {as_of.isoformat()}.")
        try:
            stmt = select(db_models.Payments).options(
                selectinload(db_models.Payments.student)
            ).where(
                db_models.Payments.organization_id == organization_id,
                db_models.Payments.status == PaymentStatusEnum.PENDING.value,
                or_(db_models.Payments.due_at.is_(None), db_models.Payments.due_at <= as_of)
            ).order_by(db_models.Payments.created_at)
            payments = (await self.db.execute(stmt)).scalars().all()

            grouped: dict[UUID, list[db_models.Payments]] = defaultdict(list)
            for payment in payments:
                grouped[payment.student_id].append(payment)

            debtors = []
            for student_payments in grouped.values():
                student = student_payments[0].student
                oldest = min(p.created_at for p in student_payments)
                debtors.append(payment_models.DebtorRead(
                    student_id=student.id,
                    student_name=student.full_name,
                    email=student.email,
                    total_debt=money_sum(p.amount for p in student_payments),
                    payments_count=len(student_payments),
                    oldest_payment_date=oldest,
                    days_since_oldest=max((as_of - oldest).days, 0),
                    payments=[
                        payment_models.DebtorPaymentRead(
                            id=p.id, amount=p.amount, created_at=p.created_at, due_at=p.due_at, notes=p.notes
                        ) for p in student_payments
                    ]
                ))

            debtors.sort(key=lambda d: d.total_debt, reverse=True)
            return debtors
        except Exception as e:
            log.error(f"Failed to build debtor list for organization {organization_id}: {e}", exc_info=True)
            raise
