'''
Periodic student settlements.

A settlement is an immutable snapshot of a student's ledger over a
half-open period [period_start, period_end). Creating or deleting one never
changes the ledger itself; only the budget's last_settlement_date moves.
'''
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional, Annotated
from uuid import UUID

from fastapi import Depends
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from ..common.config import settings
from ..common.exceptions import BillingError, NotFoundError, InvalidPeriodError, NotMostRecentError
from ..common.logger import log
from ..core.money import ZERO, money_sum, to_money
from ..database import models as db_models
from ..database.db_enums import LessonStatusEnum, PaymentStatusEnum
from ..database.engine import get_db_session, atomic
from ..database.utils import utc_now
from ..models import settlement as settlement_models
from .ledger_service import LedgerService

_TICK = timedelta(microseconds=1)


class SettlementService:
    """
    Service for previewing, creating and deleting student settlements.
    """
    def __init__(
        self,
        db: Annotated[AsyncSession, Depends(get_db_session)],
        ledger_service: Annotated[LedgerService, Depends(LedgerService)]
    ):
        self.db = db
        self.ledger_service = ledger_service

    # --- 1. Internal Helpers ---

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

    async def _get_settlement(self, settlement_id: UUID, organization_id: UUID) -> db_models.Settlements:
        stmt = select(db_models.Settlements).where(
            db_models.Settlements.id == settlement_id,
            db_models.Settlements.organization_id == organization_id
        )
        settlement = (await self.db.execute(stmt)).scalars().first()
        if not settlement:
            log.warning(f"Settlement {settlement_id} not found in organization {organization_id}.")
            raise NotFoundError("Settlement", settlement_id)
        return settlement

    async def _latest_settlement(self, student_id: UUID) -> Optional[db_models.Settlements]:
        stmt = select(db_models.Settlements).where(
            db_models.Settlements.student_id == student_id
        ).order_by(
            db_models.Settlements.created_at.desc(),
            db_models.Settlements.id.desc()
        ).limit(1)
        return (await self.db.execute(stmt)).scalars().first()

    @staticmethod
    def _check_period(period_start: datetime, period_end: datetime) -> None:
        if period_end <= period_start:
            raise InvalidPeriodError(
                f"Period end {period_end.isoformat()} must be after period start {period_start.isoformat()}."
            )

    # --- 2. Preview & Create ---

    async def preview_settlement(
        self,
        student_id: UUID,
        organization_id: UUID,
        period_start: datetime,
        period_end: datetime
    ) -> settlement_models.SettlementPreview:
        """
        Computes the settlement of [period_start, period_end) without writing
        anything. Same inputs over an unchanged ledger give the same preview.
        """
        self._check_period(period_start, period_end)
        student = await self._get_student(student_id, organization_id)
        log.info(f"Previewing settlement for student {student_id} from {period_start.isoformat()} to {period_end.isoformat()}.")

        opening_balance = await self.ledger_service.ledger_sum(student_id, before=period_start)

        stmt = select(db_models.BalanceTransactions).where(
            db_models.BalanceTransactions.student_id == student_id,
            db_models.BalanceTransactions.created_at >= period_start,
            db_models.BalanceTransactions.created_at < period_end
        ).order_by(
            db_models.BalanceTransactions.created_at,
            db_models.BalanceTransactions.id
        )
        transactions = (await self.db.execute(stmt)).scalars().all()

        line_items = [
            settlement_models.SettlementLineItemRead(
                position=position,
                transaction_id=tx.id,
                transaction_type=tx.type,
                description=tx.description,
                amount=tx.amount,
                occurred_at=tx.created_at
            )
            for position, tx in enumerate(transactions, start=1)
        ]
        total_charges = money_sum(-item.amount for item in line_items if item.amount < ZERO)
        total_credits = money_sum(item.amount for item in line_items if item.amount > ZERO)
        closing_balance = to_money(opening_balance + money_sum(item.amount for item in line_items))

        currency = await self.ledger_service.currency_for(student_id, organization_id)
        return settlement_models.SettlementPreview(
            student_id=student_id,
            student_name=student.full_name,
            period_start=period_start,
            period_end=period_end,
            opening_balance=opening_balance,
            line_items=line_items,
            total_charges=total_charges,
            total_credits=total_credits,
            closing_balance=closing_balance,
            currency=currency
        )

    async def create_settlement(
        self,
        student_id: UUID,
        organization_id: UUID,
        period_start: datetime,
        period_end: datetime,
        notes: Optional[str] = None
    ) -> db_models.Settlements:
        """
        Persists the preview of the period, under the student's lock so no
        ledger append can slip in between computing and saving it.
        """
        self._check_period(period_start, period_end)
        log.info(f"Creating settlement for student {student_id}.")
        try:
            async with atomic(self.db):
                budget = await self.ledger_service.lock_budget(student_id, organization_id)
                preview = await self.preview_settlement(student_id, organization_id, period_start, period_end)

                # Strictly increasing per student, so "most recent" is always unique
                created_at = utc_now()
                latest = await self._latest_settlement(student_id)
                if latest is not None and created_at <= latest.created_at:
                    created_at = latest.created_at + _TICK

                settlement = db_models.Settlements(
                    organization_id=organization_id,
                    student_id=student_id,
                    period_start=period_start,
                    period_end=period_end,
                    opening_balance=preview.opening_balance,
                    closing_balance=preview.closing_balance,
                    total_charges=preview.total_charges,
                    total_credits=preview.total_credits,
                    currency=preview.currency,
                    notes=notes,
                    created_at=created_at,
                    line_items=[
                        db_models.SettlementLineItems(
                            position=item.position,
                            transaction_id=item.transaction_id,
                            transaction_type=item.transaction_type.value,
                            description=item.description,
                            amount=item.amount,
                            occurred_at=item.occurred_at
                        )
                        for item in preview.line_items
                    ]
                )
                self.db.add(settlement)
                budget.last_settlement_date = period_end
                await self.db.flush()

            log.info(f"Created settlement {settlement.id} for student {student_id} with {len(preview.line_items)} line items, closing {preview.closing_balance}.")
            return settlement
        except BillingError as e:
            log.warning(f"Settlement for student {student_id} rejected: {e.message}")
            raise
        except Exception as e:
            log.error(f"Failed to create settlement for student {student_id}: {e}", exc_info=True)
            raise

    # --- 3. Delete ---

    async def delete_settlement(self, settlement_id: UUID, organization_id: UUID) -> None:
        """
        Deletes the student's most recent settlement and moves
        last_settlement_date back to the end of the one before it.
        """
        log.info(f"Deleting settlement {settlement_id}.")
        try:
            async with atomic(self.db):
                settlement = await self._get_settlement(settlement_id, organization_id)
                budget = await self.ledger_service.lock_budget(settlement.student_id, organization_id)

                newer_stmt = select(func.count(db_models.Settlements.id)).where(
                    db_models.Settlements.student_id == settlement.student_id,
                    db_models.Settlements.id != settlement.id,
                    db_models.Settlements.created_at >= settlement.created_at
                )
                if (await self.db.execute(newer_stmt)).scalar_one() > 0:
                    raise NotMostRecentError(
                        f"Settlement {settlement_id} is not the most recent settlement of student {settlement.student_id}."
                    )

                await self.db.delete(settlement)
                await self.db.flush()

                previous = await self._latest_settlement(settlement.student_id)
                budget.last_settlement_date = previous.period_end if previous else None
                await self.db.flush()
            log.info(f"Deleted settlement {settlement_id}; last settlement date is now {budget.last_settlement_date}.")
        except BillingError as e:
            log.warning(f"Deleting settlement {settlement_id} rejected: {e.message}")
            raise
        except Exception as e:
            log.error(f"Failed to delete settlement {settlement_id}: {e}", exc_info=True)
            raise

    # --- 4. Reads ---

    async def get_settlement(self, settlement_id: UUID, organization_id: UUID) -> db_models.Settlements:
        return await self._get_settlement(settlement_id, organization_id)

    async def list_student_settlements(self, student_id: UUID, organization_id: UUID) -> list[db_models.Settlements]:
        await self._get_student(student_id, organization_id)
        stmt = select(db_models.Settlements).where(
            db_models.Settlements.student_id == student_id
        ).order_by(db_models.Settlements.created_at.desc())
        return list((await self.db.execute(stmt)).scalars().all())

    async def get_last_settlement_date(self, student_id: UUID, organization_id: UUID) -> Optional[datetime]:
        """
        End of the last settlement; for a never-settled student the creation
        time of their first payment, so the next period has a sensible start.
        """
        await self._get_student(student_id, organization_id)
        budget = await self.db.scalar(
            select(db_models.StudentBudgets).where(db_models.StudentBudgets.student_id == student_id)
        )
        if budget is not None and budget.last_settlement_date is not None:
            return budget.last_settlement_date

        first_payment = await self.db.scalar(
            select(func.min(db_models.Payments.created_at)).where(db_models.Payments.student_id == student_id)
        )
        return first_payment

    async def get_current_balance(self, student_id: UUID, organization_id: UUID) -> Decimal:
        return await self.ledger_service.get_balance(student_id, organization_id)

    async def get_students_with_balance(self, organization_id: UUID) -> list[settlement_models.StudentSettlementOverview]:
        """Active students with their balance and outstanding pending payments."""
        log.info(f"Building settlement overview for organization {organization_id}.")
        students = (await self.db.execute(
            select(db_models.Students).where(
                db_models.Students.organization_id == organization_id,
                db_models.Students.is_active.is_(True)
            ).order_by(db_models.Students.last_name, db_models.Students.first_name)
        )).scalars().all()

        budgets = {
            b.student_id: b for b in (await self.db.execute(
                select(db_models.StudentBudgets).where(db_models.StudentBudgets.organization_id == organization_id)
            )).scalars().all()
        }

        pending_rows = (await self.db.execute(
            select(
                db_models.Payments.student_id,
                func.count(db_models.Payments.id),
                func.coalesce(func.sum(db_models.Payments.amount), 0)
            ).where(
                db_models.Payments.organization_id == organization_id,
                db_models.Payments.status == PaymentStatusEnum.PENDING.value
            ).group_by(db_models.Payments.student_id)
        )).all()
        pending = {row[0]: (row[1], to_money(row[2])) for row in pending_rows}

        overview = []
        for student in students:
            budget = budgets.get(student.id)
            count, total = pending.get(student.id, (0, ZERO))
            overview.append(settlement_models.StudentSettlementOverview(
                id=student.id,
                first_name=student.first_name,
                last_name=student.last_name,
                email=student.email,
                current_balance=budget.current_balance if budget else ZERO,
                last_settlement_date=budget.last_settlement_date if budget else None,
                pending_payments_count=count,
                pending_payments_sum=total
            ))
        return overview

    async def get_balance_forecast(
        self,
        student_id: UUID,
        organization_id: UUID,
        now: Optional[datetime] = None
    ) -> settlement_models.BalanceForecast:
        """
        Runs the current balance forward across upcoming lessons to find
        when it first goes negative.
        """
        now = now or utc_now()
        await self._get_student(student_id, organization_id)
        budget = await self.db.scalar(
            select(db_models.StudentBudgets).where(db_models.StudentBudgets.student_id == student_id)
        )
        current_balance = budget.current_balance if budget else ZERO
        currency = budget.currency if budget else settings.DEFAULT_CURRENCY

        lessons = (await self.db.execute(
            select(db_models.Lessons).where(
                db_models.Lessons.student_id == student_id,
                db_models.Lessons.organization_id == organization_id,
                db_models.Lessons.scheduled_at >= now,
                db_models.Lessons.status.in_([LessonStatusEnum.SCHEDULED.value, LessonStatusEnum.CONFIRMED.value])
            ).order_by(db_models.Lessons.scheduled_at)
        )).scalars().all()

        running = current_balance
        lessons_until_depletion = None
        depletion_date = None
        forecast_lessons = []
        for index, lesson in enumerate(lessons):
            running = to_money(running - lesson.price)
            if depletion_date is None and running < ZERO:
                lessons_until_depletion = index
                depletion_date = lesson.scheduled_at
            forecast_lessons.append(settlement_models.BalanceForecastLesson(
                id=lesson.id,
                title=lesson.title,
                scheduled_at=lesson.scheduled_at,
                price=lesson.price,
                currency=lesson.currency,
                balance_after=running
            ))

        return settlement_models.BalanceForecast(
            current_balance=current_balance,
            currency=currency,
            upcoming_lessons_count=len(lessons),
            lessons_until_depletion=lessons_until_depletion,
            depletion_date=depletion_date,
            forecasted_balance=running,
            upcoming_lessons=forecast_lessons
        )
