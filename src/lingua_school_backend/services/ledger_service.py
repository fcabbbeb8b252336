'''
The student balance ledger.

Every change to a student's balance is an append-only BalanceTransactions
row; StudentBudgets caches the running total and is the row locked while a
change is written, so appends for one student are strictly serialized.
'''
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional, Annotated
from uuid import UUID

from fastapi import Depends
from sqlalchemy import select, func
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..common.config import settings
from ..common.exceptions import BillingError, NotFoundError, InvalidAmountError
from ..common.logger import log
from ..core.money import ZERO, to_money
from ..database import models as db_models
from ..database.db_enums import BalanceTransactionTypeEnum
from ..database.engine import get_db_session, atomic, raise_for_contention
from ..database.utils import utc_now
from ..models import ledger as ledger_models

TxType = BalanceTransactionTypeEnum

# Sign each transaction type must carry; None means either sign.
_REQUIRED_SIGN = {
    TxType.CHARGE: -1,
    TxType.CANCELLATION_FEE: -1,
    TxType.PAYMENT: 1,
    TxType.ADJUSTMENT: None,
    TxType.REFUND: None,
}

_TICK = timedelta(microseconds=1)


class LedgerService:
    """
    Service for appending to and reading from the balance ledger.
    """
    def __init__(self, db: Annotated[AsyncSession, Depends(get_db_session)]):
        self.db = db

    # --- 1. Internal Helpers ---

    async def _get_student(self, student_id: UUID, organization_id: Optional[UUID] = None) -> db_models.Students:
        stmt = select(db_models.Students).where(db_models.Students.id == student_id)
        if organization_id is not None:
            stmt = stmt.where(db_models.Students.organization_id == organization_id)
        student = (await self.db.execute(stmt)).scalars().first()
        if not student:
            log.warning(f"Student {student_id} not found in organization {organization_id}.")
            raise NotFoundError("Student", student_id)
        return student

    async def _find_budget(self, student_id: UUID, for_update: bool = False) -> Optional[db_models.StudentBudgets]:
        stmt = select(db_models.StudentBudgets).where(db_models.StudentBudgets.student_id == student_id)
        if for_update:
            stmt = stmt.with_for_update()
        try:
            return (await self.db.execute(stmt)).scalars().first()
        except DBAPIError as e:
            raise_for_contention(e, student_id)
            raise

    async def lock_budget(self, student_id: UUID, organization_id: Optional[UUID] = None) -> db_models.StudentBudgets:
        """
        Enters the per-student critical section by locking the budget row.
        Must be called inside an atomic block; the lock lasts until it ends.
        """
        budget = await self._find_budget(student_id, for_update=True)
        if budget is None:
            await self.get_or_create_budget(student_id, organization_id)
            budget = await self._find_budget(student_id, for_update=True)
        elif organization_id is not None and budget.organization_id != organization_id:
            raise NotFoundError("Student", student_id)
        return budget

    @staticmethod
    def _validate_amount(tx_type: TxType, amount: Decimal) -> Decimal:
        amount = to_money(amount)
        if amount == ZERO:
            raise InvalidAmountError(f"{tx_type.value} amount must not be zero.")
        sign = _REQUIRED_SIGN[tx_type]
        if sign is not None and (amount > ZERO) != (sign > 0):
            expected = "positive" if sign > 0 else "negative"
            raise InvalidAmountError(f"{tx_type.value} amount must be {expected}, got {amount}.")
        return amount

    async def _insert_locked(
        self,
        budget: db_models.StudentBudgets,
        tx_type: TxType,
        amount: Decimal,
        description: str,
        created_by_user_id: Optional[UUID] = None,
        lesson_id: Optional[UUID] = None,
        payment_id: Optional[UUID] = None
    ) -> db_models.BalanceTransactions:
        """Writes one transaction against a budget the caller already holds locked."""
        previous_balance = budget.current_balance
        new_balance = to_money(previous_balance + amount)

        # Strictly increasing per student, so createdAt alone orders the log
        created_at = max(utc_now(), budget.last_updated_at + _TICK)

        transaction = db_models.BalanceTransactions(
            budget_id=budget.id,
            student_id=budget.student_id,
            organization_id=budget.organization_id,
            type=tx_type.value,
            amount=amount,
            balance_before=previous_balance,
            balance_after=new_balance,
            currency=budget.currency,
            description=description,
            lesson_id=lesson_id,
            payment_id=payment_id,
            created_by_user_id=created_by_user_id,
            created_at=created_at
        )
        self.db.add(transaction)
        budget.current_balance = new_balance
        budget.last_updated_at = created_at
        await self.db.flush()

        log.info(f"Ledger {tx_type.value} {amount} for student {budget.student_id}: {previous_balance} -> {new_balance}.")
        return transaction

    async def _count_entries(self, student_id: UUID, tx_type: TxType, **filters) -> int:
        stmt = select(func.count(db_models.BalanceTransactions.id)).where(
            db_models.BalanceTransactions.student_id == student_id,
            db_models.BalanceTransactions.type == tx_type.value
        )
        for column, value in filters.items():
            stmt = stmt.where(getattr(db_models.BalanceTransactions, column) == value)
        return (await self.db.execute(stmt)).scalar_one()

    async def ledger_sum(self, student_id: UUID, before: Optional[datetime] = None) -> Decimal:
        """Signed sum of the student's transactions, optionally only those created before `before`."""
        stmt = select(func.coalesce(func.sum(db_models.BalanceTransactions.amount), 0)).where(
            db_models.BalanceTransactions.student_id == student_id
        )
        if before is not None:
            stmt = stmt.where(db_models.BalanceTransactions.created_at < before)
        return to_money((await self.db.execute(stmt)).scalar_one())

    # --- 2. Budget ---

    async def get_or_create_budget(self, student_id: UUID, organization_id: Optional[UUID] = None) -> db_models.StudentBudgets:
        """Returns the student's budget row, creating a zero-balance one on first use."""
        budget = await self._find_budget(student_id)
        if budget is not None:
            if organization_id is not None and budget.organization_id != organization_id:
                raise NotFoundError("Student", student_id)
            return budget

        student = await self._get_student(student_id, organization_id)
        currency = await self._organization_currency(student.organization_id)

        try:
            async with self.db.begin_nested():
                budget = db_models.StudentBudgets(
                    student_id=student.id,
                    organization_id=student.organization_id,
                    current_balance=ZERO,
                    currency=currency
                )
                self.db.add(budget)
            log.info(f"Created budget for student {student_id}.")
            return budget
        except IntegrityError:
            # A concurrent request created it first
            log.info(f"Budget for student {student_id} was created concurrently, reusing it.")
            return await self._find_budget(student_id)

    async def _organization_currency(self, organization_id: UUID) -> str:
        organization = await self.db.get(db_models.Organizations, organization_id)
        return organization.currency if organization else settings.DEFAULT_CURRENCY

    async def currency_for(self, student_id: UUID, organization_id: Optional[UUID] = None) -> str:
        """Currency of the student's ledger. Read-only: no budget is created."""
        budget = await self._find_budget(student_id)
        if budget is None:
            student = await self._get_student(student_id, organization_id)
            return await self._organization_currency(student.organization_id)
        if organization_id is not None and budget.organization_id != organization_id:
            raise NotFoundError("Student", student_id)
        return budget.currency

    # --- 3. Appends ---

    async def append_transaction(
        self,
        student_id: UUID,
        tx_type: TxType,
        amount: Decimal,
        description: str,
        created_by_user_id: Optional[UUID] = None,
        lesson_id: Optional[UUID] = None,
        payment_id: Optional[UUID] = None,
        organization_id: Optional[UUID] = None
    ) -> db_models.BalanceTransactions:
        """
        Appends one signed entry to the student's ledger and moves the cached
        balance by exactly `amount`, under the student's lock.
        """
        tx_type = TxType(tx_type)
        amount = self._validate_amount(tx_type, amount)
        try:
            async with atomic(self.db):
                budget = await self.lock_budget(student_id, organization_id)
                return await self._insert_locked(
                    budget, tx_type, amount, description,
                    created_by_user_id=created_by_user_id, lesson_id=lesson_id, payment_id=payment_id
                )
        except BillingError:
            raise
        except Exception as e:
            log.error(f"Failed to append {tx_type.value} for student {student_id}: {e}", exc_info=True)
            raise

    async def adjust_balance(
        self,
        student_id: UUID,
        amount: Decimal,
        description: str,
        performed_by_user_id: UUID,
        organization_id: Optional[UUID] = None
    ) -> ledger_models.BalanceUpdateResult:
        """Manual correction by a staff member. Any sign, never zero."""
        if performed_by_user_id is None:
            raise ValueError("A balance adjustment must record the acting user.")
        log.info(f"User {performed_by_user_id} adjusting balance of student {student_id} by {amount}.")
        transaction = await self.append_transaction(
            student_id, TxType.ADJUSTMENT, amount, description,
            created_by_user_id=performed_by_user_id, organization_id=organization_id
        )
        return ledger_models.BalanceUpdateResult(
            budget_id=transaction.budget_id,
            previous_balance=transaction.balance_before,
            new_balance=transaction.balance_after,
            transaction_id=transaction.id
        )

    async def charge_for_lesson(
        self,
        student_id: UUID,
        lesson_id: UUID,
        amount: Decimal,
        title: str,
        organization_id: Optional[UUID] = None
    ) -> Optional[db_models.BalanceTransactions]:
        """
        Charges a lesson's price. A lesson holds at most one open charge:
        returns None when it is already charged (and not refunded since).
        """
        amount = to_money(amount)
        if amount <= ZERO:
            log.info(f"Lesson {lesson_id} has no price, nothing to charge.")
            return None
        async with atomic(self.db):
            budget = await self.lock_budget(student_id, organization_id)
            charges = await self._count_entries(student_id, TxType.CHARGE, lesson_id=lesson_id)
            refunds = await self._count_entries(student_id, TxType.REFUND, lesson_id=lesson_id, payment_id=None)
            if charges > refunds:
                log.info(f"Lesson {lesson_id} is already charged for student {student_id}, skipping.")
                return None
            return await self._insert_locked(budget, TxType.CHARGE, -amount, f"Lesson: {title}", lesson_id=lesson_id)

    async def refund_lesson(
        self,
        student_id: UUID,
        lesson_id: UUID,
        title: str,
        organization_id: Optional[UUID] = None
    ) -> Optional[db_models.BalanceTransactions]:
        """Offsets the open charge of a lesson. Returns None when there is nothing to refund."""
        async with atomic(self.db):
            budget = await self.lock_budget(student_id, organization_id)
            charges = await self._count_entries(student_id, TxType.CHARGE, lesson_id=lesson_id)
            refunds = await self._count_entries(student_id, TxType.REFUND, lesson_id=lesson_id, payment_id=None)
            if charges <= refunds:
                log.info(f"Lesson {lesson_id} has no open charge for student {student_id}, nothing to refund.")
                return None
            stmt = select(db_models.BalanceTransactions).where(
                db_models.BalanceTransactions.student_id == student_id,
                db_models.BalanceTransactions.lesson_id == lesson_id,
                db_models.BalanceTransactions.type == TxType.CHARGE.value
            ).order_by(db_models.BalanceTransactions.created_at.desc()).limit(1)
            charge = (await self.db.execute(stmt)).scalars().first()
            return await self._insert_locked(
                budget, TxType.REFUND, -charge.amount, f"Refund: {title}", lesson_id=lesson_id
            )

    async def record_payment(
        self,
        student_id: UUID,
        payment_id: UUID,
        amount: Decimal,
        description: Optional[str] = None,
        organization_id: Optional[UUID] = None
    ) -> Optional[db_models.BalanceTransactions]:
        """Credits a received payment. Returns None if this payment is already on the ledger."""
        amount = self._validate_amount(TxType.PAYMENT, amount)
        async with atomic(self.db):
            budget = await self.lock_budget(student_id, organization_id)
            deposits = await self._count_entries(student_id, TxType.PAYMENT, payment_id=payment_id)
            reversals = await self._count_entries(student_id, TxType.REFUND, payment_id=payment_id)
            if deposits > reversals:
                log.info(f"Payment {payment_id} is already recorded for student {student_id}, skipping.")
                return None
            return await self._insert_locked(
                budget, TxType.PAYMENT, amount, description or "Payment received", payment_id=payment_id
            )

    async def revert_payment(
        self,
        student_id: UUID,
        payment_id: UUID,
        organization_id: Optional[UUID] = None
    ) -> Optional[db_models.BalanceTransactions]:
        """Negates a recorded payment with a REFUND entry. Returns None when nothing is recorded."""
        async with atomic(self.db):
            budget = await self.lock_budget(student_id, organization_id)
            deposits = await self._count_entries(student_id, TxType.PAYMENT, payment_id=payment_id)
            reversals = await self._count_entries(student_id, TxType.REFUND, payment_id=payment_id)
            if deposits <= reversals:
                log.info(f"Payment {payment_id} has no recorded deposit for student {student_id}, nothing to revert.")
                return None
            stmt = select(db_models.BalanceTransactions).where(
                db_models.BalanceTransactions.student_id == student_id,
                db_models.BalanceTransactions.payment_id == payment_id,
                db_models.BalanceTransactions.type == TxType.PAYMENT.value
            ).order_by(db_models.BalanceTransactions.created_at.desc()).limit(1)
            deposit = (await self.db.execute(stmt)).scalars().first()
            return await self._insert_locked(
                budget, TxType.REFUND, -deposit.amount, "Payment reverted", payment_id=payment_id
            )

    # --- 4. Reads ---

    async def get_balance(self, student_id: UUID, organization_id: Optional[UUID] = None) -> Decimal:
        """The cached balance; zero for a student who has no ledger yet."""
        budget = await self._find_budget(student_id)
        if budget is None:
            await self._get_student(student_id, organization_id)
            return ZERO
        if organization_id is not None and budget.organization_id != organization_id:
            raise NotFoundError("Student", student_id)
        return budget.current_balance

    async def get_student_balance(self, student_id: UUID, organization_id: UUID, recent: int = 10) -> ledger_models.StudentBalanceRead:
        history = await self.get_history(student_id, limit=recent, organization_id=organization_id)
        budget = await self._find_budget(student_id)
        return ledger_models.StudentBalanceRead(
            student_id=student_id,
            balance=history.current_balance,
            currency=history.currency,
            last_updated_at=budget.last_updated_at if budget else None,
            recent_transactions=history.transactions
        )

    async def get_history(
        self,
        student_id: UUID,
        limit: Optional[int] = None,
        offset: int = 0,
        tx_type: Optional[TxType] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        organization_id: Optional[UUID] = None
    ) -> ledger_models.TransactionHistory:
        """
        Newest-first page of the student's transactions.
        `limit=None` returns every matching row.
        """
        log.info(f"Fetching ledger history for student {student_id} (limit={limit}, offset={offset}).")
        budget = await self._find_budget(student_id)
        if budget is None:
            student = await self._get_student(student_id, organization_id)
            return ledger_models.TransactionHistory(
                transactions=[], total=0, limit=limit, offset=offset, has_more=False,
                current_balance=ZERO, currency=await self._organization_currency(student.organization_id)
            )
        if organization_id is not None and budget.organization_id != organization_id:
            raise NotFoundError("Student", student_id)

        conditions = [db_models.BalanceTransactions.student_id == student_id]
        if tx_type is not None:
            conditions.append(db_models.BalanceTransactions.type == TxType(tx_type).value)
        if date_from is not None:
            conditions.append(db_models.BalanceTransactions.created_at >= date_from)
        if date_to is not None:
            conditions.append(db_models.BalanceTransactions.created_at <= date_to)

        total = (await self.db.execute(
            select(func.count(db_models.BalanceTransactions.id)).where(*conditions)
        )).scalar_one()

        stmt = select(db_models.BalanceTransactions).where(*conditions).order_by(
            db_models.BalanceTransactions.created_at.desc(),
            db_models.BalanceTransactions.id.desc()
        ).offset(offset)
        if limit is not None:
            stmt = stmt.limit(limit)
        rows = (await self.db.execute(stmt)).scalars().all()

        return ledger_models.TransactionHistory(
            transactions=[ledger_models.BalanceTransactionRead.model_validate(row) for row in rows],
            total=total,
            limit=limit,
            offset=offset,
            has_more=limit is not None and offset + len(rows) < total,
            current_balance=budget.current_balance,
            currency=budget.currency
        )

    # --- 5. Integrity ---

    async def reconcile_balance(self, student_id: UUID, organization_id: Optional[UUID] = None) -> ledger_models.BalanceReconciliation:
        """
        Re-derives the balance from the transaction log and rewrites the
        cached value when the two disagree.
        """
        async with atomic(self.db):
            budget = await self.lock_budget(student_id, organization_id)
            ledger_balance = await self.ledger_sum(student_id)
            cached_balance = budget.current_balance
            drift = to_money(cached_balance - ledger_balance)
            repaired = drift != ZERO
            if repaired:
                log.warning(f"Balance drift of {drift} for student {student_id} (cached {cached_balance}, ledger {ledger_balance}). Repairing.")
                budget.current_balance = ledger_balance
                await self.db.flush()
            else:
                log.info(f"Balance of student {student_id} is consistent with its ledger ({ledger_balance}).")

        return ledger_models.BalanceReconciliation(
            student_id=student_id,
            cached_balance=cached_balance,
            ledger_balance=ledger_balance,
            drift=drift,
            repaired=repaired
        )
