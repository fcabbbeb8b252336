'''
Pydantic models for the student balance ledger.
'''
from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..database.db_enums import BalanceTransactionTypeEnum

# --- 1. API Input Models ---

class BalanceAdjustmentCreate(BaseModel):
    """
    Validates a manual balance correction.
    Positive amounts credit the student, negative amounts debit them.
    """
    amount: Decimal = Field(..., max_digits=10, decimal_places=2)
    description: str = Field(..., min_length=1, max_length=500)

    @field_validator('amount')
    @classmethod
    def amount_must_not_be_zero(cls, value: Decimal) -> Decimal:
        if value == 0:
            raise ValueError("Adjustment amount must not be zero.")
        return value


# --- 2. API Output Models ---

class BalanceTransactionRead(BaseModel):
    id: UUID
    student_id: UUID
    type: BalanceTransactionTypeEnum
    amount: Decimal
    balance_before: Decimal
    balance_after: Decimal
    currency: str
    description: str
    lesson_id: Optional[UUID] = None
    payment_id: Optional[UUID] = None
    created_by_user_id: Optional[UUID] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class BalanceUpdateResult(BaseModel):
    budget_id: UUID
    previous_balance: Decimal
    new_balance: Decimal
    transaction_id: UUID


class TransactionHistory(BaseModel):
    transactions: list[BalanceTransactionRead]
    total: int
    limit: Optional[int] = None
    offset: int = 0
    has_more: bool
    current_balance: Decimal
    currency: str


class StudentBalanceRead(BaseModel):
    student_id: UUID
    balance: Decimal
    currency: str
    last_updated_at: Optional[datetime] = None
    recent_transactions: list[BalanceTransactionRead] = Field(default_factory=list)


class BalanceReconciliation(BaseModel):
    """Result of re-deriving a student's balance from the transaction log."""
    student_id: UUID
    cached_balance: Decimal
    ledger_balance: Decimal
    drift: Decimal
    repaired: bool
