'''
Pydantic models for student payments and the debtor list.
'''
from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID

from pydantic import AwareDatetime, BaseModel, ConfigDict, Field

from ..database.db_enums import LessonStatusEnum, PaymentStatusEnum


class ManualPaymentCreate(BaseModel):
    student_id: UUID
    amount: Decimal = Field(..., gt=0, max_digits=10, decimal_places=2)
    notes: Optional[str] = None


class PaymentComplete(BaseModel):
    paid_at: Optional[AwareDatetime] = None


class PaymentRead(BaseModel):
    id: UUID
    student_id: UUID
    lesson_id: Optional[UUID] = None
    amount: Decimal
    currency: str
    status: PaymentStatusEnum
    due_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    notes: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class DebtorPaymentRead(BaseModel):
    id: UUID
    amount: Decimal
    created_at: datetime
    due_at: Optional[datetime] = None
    notes: Optional[str] = None


class DebtorRead(BaseModel):
    student_id: UUID
    student_name: str
    email: Optional[str] = None
    total_debt: Decimal
    payments_count: int
    oldest_payment_date: datetime
    days_since_oldest: int
    payments: list[DebtorPaymentRead]


class LessonComplete(BaseModel):
    completed_at: Optional[AwareDatetime] = None


class LessonCompletionResult(BaseModel):
    """Outcome of completing (or un-completing) a lesson."""
    lesson_id: UUID
    status: LessonStatusEnum
    completed_at: Optional[datetime] = None
    payment: Optional[PaymentRead] = None
    ledger_transaction_id: Optional[UUID] = None
