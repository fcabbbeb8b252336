'''
Pydantic models for student settlements and the settlement overview.
'''
from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID

from pydantic import AwareDatetime, BaseModel, ConfigDict, Field, model_validator

from ..database.db_enums import BalanceTransactionTypeEnum

# --- 1. API Input Models ---

class SettlementPeriod(BaseModel):
    """
    A half-open period [period_start, period_end).
    Ordering is checked by the service so the failure carries its own error type.
    """
    student_id: UUID
    period_start: AwareDatetime
    period_end: AwareDatetime


class SettlementCreate(SettlementPeriod):
    notes: Optional[str] = None


# --- 2. Output Models ---

class SettlementLineItemRead(BaseModel):
    position: int
    transaction_id: Optional[UUID] = None
    transaction_type: BalanceTransactionTypeEnum
    description: str
    amount: Decimal
    occurred_at: datetime

    model_config = ConfigDict(from_attributes=True)


class SettlementPreview(BaseModel):
    """
    Read-only computation of a settlement. Creating a settlement persists
    exactly this structure.
    """
    student_id: UUID
    student_name: str
    period_start: datetime
    period_end: datetime
    opening_balance: Decimal
    line_items: list[SettlementLineItemRead]
    total_charges: Decimal
    total_credits: Decimal
    closing_balance: Decimal
    currency: str

    @model_validator(mode='after')
    def closing_matches_items(self) -> 'SettlementPreview':
        expected = self.opening_balance + sum((item.amount for item in self.line_items), Decimal("0.00"))
        if expected != self.closing_balance:
            raise ValueError(f"closing_balance {self.closing_balance} does not equal opening balance plus line items ({expected}).")
        return self


class SettlementRead(BaseModel):
    id: UUID
    organization_id: UUID
    student_id: UUID
    period_start: datetime
    period_end: datetime
    opening_balance: Decimal
    closing_balance: Decimal
    total_charges: Decimal
    total_credits: Decimal
    currency: str
    notes: Optional[str] = None
    created_at: datetime
    line_items: list[SettlementLineItemRead] = Field(default_factory=list)

    model_config = ConfigDict(from_attributes=True)


class StudentSettlementOverview(BaseModel):
    """One row of the settlement overview screen."""
    id: UUID
    first_name: str
    last_name: str
    email: Optional[str] = None
    current_balance: Decimal
    last_settlement_date: Optional[datetime] = None
    pending_payments_count: int
    pending_payments_sum: Decimal


class BalanceForecastLesson(BaseModel):
    id: UUID
    title: str
    scheduled_at: datetime
    price: Decimal
    currency: str
    balance_after: Decimal


class BalanceForecast(BaseModel):
    current_balance: Decimal
    currency: str
    upcoming_lessons_count: int
    lessons_until_depletion: Optional[int] = None
    depletion_date: Optional[datetime] = None
    forecasted_balance: Decimal
    upcoming_lessons: list[BalanceForecastLesson]
