'''
Pydantic models for student billing policies, teacher payout settings and
the cancellation workflow.
'''
from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID

from pydantic import AwareDatetime, BaseModel, ConfigDict, Field

from ..database.db_enums import CancellationLimitPeriodEnum

# --- 1. Student Billing Policy ---

class StudentBillingPolicy(BaseModel):
    """
    The billing-related attributes of a student.
    Corresponds to the policy columns of db_models.Students.
    """
    payment_due_days: Optional[int] = Field(default=None, gt=0)
    payment_due_day_of_month: Optional[int] = Field(default=None, ge=1, le=28)
    cancellation_fee_enabled: bool = False
    cancellation_hours_threshold: Optional[int] = Field(default=None, gt=0)
    cancellation_fee_percent: Optional[int] = Field(default=None, ge=0, le=100)
    cancellation_limit_enabled: bool = False
    cancellation_limit_count: Optional[int] = Field(default=None, gt=0)
    cancellation_limit_period: CancellationLimitPeriodEnum = CancellationLimitPeriodEnum.MONTH

    model_config = ConfigDict(from_attributes=True)


class StudentBillingPolicyUpdate(BaseModel):
    """
    Validates a partial policy update. Only the fields present in the
    request are applied (tracked through `model_fields_set`).
    """
    payment_due_days: Optional[int] = Field(default=None, gt=0)
    payment_due_day_of_month: Optional[int] = Field(default=None, ge=1, le=28)
    cancellation_fee_enabled: Optional[bool] = None
    cancellation_hours_threshold: Optional[int] = Field(default=None, gt=0)
    cancellation_fee_percent: Optional[int] = Field(default=None, ge=0, le=100)
    cancellation_limit_enabled: Optional[bool] = None
    cancellation_limit_count: Optional[int] = Field(default=None, gt=0)
    cancellation_limit_period: Optional[CancellationLimitPeriodEnum] = None


class PolicyUpdateResult(BaseModel):
    student_id: UUID
    policy: StudentBillingPolicy
    recalculated_payments: int


# --- 2. Teacher Payout Settings ---

class TeacherPayoutSettings(BaseModel):
    hourly_rate: Decimal
    cancellation_payout_enabled: bool = False
    cancellation_payout_hours: Optional[int] = Field(default=None, gt=0)
    cancellation_payout_percent: Optional[int] = Field(default=None, ge=0, le=100)

    model_config = ConfigDict(from_attributes=True)


class TeacherPayoutSettingsUpdate(BaseModel):
    hourly_rate: Optional[Decimal] = Field(default=None, ge=0)
    cancellation_payout_enabled: Optional[bool] = None
    cancellation_payout_hours: Optional[int] = Field(default=None, gt=0)
    cancellation_payout_percent: Optional[int] = Field(default=None, ge=0, le=100)


# --- 3. Cancellation ---

class CancellationFeeDecision(BaseModel):
    """Outcome of evaluating a single cancellation against a student's fee policy."""
    fee_applied: bool
    fee_amount: Decimal = Decimal("0.00")
    hours_before_start: Optional[float] = None


class LessonCancellationResult(BaseModel):
    lesson_id: UUID
    student_id: UUID
    cancelled_at: datetime
    fee_applied: bool
    fee_amount: Decimal
    transaction_id: Optional[UUID] = None


class CancellationLimitStatus(BaseModel):
    """Advisory answer to 'may this student cancel another lesson?'."""
    can_cancel: bool
    used: int
    remaining: Optional[int] = None
    limit: Optional[int] = None
    period: CancellationLimitPeriodEnum
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None


class LessonCancel(BaseModel):
    cancelled_at: Optional[AwareDatetime] = None
    reason: Optional[str] = None
