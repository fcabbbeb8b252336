'''
Pydantic models for teacher payouts.
'''
from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID

from pydantic import AwareDatetime, BaseModel, ConfigDict, Field, computed_field

from ..database.db_enums import LessonStatusEnum, PayoutStatusEnum, QualificationReasonEnum

# --- 1. API Input Models ---

class PayoutCreate(BaseModel):
    teacher_id: UUID
    period_start: AwareDatetime
    period_end: AwareDatetime
    notes: Optional[str] = None


class PayoutStatusUpdate(BaseModel):
    status: PayoutStatusEnum
    notes: Optional[str] = None


# --- 2. Qualification ---

class LessonQualification(BaseModel):
    """Why (and at what share of the rate) a lesson counts toward a payout."""
    qualified: bool
    reason: Optional[QualificationReasonEnum] = None
    payout_percent: int = 100


class QualifiedLesson(BaseModel):
    id: UUID
    title: str
    scheduled_at: datetime
    duration_minutes: int
    status: LessonStatusEnum
    cancelled_at: Optional[datetime] = None
    student_name: str
    hourly_rate: Decimal
    amount: Decimal
    currency: str
    qualification_reason: QualificationReasonEnum
    payout_percent: int


class PayoutPreview(BaseModel):
    teacher_id: UUID
    teacher_name: str
    period_start: datetime
    period_end: datetime
    qualified_lessons: list[QualifiedLesson]
    total_hours: Decimal
    total_amount: Decimal
    currency: str


# --- 3. Output Models ---

class PayoutLessonRead(BaseModel):
    lesson_id: UUID
    lesson_date: datetime
    duration_minutes: int
    hourly_rate: Decimal
    payout_percent: int
    amount: Decimal
    qualification_reason: QualificationReasonEnum
    lesson_title: Optional[str] = None
    student_name: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class PayoutRead(BaseModel):
    id: UUID
    organization_id: UUID
    teacher_id: UUID
    period_start: datetime
    period_end: datetime
    total_hours: Decimal
    total_amount: Decimal
    currency: str
    status: PayoutStatusEnum
    paid_at: Optional[datetime] = None
    notes: Optional[str] = None
    created_at: datetime
    lessons: list[PayoutLessonRead] = Field(default_factory=list)

    model_config = ConfigDict(from_attributes=True)

    @computed_field
    @property
    def lessons_count(self) -> int:
        return len(self.lessons)


class PayoutCreateResult(BaseModel):
    payout: PayoutRead
    preview: PayoutPreview


class PayoutReference(BaseModel):
    id: UUID
    status: PayoutStatusEnum
    paid_at: Optional[datetime] = None


class LessonPayoutView(BaseModel):
    """A teacher's lesson annotated with its payout outcome (calendar view)."""
    id: UUID
    title: str
    scheduled_at: datetime
    duration_minutes: int
    status: LessonStatusEnum
    cancelled_at: Optional[datetime] = None
    student_name: str
    hourly_rate: Decimal
    amount: Decimal
    currency: str
    qualifies_for_payout: bool
    qualification_reason: Optional[QualificationReasonEnum] = None
    payout_percent: Optional[int] = None
    payout: Optional[PayoutReference] = None


class TeacherPayoutSummary(BaseModel):
    id: UUID
    first_name: str
    last_name: str
    email: Optional[str] = None
    hourly_rate: Decimal
    pending_payouts_count: int
    pending_payouts_total: Decimal
