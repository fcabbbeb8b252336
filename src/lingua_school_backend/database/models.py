from typing import Optional

from sqlalchemy import Boolean, CheckConstraint, Enum, ForeignKeyConstraint, Index, Integer, Numeric, PrimaryKeyConstraint, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
import datetime
import decimal
import uuid

from .db_enums import (
    LessonStatusEnum,
    PaymentStatusEnum,
    BalanceTransactionTypeEnum,
    CancellationLimitPeriodEnum,
    PayoutStatusEnum,
    QualificationReasonEnum
)
from .utils import UTCDateTime, utc_now

class Base(DeclarativeBase):
    pass


# Shared by the ledger and the settlement snapshot so Postgres sees a single type
transaction_type_enum = Enum(*BalanceTransactionTypeEnum.get_all_names(), name='balance_transaction_type_enum')


class Organizations(Base):
    __tablename__ = 'organizations'
    __table_args__ = (
        PrimaryKeyConstraint('id', name='organizations_pkey'),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255))
    currency: Mapped[str] = mapped_column(String(3), default='PLN')
    timezone: Mapped[str] = mapped_column(Text, default='Europe/Warsaw')
    created_at: Mapped[datetime.datetime] = mapped_column(UTCDateTime, default=utc_now)

    students: Mapped[list['Students']] = relationship('Students', back_populates='organization')
    teachers: Mapped[list['Teachers']] = relationship('Teachers', back_populates='organization')


class Students(Base):
    __tablename__ = 'students'
    __table_args__ = (
        CheckConstraint('payment_due_days IS NULL OR payment_due_days > 0', name='students_payment_due_days_positive'),
        CheckConstraint('payment_due_day_of_month IS NULL OR (payment_due_day_of_month BETWEEN 1 AND 28)', name='students_payment_due_day_of_month_range'),
        CheckConstraint('payment_due_days IS NULL OR payment_due_day_of_month IS NULL', name='students_single_due_rule'),
        CheckConstraint('cancellation_hours_threshold IS NULL OR cancellation_hours_threshold > 0', name='students_cancellation_hours_positive'),
        CheckConstraint('cancellation_fee_percent IS NULL OR (cancellation_fee_percent BETWEEN 0 AND 100)', name='students_cancellation_fee_percent_range'),
        CheckConstraint('cancellation_limit_count IS NULL OR cancellation_limit_count > 0', name='students_cancellation_limit_positive'),
        ForeignKeyConstraint(['organization_id'], ['organizations.id'], ondelete='CASCADE', name='students_organization_id_fkey'),
        PrimaryKeyConstraint('id', name='students_pkey'),
        Index('idx_students_organization', 'organization_id')
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[uuid.UUID] = mapped_column(Uuid)
    first_name: Mapped[str] = mapped_column(Text)
    last_name: Mapped[str] = mapped_column(Text)
    email: Mapped[Optional[str]] = mapped_column(String(255))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    enrolled_at: Mapped[datetime.datetime] = mapped_column(UTCDateTime, default=utc_now)

    # --- Billing policy ---
    payment_due_days: Mapped[Optional[int]] = mapped_column(Integer)
    payment_due_day_of_month: Mapped[Optional[int]] = mapped_column(Integer)
    cancellation_fee_enabled: Mapped[bool] = mapped_column(Boolean, default=False)
    cancellation_hours_threshold: Mapped[Optional[int]] = mapped_column(Integer)
    cancellation_fee_percent: Mapped[Optional[int]] = mapped_column(Integer)
    cancellation_limit_enabled: Mapped[bool] = mapped_column(Boolean, default=False)
    cancellation_limit_count: Mapped[Optional[int]] = mapped_column(Integer)
    cancellation_limit_period: Mapped[str] = mapped_column(
        Enum(*CancellationLimitPeriodEnum.get_all_names(), name='cancellation_limit_period_enum'),
        default=CancellationLimitPeriodEnum.MONTH.value
    )

    organization: Mapped['Organizations'] = relationship('Organizations', back_populates='students')
    budget: Mapped[Optional['StudentBudgets']] = relationship('StudentBudgets', back_populates='student', uselist=False)
    lessons: Mapped[list['Lessons']] = relationship('Lessons', back_populates='student')
    payments: Mapped[list['Payments']] = relationship('Payments', back_populates='student')

    @property
    def full_name(self) -> str:
        return f"{self.first_name or ''} {self.last_name or ''}".strip()


class Teachers(Base):
    __tablename__ = 'teachers'
    __table_args__ = (
        CheckConstraint('hourly_rate >= 0', name='teachers_hourly_rate_non_negative'),
        CheckConstraint('cancellation_payout_hours IS NULL OR cancellation_payout_hours > 0', name='teachers_cancellation_payout_hours_positive'),
        CheckConstraint('cancellation_payout_percent IS NULL OR (cancellation_payout_percent BETWEEN 0 AND 100)', name='teachers_cancellation_payout_percent_range'),
        ForeignKeyConstraint(['organization_id'], ['organizations.id'], ondelete='CASCADE', name='teachers_organization_id_fkey'),
        PrimaryKeyConstraint('id', name='teachers_pkey'),
        Index('idx_teachers_organization', 'organization_id')
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[uuid.UUID] = mapped_column(Uuid)
    first_name: Mapped[str] = mapped_column(Text)
    last_name: Mapped[str] = mapped_column(Text)
    email: Mapped[Optional[str]] = mapped_column(String(255))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    hourly_rate: Mapped[decimal.Decimal] = mapped_column(Numeric(10, 2), default=decimal.Decimal('0.00'))
    cancellation_payout_enabled: Mapped[bool] = mapped_column(Boolean, default=False)
    cancellation_payout_hours: Mapped[Optional[int]] = mapped_column(Integer)
    cancellation_payout_percent: Mapped[Optional[int]] = mapped_column(Integer)

    organization: Mapped['Organizations'] = relationship('Organizations', back_populates='teachers')
    lessons: Mapped[list['Lessons']] = relationship('Lessons', back_populates='teacher')
    payouts: Mapped[list['TeacherPayouts']] = relationship('TeacherPayouts', back_populates='teacher')

    @property
    def full_name(self) -> str:
        return f"{self.first_name or ''} {self.last_name or ''}".strip()


class Lessons(Base):
    __tablename__ = 'lessons'
    __table_args__ = (
        CheckConstraint('duration_minutes > 0', name='lessons_duration_positive'),
        ForeignKeyConstraint(['organization_id'], ['organizations.id'], ondelete='CASCADE', name='lessons_organization_id_fkey'),
        ForeignKeyConstraint(['student_id'], ['students.id'], ondelete='CASCADE', name='lessons_student_id_fkey'),
        ForeignKeyConstraint(['teacher_id'], ['teachers.id'], ondelete='CASCADE', name='lessons_teacher_id_fkey'),
        PrimaryKeyConstraint('id', name='lessons_pkey'),
        Index('idx_lessons_teacher_scheduled', 'teacher_id', 'scheduled_at'),
        Index('idx_lessons_student_scheduled', 'student_id', 'scheduled_at')
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[uuid.UUID] = mapped_column(Uuid)
    student_id: Mapped[uuid.UUID] = mapped_column(Uuid)
    teacher_id: Mapped[uuid.UUID] = mapped_column(Uuid)
    title: Mapped[str] = mapped_column(Text)
    scheduled_at: Mapped[datetime.datetime] = mapped_column(UTCDateTime)
    duration_minutes: Mapped[int] = mapped_column(Integer)
    status: Mapped[str] = mapped_column(
        Enum(*LessonStatusEnum.get_all_names(), name='lesson_status_enum'),
        default=LessonStatusEnum.SCHEDULED.value
    )
    completed_at: Mapped[Optional[datetime.datetime]] = mapped_column(UTCDateTime)
    cancelled_at: Mapped[Optional[datetime.datetime]] = mapped_column(UTCDateTime)
    cancellation_reason: Mapped[Optional[str]] = mapped_column(Text)
    price: Mapped[decimal.Decimal] = mapped_column(Numeric(10, 2), default=decimal.Decimal('0.00'))
    currency: Mapped[str] = mapped_column(String(3), default='PLN')
    created_at: Mapped[datetime.datetime] = mapped_column(UTCDateTime, default=utc_now)

    student: Mapped['Students'] = relationship('Students', back_populates='lessons')
    teacher: Mapped['Teachers'] = relationship('Teachers', back_populates='lessons')
    payout_lessons: Mapped[list['TeacherPayoutLessons']] = relationship('TeacherPayoutLessons', back_populates='lesson')


class Payments(Base):
    __tablename__ = 'payments'
    __table_args__ = (
        CheckConstraint('amount > 0', name='payments_amount_positive'),
        ForeignKeyConstraint(['organization_id'], ['organizations.id'], ondelete='CASCADE', name='payments_organization_id_fkey'),
        ForeignKeyConstraint(['student_id'], ['students.id'], ondelete='CASCADE', name='payments_student_id_fkey'),
        ForeignKeyConstraint(['lesson_id'], ['lessons.id'], ondelete='SET NULL', name='payments_lesson_id_fkey'),
        PrimaryKeyConstraint('id', name='payments_pkey'),
        Index('idx_payments_student_status', 'student_id', 'status')
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[uuid.UUID] = mapped_column(Uuid)
    student_id: Mapped[uuid.UUID] = mapped_column(Uuid)
    lesson_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid)
    amount: Mapped[decimal.Decimal] = mapped_column(Numeric(10, 2))
    currency: Mapped[str] = mapped_column(String(3), default='PLN')
    status: Mapped[str] = mapped_column(
        Enum(*PaymentStatusEnum.get_all_names(), name='payment_status_enum'),
        default=PaymentStatusEnum.PENDING.value
    )
    due_at: Mapped[Optional[datetime.datetime]] = mapped_column(UTCDateTime)
    paid_at: Mapped[Optional[datetime.datetime]] = mapped_column(UTCDateTime)
    notes: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime.datetime] = mapped_column(UTCDateTime, default=utc_now)

    student: Mapped['Students'] = relationship('Students', back_populates='payments')
    lesson: Mapped[Optional['Lessons']] = relationship('Lessons')


class StudentBudgets(Base):
    __tablename__ = 'student_budgets'
    __table_args__ = (
        ForeignKeyConstraint(['organization_id'], ['organizations.id'], ondelete='CASCADE', name='student_budgets_organization_id_fkey'),
        ForeignKeyConstraint(['student_id'], ['students.id'], ondelete='CASCADE', name='student_budgets_student_id_fkey'),
        PrimaryKeyConstraint('id', name='student_budgets_pkey'),
        UniqueConstraint('student_id', name='student_budgets_student_id_key')
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    student_id: Mapped[uuid.UUID] = mapped_column(Uuid)
    organization_id: Mapped[uuid.UUID] = mapped_column(Uuid)
    current_balance: Mapped[decimal.Decimal] = mapped_column(Numeric(10, 2), default=decimal.Decimal('0.00'))
    currency: Mapped[str] = mapped_column(String(3), default='PLN')
    last_settlement_date: Mapped[Optional[datetime.datetime]] = mapped_column(UTCDateTime)
    last_updated_at: Mapped[datetime.datetime] = mapped_column(UTCDateTime, default=utc_now)

    student: Mapped['Students'] = relationship('Students', back_populates='budget')
    transactions: Mapped[list['BalanceTransactions']] = relationship('BalanceTransactions', back_populates='budget')


class BalanceTransactions(Base):
    __tablename__ = 'balance_transactions'
    __table_args__ = (
        ForeignKeyConstraint(['budget_id'], ['student_budgets.id'], ondelete='CASCADE', name='balance_transactions_budget_id_fkey'),
        ForeignKeyConstraint(['student_id'], ['students.id'], ondelete='CASCADE', name='balance_transactions_student_id_fkey'),
        ForeignKeyConstraint(['lesson_id'], ['lessons.id'], ondelete='SET NULL', name='balance_transactions_lesson_id_fkey'),
        ForeignKeyConstraint(['payment_id'], ['payments.id'], ondelete='SET NULL', name='balance_transactions_payment_id_fkey'),
        PrimaryKeyConstraint('id', name='balance_transactions_pkey'),
        Index('idx_balance_transactions_student_created', 'student_id', 'created_at'),
        Index('idx_balance_transactions_lesson', 'lesson_id')
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    budget_id: Mapped[uuid.UUID] = mapped_column(Uuid)
    student_id: Mapped[uuid.UUID] = mapped_column(Uuid)
    organization_id: Mapped[uuid.UUID] = mapped_column(Uuid)
    type: Mapped[str] = mapped_column(transaction_type_enum)
    amount: Mapped[decimal.Decimal] = mapped_column(Numeric(10, 2))
    balance_before: Mapped[decimal.Decimal] = mapped_column(Numeric(10, 2))
    balance_after: Mapped[decimal.Decimal] = mapped_column(Numeric(10, 2))
    currency: Mapped[str] = mapped_column(String(3), default='PLN')
    description: Mapped[str] = mapped_column(Text)
    lesson_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid)
    payment_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid)
    created_by_user_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid)
    created_at: Mapped[datetime.datetime] = mapped_column(UTCDateTime, default=utc_now)

    budget: Mapped['StudentBudgets'] = relationship('StudentBudgets', back_populates='transactions')


class Settlements(Base):
    __tablename__ = 'settlements'
    __table_args__ = (
        CheckConstraint('period_start <= period_end', name='settlements_period_order'),
        ForeignKeyConstraint(['organization_id'], ['organizations.id'], ondelete='CASCADE', name='settlements_organization_id_fkey'),
        ForeignKeyConstraint(['student_id'], ['students.id'], ondelete='CASCADE', name='settlements_student_id_fkey'),
        PrimaryKeyConstraint('id', name='settlements_pkey'),
        Index('idx_settlements_student_created', 'student_id', 'created_at')
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[uuid.UUID] = mapped_column(Uuid)
    student_id: Mapped[uuid.UUID] = mapped_column(Uuid)
    period_start: Mapped[datetime.datetime] = mapped_column(UTCDateTime)
    period_end: Mapped[datetime.datetime] = mapped_column(UTCDateTime)
    opening_balance: Mapped[decimal.Decimal] = mapped_column(Numeric(10, 2))
    closing_balance: Mapped[decimal.Decimal] = mapped_column(Numeric(10, 2))
    total_charges: Mapped[decimal.Decimal] = mapped_column(Numeric(10, 2))
    total_credits: Mapped[decimal.Decimal] = mapped_column(Numeric(10, 2))
    currency: Mapped[str] = mapped_column(String(3), default='PLN')
    notes: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime.datetime] = mapped_column(UTCDateTime, default=utc_now)

    line_items: Mapped[list['SettlementLineItems']] = relationship(
        'SettlementLineItems',
        back_populates='settlement',
        order_by='SettlementLineItems.position',
        cascade='all, delete-orphan',
        lazy='selectin'
    )


class SettlementLineItems(Base):
    __tablename__ = 'settlement_line_items'
    __table_args__ = (
        ForeignKeyConstraint(['settlement_id'], ['settlements.id'], ondelete='CASCADE', name='settlement_line_items_settlement_id_fkey'),
        PrimaryKeyConstraint('id', name='settlement_line_items_pkey'),
        UniqueConstraint('settlement_id', 'position', name='settlement_line_items_position_key')
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    settlement_id: Mapped[uuid.UUID] = mapped_column(Uuid)
    position: Mapped[int] = mapped_column(Integer)
    # Snapshot copy; the referenced ledger row is not a foreign key on purpose
    transaction_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid)
    transaction_type: Mapped[str] = mapped_column(transaction_type_enum)
    description: Mapped[str] = mapped_column(Text)
    amount: Mapped[decimal.Decimal] = mapped_column(Numeric(10, 2))
    occurred_at: Mapped[datetime.datetime] = mapped_column(UTCDateTime)

    settlement: Mapped['Settlements'] = relationship('Settlements', back_populates='line_items')


class TeacherPayouts(Base):
    __tablename__ = 'teacher_payouts'
    __table_args__ = (
        ForeignKeyConstraint(['organization_id'], ['organizations.id'], ondelete='CASCADE', name='teacher_payouts_organization_id_fkey'),
        ForeignKeyConstraint(['teacher_id'], ['teachers.id'], ondelete='CASCADE', name='teacher_payouts_teacher_id_fkey'),
        PrimaryKeyConstraint('id', name='teacher_payouts_pkey'),
        Index('idx_teacher_payouts_teacher', 'teacher_id')
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[uuid.UUID] = mapped_column(Uuid)
    teacher_id: Mapped[uuid.UUID] = mapped_column(Uuid)
    period_start: Mapped[datetime.datetime] = mapped_column(UTCDateTime)
    period_end: Mapped[datetime.datetime] = mapped_column(UTCDateTime)
    total_hours: Mapped[decimal.Decimal] = mapped_column(Numeric(10, 2))
    total_amount: Mapped[decimal.Decimal] = mapped_column(Numeric(10, 2))
    currency: Mapped[str] = mapped_column(String(3), default='PLN')
    status: Mapped[str] = mapped_column(
        Enum(*PayoutStatusEnum.get_all_names(), name='teacher_payout_status_enum'),
        default=PayoutStatusEnum.PENDING.value
    )
    paid_at: Mapped[Optional[datetime.datetime]] = mapped_column(UTCDateTime)
    notes: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime.datetime] = mapped_column(UTCDateTime, default=utc_now)

    teacher: Mapped['Teachers'] = relationship('Teachers', back_populates='payouts')
    lessons: Mapped[list['TeacherPayoutLessons']] = relationship(
        'TeacherPayoutLessons',
        back_populates='payout',
        order_by='TeacherPayoutLessons.lesson_date',
        cascade='all, delete-orphan',
        lazy='selectin'
    )


class TeacherPayoutLessons(Base):
    __tablename__ = 'teacher_payout_lessons'
    __table_args__ = (
        ForeignKeyConstraint(['payout_id'], ['teacher_payouts.id'], ondelete='CASCADE', name='teacher_payout_lessons_payout_id_fkey'),
        ForeignKeyConstraint(['lesson_id'], ['lessons.id'], ondelete='CASCADE', name='teacher_payout_lessons_lesson_id_fkey'),
        PrimaryKeyConstraint('id', name='teacher_payout_lessons_pkey'),
        Index('idx_teacher_payout_lessons_lesson', 'lesson_id')
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    payout_id: Mapped[uuid.UUID] = mapped_column(Uuid)
    lesson_id: Mapped[uuid.UUID] = mapped_column(Uuid)
    lesson_date: Mapped[datetime.datetime] = mapped_column(UTCDateTime)
    duration_minutes: Mapped[int] = mapped_column(Integer)
    hourly_rate: Mapped[decimal.Decimal] = mapped_column(Numeric(10, 2))
    payout_percent: Mapped[int] = mapped_column(Integer, default=100)
    amount: Mapped[decimal.Decimal] = mapped_column(Numeric(10, 2))
    qualification_reason: Mapped[str] = mapped_column(Enum(*QualificationReasonEnum.get_all_names(), name='qualification_reason_enum'))
    lesson_title: Mapped[Optional[str]] = mapped_column(Text)
    student_name: Mapped[Optional[str]] = mapped_column(Text)

    payout: Mapped['TeacherPayouts'] = relationship('TeacherPayouts', back_populates='lessons')
    lesson: Mapped['Lessons'] = relationship('Lessons', back_populates='payout_lessons')
