import factory
import uuid
import datetime
from decimal import Decimal
from factory.alchemy import SQLAlchemyModelFactory
from factory.faker import Faker

from lingua_school_backend.database import models as db_models
from lingua_school_backend.database.db_enums import (
    LessonStatusEnum, PaymentStatusEnum, CancellationLimitPeriodEnum, PayoutStatusEnum
)
from lingua_school_backend.database.utils import utc_now
from tests.constants import TEST_ORGANIZATION_ID, TEST_CURRENCY, TEST_TIMEZONE

# This is a placeholder for the session of the running test.
# conftest.py sets it before the factories are used.
test_db_session = None

class BaseFactory(SQLAlchemyModelFactory):
    class Meta:
        abstract = True
        # AsyncSession.flush is a coroutine; tests await db_session.flush() themselves
        sqlalchemy_session_persistence = None

    @classmethod
    def _create(cls, model_class, *args, **kwargs):
        # This ensures the session is set before any factory is used
        if test_db_session is None:
            raise RuntimeError(
                "The 'test_db_session' global must be set (see the db_session fixture) before using factories."
            )
        cls._meta.sqlalchemy_session = test_db_session
        return super()._create(model_class, *args, **kwargs)


class OrganizationFactory(BaseFactory):
    id = factory.LazyFunction(uuid.uuid4)
    name = Faker("company")
    currency = TEST_CURRENCY
    timezone = TEST_TIMEZONE
    created_at = factory.LazyFunction(utc_now)

    class Meta:
        model = db_models.Organizations

class StudentFactory(BaseFactory):
    id = factory.LazyFunction(uuid.uuid4)
    organization_id = TEST_ORGANIZATION_ID
    first_name = Faker("first_name")
    last_name = Faker("last_name")
    email = Faker("email")
    is_active = True
    enrolled_at = factory.LazyFunction(lambda: utc_now() - datetime.timedelta(days=365))
    payment_due_days = None
    payment_due_day_of_month = None
    cancellation_fee_enabled = False
    cancellation_hours_threshold = None
    cancellation_fee_percent = None
    cancellation_limit_enabled = False
    cancellation_limit_count = None
    cancellation_limit_period = CancellationLimitPeriodEnum.MONTH.value

    class Meta:
        model = db_models.Students

class TeacherFactory(BaseFactory):
    id = factory.LazyFunction(uuid.uuid4)
    organization_id = TEST_ORGANIZATION_ID
    first_name = Faker("first_name")
    last_name = Faker("last_name")
    email = Faker("email")
    is_active = True
    hourly_rate = Decimal("100.00")
    cancellation_payout_enabled = False
    cancellation_payout_hours = None
    cancellation_payout_percent = None

    class Meta:
        model = db_models.Teachers

class LessonFactory(BaseFactory):
    """Needs student_id and teacher_id; the organization defaults to the test tenant."""
    id = factory.LazyFunction(uuid.uuid4)
    organization_id = TEST_ORGANIZATION_ID
    title = Faker("sentence", nb_words=3)
    scheduled_at = factory.LazyFunction(lambda: utc_now() + datetime.timedelta(days=1))
    duration_minutes = 60
    status = LessonStatusEnum.SCHEDULED.value
    price = Decimal("100.00")
    currency = TEST_CURRENCY
    created_at = factory.LazyFunction(utc_now)

    class Meta:
        model = db_models.Lessons

class PaymentFactory(BaseFactory):
    """Needs student_id."""
    id = factory.LazyFunction(uuid.uuid4)
    organization_id = TEST_ORGANIZATION_ID
    amount = Decimal("100.00")
    currency = TEST_CURRENCY
    status = PaymentStatusEnum.PENDING.value
    due_at = None
    created_at = factory.LazyFunction(utc_now)

    class Meta:
        model = db_models.Payments

class TeacherPayoutFactory(BaseFactory):
    """Needs teacher_id."""
    id = factory.LazyFunction(uuid.uuid4)
    organization_id = TEST_ORGANIZATION_ID
    period_start = factory.LazyFunction(lambda: utc_now() - datetime.timedelta(days=30))
    period_end = factory.LazyFunction(utc_now)
    total_hours = Decimal("0.00")
    total_amount = Decimal("0.00")
    currency = TEST_CURRENCY
    status = PayoutStatusEnum.PENDING.value
    created_at = factory.LazyFunction(utc_now)

    class Meta:
        model = db_models.TeacherPayouts
