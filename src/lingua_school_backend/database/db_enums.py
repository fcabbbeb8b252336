'''
Static enums shared by the ORM models, the pydantic models and the services.
'''
import enum


class ListableEnum(str, enum.Enum):
    """A custom Enum base class that can list all member values."""
    @classmethod
    def get_all_names(cls) -> list[str]:
        return [member.value for member in cls]


class LessonStatusEnum(ListableEnum):
    SCHEDULED = "SCHEDULED"
    CONFIRMED = "CONFIRMED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class PaymentStatusEnum(ListableEnum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class BalanceTransactionTypeEnum(ListableEnum):
    CHARGE = "CHARGE"
    PAYMENT = "PAYMENT"
    CANCELLATION_FEE = "CANCELLATION_FEE"
    ADJUSTMENT = "ADJUSTMENT"
    REFUND = "REFUND"


class CancellationLimitPeriodEnum(ListableEnum):
    MONTH = "month"
    QUARTER = "quarter"
    YEAR = "year"
    ENROLLMENT = "enrollment"


class PayoutStatusEnum(ListableEnum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    PAID = "PAID"
    CANCELLED = "CANCELLED"


class QualificationReasonEnum(ListableEnum):
    COMPLETED = "COMPLETED"
    CONFIRMED = "CONFIRMED"
    LATE_CANCELLATION = "LATE_CANCELLATION"
