"""
This file contains custom, application-specific exceptions.

Every failure the billing core can report is a subclass of BillingError so
the HTTP layer can map each one to its own status code (see main.py).
"""

class BillingError(Exception):
    """Base class for all billing domain failures."""
    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFoundError(BillingError):
    """Raised when a record is missing or lies outside the caller's organization."""
    def __init__(self, entity: str, entity_id=None):
        self.entity = entity
        self.entity_id = entity_id
        detail = f"{entity} not found." if entity_id is None else f"{entity} {entity_id} not found."
        super().__init__(detail)


class InvalidPeriodError(BillingError):
    """Raised when a period end is not after its start."""
    pass


class InvalidAmountError(BillingError):
    """Raised when a monetary amount is zero or has the wrong sign for the operation."""
    pass


class NotMostRecentError(BillingError):
    """Raised when deleting a settlement that is not the student's latest one."""
    pass


class OnlyPendingDeletableError(BillingError):
    """Raised when deleting a payout that already left the PENDING state."""
    pass


class InvalidStatusTransitionError(BillingError):
    """Raised when a payout in a terminal state (PAID, CANCELLED) is moved again."""
    pass


class NoQualifiedLessonsError(BillingError):
    """Raised when a payout is requested for a period with nothing to pay."""
    pass


class PolicyMisconfiguredError(BillingError):
    """Raised when a billing policy write leaves the policy inconsistent."""
    pass


class ConcurrencyConflictError(BillingError):
    """Raised when the per-student lock could not be acquired. The caller may retry."""
    pass
