"""Exception hierarchy for core lending validation failures."""

from typing import Optional


class LendingError(ValueError):
    """Base exception for all lending errors."""


class InvalidLoanTermsError(LendingError):
    """Raised when loan terms are malformed or out of range."""

    def __init__(self, field: str, message: str):
        self.field = field
        super().__init__(f"Invalid {field}: {message}")


class ExceedsCommitmentError(LendingError):
    """Raised when a draw would take a loan past its commitment."""

    def __init__(self, message: str, requested=None, available=None):
        self.requested = requested
        self.available = available
        super().__init__(message)


class InvalidTransitionError(LendingError):
    """Raised when a draw, payment or loan status change is attempted out of order."""

    def __init__(self, entity: str, current: str, target: str, message: Optional[str] = None):
        self.entity = entity
        self.current = current
        self.target = target
        super().__init__(message or f"Cannot move {entity} from {current} to {target}")


class InvalidDrawAmountError(LendingError):
    """Raised when a draw amount is not a positive amount in the loan's currency."""


class LoanNotFoundError(LendingError):
    """Raised when a referenced loan is not registered."""


class DrawNotFoundError(LendingError):
    """Raised when a referenced draw is not registered."""


class PaymentNotFoundError(LendingError):
    """Raised when a referenced payment is not registered."""
