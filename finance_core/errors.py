"""Exception hierarchy for the finance core.

Every error derives from ValueError so callers that already treat bad input
as ValueError keep working.
"""


class FinanceCoreError(ValueError):
    """Base exception for all finance core errors."""


class InvalidInputError(FinanceCoreError):
    """Raised for malformed parameters: non-positive principal or term, negative rate."""


class InvalidAmountError(FinanceCoreError):
    """Raised when a payment or purchase amount is non-positive or out of range."""


class CreditLimitExceededError(InvalidAmountError):
    """Raised when a purchase does not fit in the card's available credit."""


class InvalidInstallmentError(FinanceCoreError):
    """Raised when an installment count falls outside the allowed range."""


class OverpaymentError(FinanceCoreError):
    """Raised when a payment exceeds the outstanding balance or statement total."""


class InvalidStateError(FinanceCoreError):
    """Raised when an entity is in the wrong state for the operation."""


class LoanNotActiveError(InvalidStateError):
    """Raised when paying a loan that is deactivated or already paid off."""


class EntityNotFoundError(FinanceCoreError):
    """Raised when a referenced entity does not exist."""


class LoanNotFoundError(EntityNotFoundError):
    pass


class CreditCardNotFoundError(EntityNotFoundError):
    pass


class StatementNotFoundError(EntityNotFoundError):
    pass


class DuplicateRecordError(FinanceCoreError):
    """Raised when appending a record whose id already exists in an append-only table."""
