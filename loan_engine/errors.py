"""Domain exception hierarchy for the loan engine."""

from typing import Iterable, Union


class LoanEngineError(Exception):
    """Base exception for all loan engine errors."""


class InvalidTermsError(LoanEngineError):
    """Raised when loan terms cannot produce a repayment schedule."""


class AllocationError(LoanEngineError):
    """Raised when a repayment cannot be allocated or reversed."""


class NotFoundError(LoanEngineError):
    """Raised when a loan, application or repayment does not exist."""

    def __init__(self, entity: str, entity_id: str):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity.capitalize()} {entity_id} not found")


class IllegalStateTransitionError(LoanEngineError):
    """Raised when an operation is attempted from the wrong source status."""

    def __init__(self, entity: str, action: str, current: str,
                 required: Union[str, Iterable[str]]):
        if isinstance(required, str):
            required = [required]
        self.entity = entity
        self.action = action
        self.current = current
        self.required = list(required)
        super().__init__(
            f"Cannot {action} {entity} in status {current}; "
            f"requires {' or '.join(self.required)}"
        )


class DuplicateApprovalError(LoanEngineError):
    """Raised when an application that already produced a loan is approved again."""


class ConcurrencyError(LoanEngineError):
    """Raised when a versioned record was changed by another writer."""
