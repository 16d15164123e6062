"""Exception hierarchy for the payroll loans engine."""

from typing import Any, Optional


class LoanEngineError(Exception):
    """Base exception for all loan engine errors."""

    def __init__(self, reason: str, field: Optional[str] = None, value: Any = None):
        self.reason = reason
        self.field = field
        self.value = value
        super().__init__(self._render())

    def _render(self) -> str:
        if self.field is None:
            return self.reason
        return f"{self.reason} ({self.field}={self.value})"


class InvalidTerms(LoanEngineError, ValueError):
    """Raised when loan or advance parameters are malformed."""


class InvalidAmount(LoanEngineError, ValueError):
    """Raised for non-positive payments or balance updates out of range."""


class NotFound(LoanEngineError):
    """Raised when a referenced record does not exist."""


class LoanNotFound(NotFound):
    """Raised when a loan id is unknown."""


class InstallmentNotFound(NotFound):
    """Raised when an installment id is unknown."""


class AdvanceNotFound(NotFound):
    """Raised when an advance id is unknown."""


class EmployeeNotFound(NotFound):
    """Raised when the employee directory does not know an employee."""


class AlreadyPaid(LoanEngineError):
    """Raised when paying an installment that is already PAID."""


class DuplicateSchedule(LoanEngineError):
    """Raised when a loan already has an installment schedule."""


class BusinessRuleViolation(LoanEngineError):
    """Raised when an operation breaks a lending policy."""


class TransactionFailed(LoanEngineError):
    """
    Raised when the storage transaction itself failed.

    The outcome of the operation is unknown; callers must re-read state
    before retrying.
    """


class StorageError(Exception):
    """Raised by storage backends on I/O or database failures."""
