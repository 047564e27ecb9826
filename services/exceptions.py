"""
Service-layer exceptions.

Validation problems are raised to the caller synchronously; they are user
errors, not system failures, and are not logged as errors.
"""


class ValidationError(ValueError):
    """Input rejected by a service (bad fields, name collision, ...)."""

    def __init__(self, message: str, errors: list[str] | None = None):
        super().__init__(message)
        self.errors = errors or [message]


class DuplicatePaymentError(ValidationError):
    """A dividend payment is already recorded for this portfolio and dividend."""


class NotFoundError(LookupError):
    """Referenced record does not exist (or is not visible to the caller)."""
