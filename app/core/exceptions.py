"""
Domain exceptions for the writing pipeline.

Each exception carries the HTTP status the API layer responds with, so
services can raise them without knowing about FastAPI.
"""

from typing import Optional


class WritingError(Exception):
    """Base class for writing pipeline errors."""

    status_code = 500

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class ProjectNotFoundError(WritingError):
    status_code = 404


class ProjectAccessDeniedError(WritingError):
    status_code = 403


class WritingValidationError(WritingError):
    """Request is well-formed but not allowed in the project's current state."""

    status_code = 400


class InvalidTransitionError(WritingValidationError):
    def __init__(self, action: str, current_status: str):
        super().__init__(f"Cannot {action} while writing status is '{current_status}'")
        self.action = action
        self.current_status = current_status


class ConcurrentModificationError(WritingError):
    """Another request changed the project between read and write."""

    status_code = 409


class InsufficientCreditsError(WritingError):
    status_code = 402


class CreditLedgerError(WritingError):
    """Debit could not be recorded. Never undoes generated content."""


class GenerationError(WritingError):
    status_code = 502


class TransientGenerationError(GenerationError):
    """Rate limit, timeout or 5xx from the provider. Safe to retry."""

    def __init__(
        self,
        message: str,
        provider_status: Optional[int] = None,
        retry_after: Optional[float] = None,
    ):
        super().__init__(message)
        self.provider_status = provider_status
        self.retry_after = retry_after


class FatalGenerationError(GenerationError):
    """Non-retryable provider error, or retries exhausted."""

    def __init__(self, message: str, attempts: int = 1):
        super().__init__(message)
        self.attempts = attempts
