"""
exceptions.py
--------------
Engine exception hierarchy.

Per-message failures never escape the classifier or the batch path; these
exceptions cross the caller-facing seams (job start, CLI) and carry the
error type the ErrorManager uses for retry decisions.
"""

from core.models import ErrorType


class EngineError(Exception):
    """Base class for all engine errors."""


class AmountParseError(EngineError, ValueError):
    """Raised when an amount literal cannot be parsed into a positive number."""

    def __init__(self, raw: str):
        super().__init__(f"Invalid amount format: {raw!r}")
        self.raw = raw


class ProcessingFailure(EngineError):
    """
    A failure classified into the closed error taxonomy. Collaborators raise
    this so the retry wrapper can tell retryable failures from permanent ones.
    """

    def __init__(self, message: str, error_type: ErrorType = ErrorType.UNEXPECTED_ERROR):
        super().__init__(message)
        self.error_type = error_type


class ActiveJobExistsError(EngineError):
    """Raised when a user already owns a non-terminal processing job."""

    code = "ACTIVE_JOB_EXISTS"

    def __init__(self, user_id: str, job_id: str):
        super().__init__(f"Active job already exists for user {user_id}: {job_id}")
        self.user_id = user_id
        self.job_id = job_id


class JobNotFoundError(EngineError, KeyError):
    """Raised when a job id is unknown to the job store."""

    def __init__(self, job_id: str):
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id

    def __str__(self) -> str:
        return self.args[0]


class MessageSourceNotConnectedError(ProcessingFailure):
    """Raised when no message source can be resolved for a user."""

    def __init__(self, user_id: str):
        super().__init__(
            f"No message source connected for user {user_id}",
            ErrorType.AUTHENTICATION_FAILED,
        )
        self.user_id = user_id


class SchedulingError(ProcessingFailure):
    """Raised when a continuation trigger cannot be handed off."""

    def __init__(self, message: str):
        super().__init__(message, ErrorType.UNEXPECTED_ERROR)
