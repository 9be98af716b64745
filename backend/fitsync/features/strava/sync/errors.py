"""
Import orchestrator errors.

Provider and token failures keep their own types (StravaError,
TokenError, CircuitOpenError); the orchestrator attaches the resume
point to them as `continue_token` before re-raising.
"""

from typing import Optional


class SyncError(Exception):
    """Base import error."""

    code = "sync_error"
    retryable = False

    def __init__(
        self,
        message: str,
        retry_after_seconds: Optional[float] = None,
        continue_token: Optional[str] = None,
    ):
        super().__init__(message)
        self.retry_after_seconds = retry_after_seconds
        self.continue_token = continue_token


class InvalidContinueTokenError(SyncError):
    """Continue token malformed, tampered, from another run, or wrong version."""
    code = "invalid_continue_token"


class InvalidCursorError(SyncError):
    """after_cursor is not a usable unix timestamp."""
    code = "invalid_cursor"


class ImportInProgressError(SyncError):
    """Another invocation is running an import for this user."""
    code = "import_in_progress"
    retryable = True


class ReauthorizationRequiredError(SyncError):
    """Strava rejected the credential; the user must connect again."""
    code = "reauthorization_required"
