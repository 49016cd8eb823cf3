from typing import Any, Optional

GENERIC_FAILURE_MESSAGE = "An unexpected error occurred. Please try again later."


class AppError(Exception):
    """Base class for every error raised by the question pipeline."""


class UserFacingError(AppError):
    """An error whose message is safe to show to the person who asked."""

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.code = code


# =========================
# Local, synchronous plan problems
# =========================
class ValidationError(UserFacingError):
    """Malformed plan shape: columns, operators or filter values."""

    def __init__(self, message: str, code: str = "INVALID_PLAN"):
        super().__init__(message, code)


class CompileError(ValidationError):
    def __init__(self, message: str):
        super().__init__(message, code="COMPILE_ERROR")


class AbstentionError(UserFacingError):
    """Planner or validator refused to proceed (low confidence or unsafe plan)."""

    def __init__(self, message: str, reason: Optional[str] = None):
        super().__init__(message, code="ABSTAINED")
        self.reason = reason


# =========================
# Downstream failures (never shown verbatim)
# =========================
class ExecutorError(AppError):
    pass


class PersistenceError(AppError):
    pass


class CacheError(AppError):
    pass


def to_safe_failed_reason(err: Any) -> str:
    """
    Convert an error into a message that can leave the process.

    User-facing errors keep their message, explicit string reasons pass
    through, everything else collapses to a generic message.
    """
    if isinstance(err, UserFacingError):
        return err.message

    if isinstance(err, str) and err:
        return err

    return GENERIC_FAILURE_MESSAGE
