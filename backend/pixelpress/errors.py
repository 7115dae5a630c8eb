"""Error taxonomy shared by the session, job and file-serving layers.

Every error carries an ``action`` hint so a client can tell "fix your input"
from "wait and retry" from "start over with a new session".
"""
from typing import Any, Optional

FIX_INPUT = "fix_input"
RETRY_LATER = "retry_later"
NEW_SESSION = "new_session"
SERVER_ERROR = "server_error"


class PixelPressError(Exception):
    """Base exception for all application errors."""

    code = "error"
    action = SERVER_ERROR

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": self.code,
            "message": self.message,
            "action": self.action,
            "details": self.details,
        }


class ValidationError(PixelPressError):
    """Bad input: unsafe filename, unsupported format/MIME, size limits and so on."""

    code = "validation_error"
    action = FIX_INPUT

    def __init__(self, problems: list[str] | str, details: Optional[dict[str, Any]] = None) -> None:
        if isinstance(problems, str):
            problems = [problems]
        self.problems = list(problems)
        message = self.problems[0] if len(self.problems) == 1 else f"{len(self.problems)} problems found"
        super().__init__(message, details)

    def to_dict(self) -> dict[str, Any]:
        out = super().to_dict()
        out["problems"] = self.problems
        return out


class NotFoundError(PixelPressError):
    code = "not_found"
    action = FIX_INPUT


class SessionNotFoundError(NotFoundError):
    """Unknown or expired session; the client should upload again."""

    action = NEW_SESSION

    def __init__(self, session_id: str, details: Optional[dict[str, Any]] = None) -> None:
        details = details or {}
        details["session_id"] = session_id
        super().__init__(f"Session not found or expired: {session_id}", details)


class ForbiddenError(PixelPressError):
    code = "forbidden"
    action = FIX_INPUT


class ConflictError(PixelPressError):
    """An operation of the same kind is already running for the session."""

    code = "conflict"
    action = RETRY_LATER


class RateLimitedError(PixelPressError):
    code = "rate_limited"
    action = RETRY_LATER


class EngineError(PixelPressError):
    """The image engine failed for a whole batch.

    Partial failures never raise; they are reported per file in the results.
    """

    code = "engine_error"
    action = SERVER_ERROR

    def __init__(self, message: str, results: Optional[list] = None, details: Optional[dict[str, Any]] = None) -> None:
        self.results = results or []
        super().__init__(message, details)


class StorageError(PixelPressError):
    """Disk full, permission denied and other filesystem failures."""

    code = "storage_error"
    action = SERVER_ERROR
