"""Error taxonomy shared by services and HTTP handlers.

Every error carries the HTTP status it is reported with, so handlers in
`cms_api.main` can render them without a lookup table. Services raise these
directly; the storage gateway converts driver exceptions into
`StorageError` / `LockTimeoutError`.
"""

from typing import Optional


class AppError(Exception):
    """Base class for errors reported to API callers."""
    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(AppError):
    status_code = 400
    code = "VALIDATION_ERROR"


class AuthError(AppError):
    status_code = 401
    code = "UNAUTHORIZED"


class ForbiddenError(AppError):
    status_code = 403
    code = "FORBIDDEN"


class NotFoundError(AppError):
    """A referenced entity does not exist.

    `entity` names what was missing (``course``, ``student``, ...) and the
    message defaults to ``"<entity> not found"``.
    """
    status_code = 404
    code = "NOT_FOUND"

    def __init__(self, entity: str, message: Optional[str] = None):
        super().__init__(message or f"{entity} not found")
        self.entity = entity


class ConflictError(AppError):
    status_code = 409
    code = "CONFLICT"


class RateLimitedError(AppError):
    status_code = 429
    code = "RATE_LIMITED"

    def __init__(self, message: str, retry_after: int):
        super().__init__(message)
        self.retry_after = retry_after


class StorageError(AppError):
    """The database was unreachable or a transaction failed and was rolled back."""
    status_code = 500
    code = "STORAGE_ERROR"
    retryable = False


class LockTimeoutError(StorageError):
    """Waiting for a row or database lock exceeded the configured timeout.

    Nothing was written, so the caller may safely retry.
    """
    status_code = 503
    code = "LOCK_TIMEOUT"
    retryable = True
