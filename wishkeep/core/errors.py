"""Domain error taxonomy.

Services and engines raise these; the HTTP layer in ``wishkeep.main`` turns
them into responses. Nothing below imports FastAPI.
"""


class AppError(Exception):
    """Base error for domain failures."""

    status_code = 500
    default_code = "INTERNAL_ERROR"

    def __init__(self, message: str, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code

    def to_dict(self) -> dict[str, object]:
        return {"detail": self.message, "code": self.code}


class ValidationError(AppError):
    status_code = 400
    default_code = "VALIDATION_ERROR"

    def __init__(self, message: str, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field

    def to_dict(self) -> dict[str, object]:
        data = super().to_dict()
        if self.field:
            data["field"] = self.field
        return data


class UnauthorizedError(AppError):
    status_code = 401
    default_code = "UNAUTHORIZED"

    def __init__(self, message: str = "Not authenticated") -> None:
        super().__init__(message)


class ForbiddenError(AppError):
    status_code = 403
    default_code = "FORBIDDEN"

    def __init__(self, message: str = "Permission denied") -> None:
        super().__init__(message)


class NotFoundError(AppError):
    status_code = 404
    default_code = "NOT_FOUND"


class ConflictError(AppError):
    status_code = 409
    default_code = "CONFLICT"


class RateLimitedError(AppError):
    status_code = 429
    default_code = "RATE_LIMITED"

    def __init__(self, retry_after: int, message: str | None = None) -> None:
        super().__init__(message or f"Rate limit exceeded. Try again in {retry_after} seconds.")
        self.retry_after = retry_after

    def to_dict(self) -> dict[str, object]:
        data = super().to_dict()
        data["retry_after"] = self.retry_after
        return data


class TransactionTimeoutError(AppError):
    """The store did not finish the transaction in time; nothing was written."""

    status_code = 503
    default_code = "TIMEOUT"
    retryable = True

    def __init__(self, message: str = "The operation timed out. Please try again.") -> None:
        super().__init__(message)


ALREADY_RESERVED = "ALREADY_RESERVED"
STALE_WRITE = "STALE_WRITE"
