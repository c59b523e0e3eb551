"""Error taxonomy shared by provider adapters and the merge orchestrator."""

from enum import Enum


class ErrorCode(str, Enum):
    AUTH = "auth_error"
    RATE_LIMITED = "rate_limited"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    PRECONDITION = "precondition"
    NETWORK = "network_error"
    PROVIDER = "provider_error"
    VALIDATION = "validation_error"
    UNEXPECTED = "unexpected_error"

    @property
    def is_precondition_class(self) -> bool:
        """Conflicts are a kind of precondition failure: the PR changed since it was selected."""
        return self in (ErrorCode.CONFLICT, ErrorCode.PRECONDITION)


class AmpelError(Exception):
    """Base exception for all Ampel errors.

    ``message`` is always safe to show to a user: it never contains tokens or
    raw provider responses.
    """

    code: ErrorCode = ErrorCode.UNEXPECTED
    retryable: bool = False

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"[{self.code.value}] {message}")


class ProviderError(AmpelError):
    """Raised by provider adapters."""

    code = ErrorCode.PROVIDER


class AuthError(ProviderError):
    """Invalid, expired or insufficient credentials.

    When ``account_fatal`` is set every remaining item using the same account
    is aborted; otherwise only the current item fails (e.g. a permission
    denial on one repository).
    """

    code = ErrorCode.AUTH

    def __init__(self, message: str, account_fatal: bool = True) -> None:
        super().__init__(message)
        self.account_fatal = account_fatal


class RateLimitedError(ProviderError):
    code = ErrorCode.RATE_LIMITED
    retryable = True

    def __init__(self, message: str, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class NotFoundError(ProviderError):
    code = ErrorCode.NOT_FOUND


class PreconditionError(ProviderError):
    code = ErrorCode.PRECONDITION


class ConflictError(PreconditionError):
    code = ErrorCode.CONFLICT


class NetworkError(ProviderError):
    code = ErrorCode.NETWORK


class ProviderAPIError(ProviderError):
    def __init__(self, message: str, status_code: int) -> None:
        super().__init__(message)
        self.status_code = status_code


class ValidationError(AmpelError, ValueError):
    """A request was rejected before any provider call was made."""

    code = ErrorCode.VALIDATION


class OperationNotFoundError(AmpelError, LookupError):
    code = ErrorCode.NOT_FOUND


class OperationInProgressError(AmpelError):
    code = ErrorCode.PRECONDITION
