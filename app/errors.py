"""
Application error taxonomy.

Every failure that crosses a component boundary is an ``AppError`` tagged with
one ``ErrorKind``. The kind decides the HTTP status, the machine-readable code
and whether a retry may help, so handlers match on ``error.kind`` instead of
on a zoo of exception subclasses.
"""

from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    CONFIGURATION = "configuration"
    MISSING_SIGNATURE = "missing_signature"
    INVALID_SIGNATURE = "invalid_signature"
    MALFORMED_PAYLOAD = "malformed_payload"
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    NOT_ELIGIBLE = "not_eligible"
    GITHUB_API = "github_api"
    AI_SERVICE = "ai_service"
    PAYMENT = "payment"
    DATABASE = "database"
    ANALYSIS = "analysis"
    UNEXPECTED = "unexpected"


# kind -> (http status, code, retryable)
_KIND_TABLE: dict[ErrorKind, tuple[int, str, bool]] = {
    ErrorKind.CONFIGURATION: (500, "CONFIGURATION_ERROR", False),
    ErrorKind.MISSING_SIGNATURE: (401, "MISSING_SIGNATURE", False),
    ErrorKind.INVALID_SIGNATURE: (401, "INVALID_SIGNATURE", False),
    ErrorKind.MALFORMED_PAYLOAD: (400, "MALFORMED_PAYLOAD", False),
    ErrorKind.VALIDATION: (400, "VALIDATION_ERROR", False),
    ErrorKind.NOT_FOUND: (404, "NOT_FOUND", False),
    ErrorKind.NOT_ELIGIBLE: (200, "PR_NOT_ELIGIBLE", False),
    ErrorKind.GITHUB_API: (502, "GITHUB_API_ERROR", True),
    ErrorKind.AI_SERVICE: (502, "AI_SERVICE_ERROR", True),
    ErrorKind.PAYMENT: (502, "PAYMENT_ERROR", False),
    ErrorKind.DATABASE: (500, "DATABASE_ERROR", True),
    ErrorKind.ANALYSIS: (500, "ANALYSIS_ERROR", True),
    ErrorKind.UNEXPECTED: (500, "UNEXPECTED_ERROR", False),
}


class AppError(Exception):
    """Single error type for the service, discriminated by ``kind``."""

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        details: dict[str, Any] | None = None,
        *,
        retryable: bool | None = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.details = details or {}
        self._retryable = retryable

    @property
    def status_code(self) -> int:
        return _KIND_TABLE[self.kind][0]

    @property
    def code(self) -> str:
        return _KIND_TABLE[self.kind][1]

    @property
    def retryable(self) -> bool:
        if self._retryable is not None:
            return self._retryable
        return _KIND_TABLE[self.kind][2]

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details,
            "status": self.status_code,
            "retryable": self.retryable,
        }

    @classmethod
    def wrap(cls, error: BaseException) -> "AppError":
        """Convert any exception into an ``AppError``."""
        if isinstance(error, AppError):
            return error
        converter = getattr(error, "to_app_error", None)
        if callable(converter):
            return converter()
        return cls(
            ErrorKind.UNEXPECTED,
            "Unexpected error",
            {"error_type": type(error).__name__},
        )


class GitHubAPIError(Exception):
    """Raised when a GitHub API call fails."""

    def __init__(self, message: str, status_code: int | None = None, operation: str | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.operation = operation

    @property
    def is_permanent(self) -> bool:
        """403/404 will not go away by retrying."""
        return self.status_code in (403, 404)

    def to_app_error(self) -> AppError:
        kind = ErrorKind.NOT_FOUND if self.status_code == 404 else ErrorKind.GITHUB_API
        return AppError(
            kind,
            str(self),
            {"status_code": self.status_code, "operation": self.operation},
            retryable=not self.is_permanent,
        )


class AIServiceError(Exception):
    """Raised when the AI provider fails or returns unusable output."""

    def __init__(self, message: str, recoverable: bool = True):
        super().__init__(message)
        self.recoverable = recoverable

    def to_app_error(self) -> AppError:
        return AppError(
            ErrorKind.AI_SERVICE, str(self), {"recoverable": self.recoverable}, retryable=self.recoverable
        )


class PaymentError(Exception):
    """Raised when the escrow or ledger collaborator fails."""

    def __init__(self, message: str, status_code: int | None = None, operation: str | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.operation = operation

    def to_app_error(self) -> AppError:
        return AppError(
            ErrorKind.PAYMENT, str(self), {"status_code": self.status_code, "operation": self.operation}
        )


def configuration_error(*missing: str) -> AppError:
    return AppError(
        ErrorKind.CONFIGURATION,
        f"Missing configuration: {', '.join(missing)}",
        {"missing": list(missing)},
    )
