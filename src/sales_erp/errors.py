"""Domain error taxonomy for the sales backend.

Every failure that reaches the HTTP boundary or the CLI is one of the
:class:`AppError` subclasses defined here. The module also hosts the two
adapters that feed the taxonomy:

1. :func:`map_provider_error` translates failures raised by external
   providers (identity, key management, object storage, email) into the
   nearest domain kind.
2. :func:`error_envelope` renders any exception into the JSON envelope
   returned to HTTP clients.

Store-layer classification lives next to the store in :mod:`sales_erp.store`
because it needs to inspect SQLAlchemy exceptions.
"""

from __future__ import annotations

from typing import Any, Callable, Dict, Optional, Tuple

from . import log
from .constants import ResponseStatus


class AppError(Exception):
    """Base class for all classified failures.

    Subclasses only override ``default_message`` and ``status_code``. The
    instance keeps the message, the HTTP status and an optional JSON-friendly
    ``metadata`` payload describing the failure in more detail.
    """

    default_message = "Application error"
    status_code = 500

    def __init__(
        self,
        message: Optional[str] = None,
        metadata: Any = None,
        *,
        status_code: Optional[int] = None,
    ) -> None:
        self.message = message or self.default_message
        self.metadata = metadata
        if status_code is not None:
            self.status_code = status_code
        super().__init__(self.message)

    @property
    def kind(self) -> str:
        """Name of the error kind, used in logs and delivery warnings."""
        return type(self).__name__

    def __repr__(self) -> str:
        return f"{self.kind}(message={self.message!r}, status_code={self.status_code})"


class ValidationError(AppError):
    """Raised for malformed or semantically invalid input."""

    default_message = "Validation error"
    status_code = 400


class AuthError(AppError):
    """Raised when a credential or session is rejected."""

    default_message = "Authentication error"
    status_code = 401


class NotFoundError(AppError):
    """Raised when a referenced entity does not exist."""

    status_code = 404

    def __init__(self, entity: str = "Resource", metadata: Any = None) -> None:
        super().__init__(f"{entity} not found", metadata)


class DuplicateRecordError(AppError):
    """Raised when a unique constraint rejects a write."""

    default_message = "Duplicated record"
    status_code = 409


class ForeignKeyViolationError(AppError):
    """Raised when a write or delete would break referential integrity."""

    default_message = "Foreign key violation"
    status_code = 400


class DatabaseError(AppError):
    """Raised for store failures that are not otherwise classified."""

    default_message = "Database error"
    status_code = 500


class CacheError(AppError):
    """Raised for cache connectivity or payload failures."""

    default_message = "Cache error"
    status_code = 500


class ApplicationError(AppError):
    """Default kind for unclassified failures."""


# ---------------------------------------------------------------------------
# Provider failures
# ---------------------------------------------------------------------------

RATE_LIMIT_STATUS = 429

RATE_LIMITED_MESSAGE = "Too many requests, please try again later."

PROVIDER_FAILURES: Dict[str, Callable[[str], AppError]] = {
    "NotAuthorizedException": lambda detail: AuthError("Incorrect credentials or unauthorized."),
    "AccessDeniedException": lambda detail: AuthError("Access denied by provider.", detail),
    "UserNotFoundException": lambda detail: NotFoundError("User"),
    "NotFoundException": lambda detail: NotFoundError("Provider resource", detail),
    "NoSuchKey": lambda detail: NotFoundError("Object", detail),
    "NoSuchBucket": lambda detail: NotFoundError("Bucket", detail),
    "UsernameExistsException": lambda detail: DuplicateRecordError("User already exists.", detail),
    "InvalidParameterException": lambda detail: ValidationError(detail or None),
    "InvalidPasswordException": lambda detail: ValidationError(detail or None),
    "CodeMismatchException": lambda detail: ValidationError("Invalid code.", detail),
    "ExpiredCodeException": lambda detail: ValidationError("Expired code.", detail),
    "LimitExceededException": lambda detail: ApplicationError(
        RATE_LIMITED_MESSAGE, detail, status_code=RATE_LIMIT_STATUS
    ),
    "TooManyRequestsException": lambda detail: ApplicationError(
        RATE_LIMITED_MESSAGE, detail, status_code=RATE_LIMIT_STATUS
    ),
    "ThrottlingException": lambda detail: ApplicationError(
        RATE_LIMITED_MESSAGE, detail, status_code=RATE_LIMIT_STATUS
    ),
    "SlowDown": lambda detail: ApplicationError(
        RATE_LIMITED_MESSAGE, detail, status_code=RATE_LIMIT_STATUS
    ),
}


def failure_category(error: BaseException) -> str:
    """Return the category a provider reported for ``error``.

    Providers report their failure category in different places. An explicit
    ``category`` attribute wins, then the botocore-style
    ``response["Error"]["Code"]`` mapping, and finally the exception class name.

    Args:
        error (BaseException): Failure raised by a provider call.

    Returns:
        str: Category name such as ``"NotAuthorizedException"``.
    """

    category = getattr(error, "category", None)
    if isinstance(category, str) and category:
        return category

    response = getattr(error, "response", None)
    if isinstance(response, dict):
        code = response.get("Error", {}).get("Code")
        if isinstance(code, str) and code:
            return code

    return type(error).__name__


def map_provider_error(
    error: object,
    default_message: str = ApplicationError.default_message,
    default_status: int = ApplicationError.status_code,
) -> AppError:
    """Translate a provider failure into the domain taxonomy.

    Args:
        error (object): Whatever the provider raised or returned as a failure.
            Usually an exception, but plain values are accepted as well.
        default_message (str): Message used when the category is unknown.
        default_status (int): HTTP status used when the category is unknown.

    Returns:
        AppError: ``error`` itself when it is already classified, otherwise the
            nearest domain kind. Unrecognised failures become
            :class:`ApplicationError` carrying the original detail as metadata.
    """

    if isinstance(error, AppError):
        return error

    if not isinstance(error, BaseException):
        log.error("Provider reported a non-exception failure: %r", error)
        return ApplicationError(
            default_message,
            {"value": repr(error)},
            status_code=default_status,
        )

    category = failure_category(error)
    factory = PROVIDER_FAILURES.get(category)
    if factory is not None:
        mapped = factory(str(error))
        log.warning("Provider failure '%s' mapped to %s", category, mapped.kind)
        return mapped

    log.error("Unclassified provider failure '%s': %s", category, error)
    return ApplicationError(
        default_message,
        {"category": category, "detail": str(error)},
        status_code=default_status,
    )


# ---------------------------------------------------------------------------
# HTTP envelope
# ---------------------------------------------------------------------------

INTERNAL_ERROR_MESSAGE = "Internal Server Error"


def error_envelope(error: BaseException) -> Tuple[int, Dict[str, Any]]:
    """Render ``error`` into ``(status, body)`` for the HTTP boundary.

    Classified errors keep their status and message; ``metadata`` is only
    present when the error carries some. Anything else becomes an opaque 500
    so that internal details never leak to clients.
    """

    if isinstance(error, AppError):
        body: Dict[str, Any] = {
            "statusCode": error.status_code,
            "status": ResponseStatus.ERROR.value,
            "message": error.message,
        }
        if error.metadata is not None:
            body["metadata"] = error.metadata
        return error.status_code, body

    return 500, {
        "statusCode": 500,
        "status": ResponseStatus.ERROR.value,
        "message": INTERNAL_ERROR_MESSAGE,
    }


__all__ = [
    "AppError",
    "ValidationError",
    "AuthError",
    "NotFoundError",
    "DuplicateRecordError",
    "ForeignKeyViolationError",
    "DatabaseError",
    "CacheError",
    "ApplicationError",
    "PROVIDER_FAILURES",
    "RATE_LIMIT_STATUS",
    "RATE_LIMITED_MESSAGE",
    "failure_category",
    "map_provider_error",
    "error_envelope",
]
