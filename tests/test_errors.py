"""Unit tests for the error taxonomy, provider mapping and HTTP envelope."""

from __future__ import annotations

import pytest

from sales_erp import errors

from doubles import ProviderFailure


# ---------------------------------------------------------------------------
# Taxonomy
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    ("error_type", "status", "message"),
    [
        (errors.ValidationError, 400, "Validation error"),
        (errors.AuthError, 401, "Authentication error"),
        (errors.DuplicateRecordError, 409, "Duplicated record"),
        (errors.ForeignKeyViolationError, 400, "Foreign key violation"),
        (errors.DatabaseError, 500, "Database error"),
        (errors.CacheError, 500, "Cache error"),
        (errors.ApplicationError, 500, "Application error"),
    ],
)
def test_error_kinds_carry_default_message_and_status(error_type, status, message):
    """Each kind should expose its HTTP status and default message."""

    error = error_type()
    assert error.status_code == status
    assert error.message == message
    assert error.metadata is None
    assert isinstance(error, errors.AppError)


def test_not_found_names_the_entity():
    """NotFoundError should build its message from the entity label."""

    error = errors.NotFoundError("Customer", {"customer_id": 9})
    assert error.status_code == 404
    assert error.message == "Customer not found"
    assert error.metadata == {"customer_id": 9}


def test_status_override_does_not_leak_to_class():
    """Overriding the status on one instance should leave the class default intact."""

    throttled = errors.ApplicationError("slow down", status_code=429)
    assert throttled.status_code == 429
    assert errors.ApplicationError().status_code == 500


# ---------------------------------------------------------------------------
# Provider mapping
# ---------------------------------------------------------------------------


def test_map_provider_error_passes_domain_errors_through():
    """Already classified errors should be returned unchanged."""

    original = errors.NotFoundError("Product")
    assert errors.map_provider_error(original, "ignored") is original


def test_map_provider_error_rejected_credentials_become_auth():
    """A NotAuthorizedException category should map to AuthError."""

    mapped = errors.map_provider_error(ProviderFailure("NotAuthorizedException"), "Authentication failed", 401)
    assert isinstance(mapped, errors.AuthError)
    assert mapped.status_code == 401


def test_map_provider_error_rate_limit_is_application_429():
    """Throttling should become an Application error annotated with 429."""

    mapped = errors.map_provider_error(ProviderFailure("TooManyRequestsException", "slow down"))
    assert type(mapped) is errors.ApplicationError
    assert mapped.status_code == 429
    assert mapped.metadata == "slow down"


@pytest.mark.parametrize(
    ("category", "expected"),
    [
        ("UserNotFoundException", errors.NotFoundError),
        ("UsernameExistsException", errors.DuplicateRecordError),
        ("InvalidPasswordException", errors.ValidationError),
        ("CodeMismatchException", errors.ValidationError),
        ("ExpiredCodeException", errors.ValidationError),
    ],
)
def test_map_provider_error_known_categories(category, expected):
    """Known provider categories should map to their nearest domain kind."""

    assert isinstance(errors.map_provider_error(ProviderFailure(category)), expected)


def test_map_provider_error_reads_botocore_style_code():
    """The category should be read from ``response['Error']['Code']`` when present."""

    class ClientError(Exception):
        def __init__(self) -> None:
            super().__init__("bucket missing")
            self.response = {"Error": {"Code": "NoSuchBucket", "Message": "bucket missing"}}

    mapped = errors.map_provider_error(ClientError())
    assert isinstance(mapped, errors.NotFoundError)


def test_map_provider_error_falls_back_to_class_name():
    """Without an explicit category the exception class name should be used."""

    class ThrottlingException(Exception):
        pass

    mapped = errors.map_provider_error(ThrottlingException("rate"))
    assert mapped.status_code == 429


def test_map_provider_error_unknown_category_uses_defaults():
    """Unrecognised failures should become Application errors with detail metadata."""

    mapped = errors.map_provider_error(RuntimeError("boom"), "Error uploading receipt", 502)
    assert type(mapped) is errors.ApplicationError
    assert mapped.message == "Error uploading receipt"
    assert mapped.status_code == 502
    assert mapped.metadata == {"category": "RuntimeError", "detail": "boom"}


def test_map_provider_error_wraps_non_exception_values():
    """Plain failure values should be captured as metadata instead of lost."""

    mapped = errors.map_provider_error("quota exhausted", "Provider failed")
    assert type(mapped) is errors.ApplicationError
    assert mapped.message == "Provider failed"
    assert mapped.metadata == {"value": "'quota exhausted'"}


# ---------------------------------------------------------------------------
# Envelope
# ---------------------------------------------------------------------------


def test_error_envelope_includes_metadata_only_when_present():
    """Metadata should appear in the envelope only when the error carries some."""

    status, body = errors.error_envelope(errors.DuplicateRecordError())
    assert status == 409
    assert body == {"statusCode": 409, "status": "ERROR", "message": "Duplicated record"}

    status, body = errors.error_envelope(errors.ValidationError("bad", {"field": "price"}))
    assert status == 400
    assert body["metadata"] == {"field": "price"}


def test_error_envelope_hides_unclassified_errors():
    """Unknown exceptions should render as an opaque 500 without metadata."""

    status, body = errors.error_envelope(KeyError("secret internals"))
    assert status == 500
    assert body == {"statusCode": 500, "status": "ERROR", "message": "Internal Server Error"}
