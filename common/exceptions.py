from __future__ import annotations

import logging
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from typing import Any

from django.db import DatabaseError
from rest_framework import status
from rest_framework.exceptions import (
    APIException,
    AuthenticationFailed,
    MethodNotAllowed,
    NotAuthenticated,
    NotFound,
    NotAcceptable,
    ParseError,
    PermissionDenied,
    Throttled,
    UnsupportedMediaType,
    ValidationError,
)
from rest_framework.response import Response
from rest_framework.views import exception_handler as drf_exception_handler

logger = logging.getLogger(__name__)

GENERIC_SERVER_ERROR_MESSAGE = "An unexpected error occurred."

EXCEPTION_CODE_MAP: dict[type[Exception], str] = {
    ValidationError: "validation_error",
    NotAuthenticated: "not_authenticated",
    AuthenticationFailed: "authentication_failed",
    PermissionDenied: "permission_denied",
    NotFound: "not_found",
    MethodNotAllowed: "method_not_allowed",
    NotAcceptable: "not_acceptable",
    UnsupportedMediaType: "unsupported_media_type",
    ParseError: "parse_error",
    Throttled: "throttled",
}


class DomainError(Exception):
    """Business-rule failure raised by the ledger, payment and movement services.

    Services raise these before touching storage wherever possible; the API
    exception handler renders them with their stable ``code``.
    """

    code = "domain_error"
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "Request could not be processed."

    def __init__(self, message: str | None = None, errors: Any = None):
        self.message = message or self.default_message
        self.errors = errors
        super().__init__(self.message)


class LedgerValidationError(DomainError):
    code = "validation_error"
    default_message = "Validation failed."


class InvalidReference(DomainError):
    code = "invalid_reference"
    default_message = "A referenced record does not exist or is inactive."


class DuplicateDue(DomainError):
    code = "duplicate_due"
    status_code = status.HTTP_409_CONFLICT
    default_message = "A due already exists for this stock movement."


class InvalidAmount(DomainError):
    code = "invalid_amount"
    default_message = "Amount must be a positive number."


class ExceedsRemaining(DomainError):
    code = "exceeds_remaining"
    default_message = "Payment amount exceeds the remaining due amount."


class InvalidDueState(DomainError):
    code = "invalid_due_state"
    default_message = "The due is not in a state that allows this operation."


class AlreadyCancelled(DomainError):
    code = "already_cancelled"
    default_message = "The record is already cancelled."


class RecordNotFound(DomainError):
    code = "not_found"
    status_code = status.HTTP_404_NOT_FOUND
    default_message = "Record not found."


class InsufficientStock(DomainError):
    code = "insufficient_stock"
    default_message = "Insufficient stock."


class ConcurrentModification(DomainError):
    code = "concurrent_modification"
    status_code = status.HTTP_409_CONFLICT
    default_message = "The record was modified concurrently. Please retry."


class StorageError(DomainError):
    code = "storage_error"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_message = GENERIC_SERVER_ERROR_MESSAGE


@contextmanager
def storage_errors(operation: str) -> Iterator[None]:
    """Re-raise database failures inside the block as ``StorageError``.

    Wrap it around ``transaction.atomic()`` so the rollback has happened by the
    time the error is translated.
    """
    try:
        yield
    except DatabaseError as exc:
        logger.exception("Storage failure during %s", operation)
        raise StorageError() from exc


def build_error_envelope(
    *,
    code: str,
    message: str,
    errors: Any,
    status_code: int,
) -> dict[str, Any]:
    return {
        "success": False,
        "code": code,
        "message": message,
        "errors": errors,
        "status": status_code,
    }


def error_response(
    *,
    code: str,
    message: str,
    errors: Any = None,
    status_code: int = status.HTTP_400_BAD_REQUEST,
) -> Response:
    return Response(
        build_error_envelope(
            code=code,
            message=message,
            errors=errors,
            status_code=status_code,
        ),
        status=status_code,
    )


def domain_error_envelope(exc: DomainError) -> dict[str, Any]:
    return build_error_envelope(
        code=exc.code,
        message=exc.message,
        errors=exc.errors,
        status_code=exc.status_code,
    )


def custom_exception_handler(exc: Exception, context: dict[str, Any]) -> Response:
    view_name = context.get("view").__class__.__name__ if context.get("view") else "unknown"

    if isinstance(exc, DomainError):
        if exc.status_code >= 500:
            logger.error("Domain storage failure in %s: %s", view_name, exc.message)
        return Response(domain_error_envelope(exc), status=exc.status_code)

    response = drf_exception_handler(exc, context)

    if response is None:
        if isinstance(exc, DatabaseError):
            logger.exception("Database failure in %s", view_name)
            storage_error = StorageError()
            return Response(domain_error_envelope(storage_error), status=storage_error.status_code)
        logger.exception("Unhandled API exception in %s", view_name)
        return error_response(
            code="internal_server_error",
            message=GENERIC_SERVER_ERROR_MESSAGE,
            errors=None,
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        )

    status_code = response.status_code
    errors = _normalize_errors(response.data)
    message = _build_message(exc, response.data)
    code = _build_code(exc)

    response.data = build_error_envelope(
        code=code,
        message=message,
        errors=errors,
        status_code=status_code,
    )
    return response


def _build_code(exc: Exception) -> str:
    for exception_type, stable_code in EXCEPTION_CODE_MAP.items():
        if isinstance(exc, exception_type):
            return stable_code

    if isinstance(exc, APIException):
        return str(getattr(exc, "default_code", "api_error"))

    return "internal_server_error"


def _build_message(exc: Exception, data: Any) -> str:
    if isinstance(exc, ValidationError):
        return "Validation failed."

    detail = None
    if isinstance(data, Mapping):
        detail = data.get("detail")
    elif isinstance(data, str):
        detail = data

    if detail:
        return str(detail)

    if isinstance(exc, Throttled):
        return "Request was throttled."

    if isinstance(exc, APIException):
        return str(getattr(exc, "detail", "Request failed."))

    return GENERIC_SERVER_ERROR_MESSAGE


def _normalize_errors(data: Any) -> Any:
    if isinstance(data, Mapping):
        if set(data.keys()) == {"detail"}:
            return None
        return data

    if isinstance(data, Sequence) and not isinstance(data, str):
        return data

    return None
