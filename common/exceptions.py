from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from typing import Any

from django.db import IntegrityError
from django.db.models import ProtectedError, RestrictedError
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


class TransientStoreError(APIException):
    """The database aborted a transaction: write conflict, lock timeout or lost connection.

    Raised by the reconciliation services once their bounded retries are exhausted,
    so nothing of the attempted operation has been applied.
    """

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    default_detail = "The operation conflicted with a concurrent update. Try again."
    default_code = "transient_store_error"


class WriteConflict(TransientStoreError):
    """Serialization failure, deadlock or lock timeout; the transaction can be retried as a whole."""


class Conflict(APIException):
    status_code = status.HTTP_409_CONFLICT
    default_detail = "The record is referenced by other records or violates a uniqueness rule."
    default_code = "conflict"


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
    TransientStoreError: "transient_store_error",
    Conflict: "conflict",
}


def build_error_envelope(
    *,
    code: str,
    message: str,
    errors: Any,
    status_code: int,
    request_id: str | None = None,
) -> dict[str, Any]:
    return {
        "code": code,
        "message": message,
        "errors": errors,
        "status": status_code,
        "request_id": request_id,
    }


def _request_id(context: dict[str, Any]) -> str | None:
    request = context.get("request")
    return getattr(request, "request_id", None) if request is not None else None


def custom_exception_handler(exc: Exception, context: dict[str, Any]) -> Response:
    # Integrity failures reach the handler when a storage-level rule
    # (unique phone, protected foreign key) rejects a write.
    if isinstance(exc, (ProtectedError, RestrictedError)):
        exc = Conflict("The record is still referenced by other records.")
    elif isinstance(exc, IntegrityError):
        logger.warning("integrity_error", extra={"request_id": _request_id(context)})
        exc = Conflict()

    response = drf_exception_handler(exc, context)
    request_id = _request_id(context)

    if response is None:
        view_name = context.get("view").__class__.__name__ if context.get("view") else "unknown"
        logger.exception("Unhandled API exception in %s", view_name, extra={"request_id": request_id})
        return Response(
            build_error_envelope(
                code="internal_server_error",
                message=GENERIC_SERVER_ERROR_MESSAGE,
                errors=None,
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                request_id=request_id,
            ),
            status=status.HTTP_500_INTERNAL_SERVER_ERROR,
        )

    if isinstance(exc, TransientStoreError):
        logger.warning("transient_store_error_surfaced", extra={"request_id": request_id})

    response.data = build_error_envelope(
        code=_build_code(exc),
        message=_build_message(exc, response.data),
        errors=_normalize_errors(response.data),
        status_code=response.status_code,
        request_id=request_id,
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
