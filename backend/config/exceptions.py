import logging

from rest_framework import exceptions
from rest_framework.response import Response
from rest_framework.views import exception_handler

from tickets.errors import DomainError, ErrorCode

logger = logging.getLogger(__name__)


def _first_message(detail) -> str:
    if isinstance(detail, dict):
        for value in detail.values():
            return _first_message(value)
        return ""
    if isinstance(detail, list):
        return _first_message(detail[0]) if detail else ""
    return str(detail)


def api_exception_handler(exc, context):
    if isinstance(exc, DomainError):
        if exc.status_code >= 500:
            logger.error("Domain error in %s: %s", context.get("view").__class__.__name__, exc)
        return Response(
            {"error": exc.message, "code": exc.code.value},
            status=exc.status_code,
        )

    response = exception_handler(exc, context)
    if response is not None and isinstance(exc, exceptions.ValidationError):
        response.data = {
            "error": _first_message(exc.detail),
            "code": ErrorCode.VALIDATION.value,
            "fields": exc.detail,
        }
    return response
