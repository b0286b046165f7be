import logging

from rest_framework import status
from rest_framework.views import exception_handler as drf_exception_handler

from donations.api.responses import api_response
from donations.domain.exceptions import ConflictError, DomainError, NotFoundError

logger = logging.getLogger(__name__)

STATUS_MESSAGES = {
    status.HTTP_400_BAD_REQUEST: "Bad request.",
    status.HTTP_404_NOT_FOUND: "Resource not found.",
    status.HTTP_405_METHOD_NOT_ALLOWED: "Method not allowed.",
    status.HTTP_409_CONFLICT: "Request conflicts with current state.",
    status.HTTP_415_UNSUPPORTED_MEDIA_TYPE: "Unsupported media type.",
    status.HTTP_429_TOO_MANY_REQUESTS: "Too many requests.",
}


def _message_for_status(status_code):
    if status_code >= 500:
        return "Internal server error."
    return STATUS_MESSAGES.get(status_code, "Request failed.")


def _domain_status(exc):
    if isinstance(exc, NotFoundError):
        return status.HTTP_404_NOT_FOUND
    if isinstance(exc, ConflictError):
        return status.HTTP_409_CONFLICT
    return status.HTTP_400_BAD_REQUEST


def custom_exception_handler(exc, context):
    """Render every API error inside the standard response envelope."""
    if isinstance(exc, DomainError):
        status_code = _domain_status(exc)
        return api_response(
            detail=str(exc),
            message=_message_for_status(status_code),
            status_code=status_code,
            data=None,
        )

    response = drf_exception_handler(exc, context)
    if response is None:
        view = context.get("view")
        logger.exception(
            "event=api_unhandled_exception view=%s error=%s",
            type(view).__name__ if view is not None else None,
            type(exc).__name__,
        )
        return api_response(
            detail="An unexpected error occurred.",
            message=_message_for_status(status.HTTP_500_INTERNAL_SERVER_ERROR),
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            data=None,
        )

    detail = response.data
    if isinstance(detail, dict) and list(detail) == ["detail"]:
        detail = detail["detail"]
    return api_response(
        detail=detail,
        message=_message_for_status(response.status_code),
        status_code=response.status_code,
        data=None,
    )
