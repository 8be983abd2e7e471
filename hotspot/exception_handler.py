"""
Custom DRF exception handler so the captive portal always gets

    {"success": false, "error": "...", "errors": {...}?}

whatever went wrong.
"""

import logging

from rest_framework import status
from rest_framework.response import Response
from rest_framework.views import exception_handler as drf_exception_handler

logger = logging.getLogger(__name__)


def _flatten(errors, prefix=""):
    messages = []
    if isinstance(errors, dict):
        for field, value in errors.items():
            name = f"{prefix}.{field}" if prefix else str(field)
            messages.extend(_flatten(value, name))
    elif isinstance(errors, list):
        for value in errors:
            messages.extend(_flatten(value, prefix))
    else:
        messages.append(f"{prefix}: {errors}" if prefix else str(errors))
    return messages


def custom_exception_handler(exc, context):
    response = drf_exception_handler(exc, context)

    if response is None:
        # Not an API exception: log it and still answer in the usual shape
        view = context.get("view")
        logger.exception(
            f"Unhandled error in {view.__class__.__name__ if view else 'API view'}: {exc}"
        )
        return Response(
            {"success": False, "error": "Internal server error"},
            status=status.HTTP_500_INTERNAL_SERVER_ERROR,
        )

    data = response.data

    # Our own views already answer {"success": false, ...}
    if isinstance(data, dict) and data.get("success") is False:
        data.setdefault("error", data.pop("message", "An error occurred"))
        return response

    # NotFound, PermissionDenied, Throttled... carry a single "detail"
    if isinstance(data, dict) and set(data) == {"detail"}:
        response.data = {"success": False, "error": str(data["detail"])}
        return response

    # Serializer validation errors, keyed by field
    messages = _flatten(data)
    response.data = {
        "success": False,
        "error": "; ".join(messages) if messages else "Validation error",
    }
    if isinstance(data, dict):
        response.data["errors"] = data
    return response
