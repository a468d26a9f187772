"""
Error handling and sanitization middleware

Carrier errors frequently echo OAuth secrets, account numbers or raw vendor
payloads (DHL JSON, Canada Post and USPS XML). Anything that reaches this layer
unhandled is logged in full and answered with a generic message. A shipping
error that escapes a route keeps its error code and carrier so the storefront
can tell a carrier outage from a bug.
"""
import logging
import traceback
from typing import Union

from fastapi import Request, HTTPException
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from storefront.core.config import settings
from storefront.core.exceptions import (
    CarrierError,
    ShipmentNotFoundError,
    ShippingError,
)

logger = logging.getLogger(__name__)

GENERIC_ERROR_MESSAGE = "An internal error occurred. Please try again later."
CARRIER_ERROR_MESSAGE = "The shipping carrier could not complete the request."
MAX_CLIENT_MESSAGE_LENGTH = 200

# Substrings that mark a message as unsafe to return
SENSITIVE_PATTERNS = [
    # credentials and auth material sent to carriers
    "password",
    "secret",
    "token",
    "bearer",
    "basic ",
    "api_key",
    "key",
    "credential",
    "authorization",
    # billing identifiers
    "account",
    "pickup",
    "customer number",
    "contract",
    "userid",
    # raw vendor payloads
    "<?xml",
    "</",
    "{\"",
    # storage internals
    "sqlalchemy",
    "asyncpg",
    "postgresql",
    "shipment_history",
    "shipping_configs",
    "traceback",
    "file \"",
]


def is_sensitive_error(message: str) -> bool:
    """Check if error message contains sensitive information."""
    message_lower = message.lower()
    return any(pattern in message_lower for pattern in SENSITIVE_PATTERNS)


def sanitize_error_message(error: Union[str, Exception]) -> str:
    """
    Sanitize an error message for safe client exposure.

    Args:
        error: The error string or exception

    Returns:
        Sanitized error message safe for client
    """
    message = error if isinstance(error, str) else str(error)

    if settings.DEBUG:
        return message

    if is_sensitive_error(message):
        return GENERIC_ERROR_MESSAGE

    if len(message) > MAX_CLIENT_MESSAGE_LENGTH:
        return message[:MAX_CLIENT_MESSAGE_LENGTH] + "..."

    return message


def shipping_error_status(exc: ShippingError) -> int:
    if isinstance(exc, CarrierError):
        return 502
    if isinstance(exc, ShipmentNotFoundError):
        return 404
    return 400


class ErrorSanitizationMiddleware(BaseHTTPMiddleware):
    """
    Catch unhandled exceptions and sanitize error responses.

    Shipping errors answer with their code and carrier; anything else is a
    generic 500 outside DEBUG.
    """

    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except HTTPException:
            raise
        except ShippingError as e:
            logger.error(f"Unhandled shipping error on {request.method} {request.url.path}: {e.to_dict()}")
            status_code = shipping_error_status(e)
            message = CARRIER_ERROR_MESSAGE if status_code == 502 else sanitize_error_message(e.message)
            return JSONResponse(
                status_code=status_code,
                content={
                    "error": e.code,
                    "message": message,
                    "carrier": e.details.get("carrier"),
                },
            )
        except Exception as e:
            error_id = f"{request.client.host if request.client else 'unknown'}-{id(e)}"
            logger.error(
                f"Unhandled exception [{error_id}]: {type(e).__name__}: {str(e)}\n"
                f"Path: {request.url.path}\n"
                f"Method: {request.method}\n"
                f"Traceback:\n{traceback.format_exc()}"
            )

            if settings.DEBUG:
                return JSONResponse(
                    status_code=500,
                    content={
                        "error": "internal_error",
                        "message": str(e),
                        "type": type(e).__name__,
                        "error_id": error_id,
                    }
                )
            return JSONResponse(
                status_code=500,
                content={
                    "error": "internal_error",
                    "message": "An unexpected error occurred. Please try again later.",
                    "error_id": error_id,
                }
            )
