"""
Error taxonomy for the ordering API

Every failure a handler can produce is one of the classes below. The
exception handlers registered on the app turn them into the
``{"error": message}`` envelope the clients expect.
"""

import logging
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger("api")
config_logger = logging.getLogger("api.config")


class OrderingError(Exception):
    status_code = 500
    public_message: Optional[str] = None

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def body(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error": self.public_message or self.message}
        payload.update(self.details)
        return payload


class ValidationError(OrderingError):
    """Malformed or out-of-range input."""
    status_code = 400


class BusinessRuleViolation(OrderingError):
    """Empty cart, unavailable items, below minimum, closed, bad transition."""
    status_code = 400


class AuthorizationError(OrderingError):
    status_code = 401
    public_message = "Unauthorized"

    def __init__(self, message: str = "Unauthorized"):
        super().__init__(message)


class ForbiddenError(OrderingError):
    status_code = 403

    def __init__(self, message: str = "Forbidden"):
        super().__init__(message)


class NotFoundError(OrderingError):
    status_code = 404


class ConflictError(OrderingError):
    status_code = 409


class UpstreamFailure(OrderingError):
    """Database or payment gateway failure; detail stays in the logs."""
    status_code = 500

    def __init__(self, message: str, public_message: str = "Something went wrong, please try again"):
        super().__init__(message)
        self.public_message = public_message


class ConfigurationError(OrderingError):
    """A required credential or setting is missing on the server."""
    status_code = 500


async def ordering_error_handler(request: Request, exc: OrderingError) -> JSONResponse:
    if isinstance(exc, ConfigurationError):
        config_logger.error("configuration error on %s: %s", request.url.path, exc.message)
    elif isinstance(exc, UpstreamFailure):
        logger.error("upstream failure on %s: %s", request.url.path, exc.message)
    elif exc.status_code >= 500:
        logger.error("error on %s: %s", request.url.path, exc.message)
    return JSONResponse(exc.body(), status_code=exc.status_code)


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    messages = []
    for err in exc.errors():
        loc = ".".join(str(part) for part in err.get("loc", ()) if part != "body")
        messages.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return JSONResponse({"error": ", ".join(messages) or "Invalid request"}, status_code=400)


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse({"error": str(exc.detail)}, status_code=exc.status_code, headers=exc.headers)


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("unhandled error on %s", request.url.path)
    return JSONResponse({"error": "Internal server error"}, status_code=500)


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(OrderingError, ordering_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
