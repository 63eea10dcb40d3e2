"""
Service errors and their HTTP rendering.

Every domain failure is a ServiceError with a stable ``code``. The handlers
registered by ``register_error_handlers`` turn them (and FastAPI's own
HTTP/validation errors) into the response envelope::

    {"success": false, "error": {"code": ..., "message": ..., "details": ...}}
"""
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from starlette.exceptions import HTTPException as StarletteHTTPException

from .logging import get_logger


log = get_logger(__name__)


class ServiceError(Exception):
    code = "INTERNAL_ERROR"
    status_code = 500
    message = "Internal server error"

    def __init__(self, message: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        self.message = message or self.message
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        err: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            err["details"] = self.details
        return err


# Validation

class ValidationError(ServiceError):
    code = "VALIDATION_ERROR"
    status_code = 422
    message = "Invalid input"

    @classmethod
    def for_fields(cls, fields: Dict[str, str], message: Optional[str] = None) -> "ValidationError":
        return cls(message or "Invalid fields: " + ", ".join(sorted(fields)), details={"fields": fields})


class InvalidCode(ServiceError):
    code = "INVALID_CODE"
    status_code = 400
    message = "Invalid verification code"


# Authorization

class Unauthorized(ServiceError):
    code = "UNAUTHORIZED"
    status_code = 401
    message = "Not authenticated"


class Forbidden(ServiceError):
    code = "FORBIDDEN"
    status_code = 403
    message = "Forbidden"


class RoleNotGranted(ServiceError):
    code = "ROLE_NOT_GRANTED"
    status_code = 403
    message = "Role is not granted to this user"


class NotAssignedExecutor(ServiceError):
    code = "NOT_ASSIGNED_EXECUTOR"
    status_code = 403
    message = "Order is not assigned to this executor"


class NotVerified(ServiceError):
    code = "NOT_VERIFIED"
    status_code = 403
    message = "Executor verification is pending"


# Resources

class NotFound(ServiceError):
    code = "NOT_FOUND"
    status_code = 404
    message = "Not found"


# State conflicts

class DuplicateAccount(ServiceError):
    code = "DUPLICATE_ACCOUNT"
    status_code = 409
    message = "Account already registered"


class AlreadyRegistered(ServiceError):
    code = "ALREADY_REGISTERED"
    status_code = 409
    message = "Role already granted"


class OrderAlreadyTaken(ServiceError):
    code = "ORDER_ALREADY_TAKEN"
    status_code = 409
    message = "Order has already been taken"


class InvalidOrderState(ServiceError):
    code = "INVALID_ORDER_STATE"
    status_code = 409
    message = "Operation is not allowed in the current order state"


class InvalidTransition(InvalidOrderState):
    pass


class AlreadyPaid(ServiceError):
    code = "ALREADY_PAID"
    status_code = 409
    message = "Order is already paid"


class NotOnDuty(ServiceError):
    code = "NOT_ON_DUTY"
    status_code = 409
    message = "Executor is not on duty"


class ActiveOrderExists(ServiceError):
    code = "ACTIVE_ORDER_EXISTS"
    status_code = 409
    message = "Executor already has an active order"


class TicketClosed(ServiceError):
    code = "TICKET_CLOSED"
    status_code = 409
    message = "Ticket is closed"


# Money

class InsufficientBalance(ServiceError):
    code = "INSUFFICIENT_BALANCE"
    status_code = 402
    message = "Balance is below the minimum required to work"


class InsufficientFunds(ServiceError):
    code = "INSUFFICIENT_FUNDS"
    status_code = 402
    message = "Not enough funds on balance"


# External collaborators

class GatewayError(ServiceError):
    code = "GATEWAY_ERROR"
    status_code = 502
    message = "Payment gateway is unavailable"


_HTTP_CODES = {
    400: "VALIDATION_ERROR",
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    429: "RATE_LIMITED",
}


def error_response(status_code: int, code: str, message: str, details: Optional[Dict[str, Any]] = None, headers=None) -> JSONResponse:
    error: Dict[str, Any] = {"code": code, "message": message}
    if details:
        error["details"] = details
    return JSONResponse(
        status_code=status_code,
        content=jsonable_encoder({"success": False, "error": error}),
        headers=headers,
    )


def _validation_fields(exc: RequestValidationError) -> Dict[str, str]:
    fields: Dict[str, str] = {}
    for err in exc.errors():
        loc = [str(p) for p in err.get("loc", ()) if p not in ("body", "query", "path")]
        fields[".".join(loc) or "body"] = err.get("msg", "invalid")
    return fields


def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(ServiceError)
    async def _service_error(request: Request, exc: ServiceError):
        log.info("service_error", code=exc.code, path=request.url.path, message=exc.message)
        return JSONResponse(status_code=exc.status_code, content=jsonable_encoder({"success": False, "error": exc.to_dict()}))

    @app.exception_handler(RequestValidationError)
    async def _request_validation(request: Request, exc: RequestValidationError):
        fields = _validation_fields(exc)
        return error_response(422, "VALIDATION_ERROR", "Invalid fields: " + ", ".join(sorted(fields)), {"fields": fields})

    @app.exception_handler(StarletteHTTPException)
    async def _http_error(request: Request, exc: StarletteHTTPException):
        code = _HTTP_CODES.get(exc.status_code, "HTTP_ERROR")
        return error_response(exc.status_code, code, str(exc.detail), headers=getattr(exc, "headers", None))

    # Sync: SlowAPIMiddleware calls this handler without awaiting it
    @app.exception_handler(RateLimitExceeded)
    def _rate_limited(request: Request, exc: RateLimitExceeded):
        return error_response(429, "RATE_LIMITED", f"Rate limit exceeded: {exc.detail}")

    @app.exception_handler(Exception)
    async def _unhandled(request: Request, exc: Exception):
        log.error("unhandled_exception", path=request.url.path, exc_info=exc)
        return error_response(500, "INTERNAL_ERROR", "Internal server error")


__all__ = [
    "ServiceError",
    "ValidationError",
    "InvalidCode",
    "Unauthorized",
    "Forbidden",
    "RoleNotGranted",
    "NotAssignedExecutor",
    "NotVerified",
    "NotFound",
    "DuplicateAccount",
    "AlreadyRegistered",
    "OrderAlreadyTaken",
    "InvalidOrderState",
    "InvalidTransition",
    "AlreadyPaid",
    "NotOnDuty",
    "ActiveOrderExists",
    "TicketClosed",
    "InsufficientBalance",
    "InsufficientFunds",
    "GatewayError",
    "register_error_handlers",
    "error_response",
]
