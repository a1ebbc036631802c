"""
Error taxonomy for the points ledger and standardized error responses
"""
from typing import Optional, Dict, Any
from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from pydantic import BaseModel
import logging
import traceback
import time

logger = logging.getLogger(__name__)

class ErrorDetail(BaseModel):
    """Detailed error information"""
    code: str
    message: str
    field: Optional[str] = None
    context: Optional[Dict[str, Any]] = None

class StandardErrorResponse(BaseModel):
    """Standard error response format"""
    success: bool = False
    error: ErrorDetail
    timestamp: float
    request_id: Optional[str] = None

class ErrorCodes:
    """Standard error codes"""
    # Authentication & Authorization
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"
    INVALID_TOKEN = "INVALID_TOKEN"

    # Validation
    VALIDATION_ERROR = "VALIDATION_ERROR"
    INVALID_NONCE = "INVALID_NONCE"

    # Intake
    REPLAY_DETECTED = "REPLAY_DETECTED"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"

    # Ledger & redemption
    INSUFFICIENT_POINTS = "INSUFFICIENT_POINTS"
    REDEMPTION_LIMIT_REACHED = "REDEMPTION_LIMIT_REACHED"
    ACCOUNT_NOT_FOUND = "ACCOUNT_NOT_FOUND"
    EVENT_NOT_FOUND = "EVENT_NOT_FOUND"
    TEMPLATE_NOT_FOUND = "TEMPLATE_NOT_FOUND"
    COUPON_NOT_FOUND = "COUPON_NOT_FOUND"
    INSIGHT_NOT_FOUND = "INSIGHT_NOT_FOUND"
    EVENT_IMMUTABLE = "EVENT_IMMUTABLE"
    COUPON_NOT_REDEEMABLE = "COUPON_NOT_REDEEMABLE"

    # System Errors
    INTERNAL_SERVER_ERROR = "INTERNAL_SERVER_ERROR"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
    DATABASE_ERROR = "DATABASE_ERROR"
    CONCURRENCY_CONFLICT = "CONCURRENCY_CONFLICT"

class BusinessLogicError(Exception):
    """Custom exception for business logic errors"""
    def __init__(self, code: str, message: str, field: str = None, context: Dict[str, Any] = None):
        self.code = code
        self.message = message
        self.field = field
        self.context = context or {}
        super().__init__(message)

class ServiceError(Exception):
    """Custom exception for service-level errors"""
    def __init__(self, code: str, message: str, original_error: Exception = None):
        self.code = code
        self.message = message
        self.original_error = original_error
        super().__init__(message)


class ValidationError(BusinessLogicError):
    def __init__(self, message: str, field: str = None, context: Dict[str, Any] = None):
        super().__init__(ErrorCodes.VALIDATION_ERROR, message, field, context)

class InvalidNonce(BusinessLogicError):
    def __init__(self, message: str = "Invalid or expired nonce"):
        super().__init__(ErrorCodes.INVALID_NONCE, message, field="nonce")

class ReplayDetected(BusinessLogicError):
    def __init__(self, message: str = "Nonce already used (replay attempt detected)"):
        super().__init__(ErrorCodes.REPLAY_DETECTED, message, field="nonce")

class RateLimitExceeded(BusinessLogicError):
    def __init__(self, message: str, context: Dict[str, Any] = None):
        super().__init__(ErrorCodes.RATE_LIMIT_EXCEEDED, message, context=context)

class InsufficientPoints(BusinessLogicError):
    def __init__(self, available: int = 0, required: int = 0):
        super().__init__(
            ErrorCodes.INSUFFICIENT_POINTS,
            "Insufficient points",
            context={"available": available, "required": required},
        )

class NotFound(BusinessLogicError):
    def __init__(self, code: str, message: str):
        super().__init__(code, message)

class EventImmutable(BusinessLogicError):
    def __init__(self, event_id: str, status: str):
        super().__init__(
            ErrorCodes.EVENT_IMMUTABLE,
            f"Event {event_id} is already {status}",
            context={"event_id": event_id, "status": status},
        )

class ConcurrencyConflict(ServiceError):
    def __init__(self, message: str = "Concurrent update detected, please retry", original_error: Exception = None):
        super().__init__(ErrorCodes.CONCURRENCY_CONFLICT, message, original_error)

class StorageFailure(ServiceError):
    def __init__(self, message: str = "Storage failure, transaction rolled back", original_error: Exception = None):
        super().__init__(ErrorCodes.DATABASE_ERROR, message, original_error)


BUSINESS_STATUS_CODES = {
    ErrorCodes.VALIDATION_ERROR: 400,
    ErrorCodes.INVALID_NONCE: 400,
    ErrorCodes.INSUFFICIENT_POINTS: 400,
    ErrorCodes.REPLAY_DETECTED: 409,
    ErrorCodes.EVENT_IMMUTABLE: 409,
    ErrorCodes.COUPON_NOT_REDEEMABLE: 409,
    ErrorCodes.REDEMPTION_LIMIT_REACHED: 403,
    ErrorCodes.ACCOUNT_NOT_FOUND: 404,
    ErrorCodes.EVENT_NOT_FOUND: 404,
    ErrorCodes.TEMPLATE_NOT_FOUND: 404,
    ErrorCodes.COUPON_NOT_FOUND: 404,
    ErrorCodes.INSIGHT_NOT_FOUND: 404,
    ErrorCodes.RATE_LIMIT_EXCEEDED: 429,
}

SERVICE_STATUS_CODES = {
    ErrorCodes.CONCURRENCY_CONFLICT: 409,
    ErrorCodes.DATABASE_ERROR: 503,
    ErrorCodes.SERVICE_UNAVAILABLE: 503,
}

def create_error_response(
    error_code: str,
    message: str,
    status_code: int = 500,
    field: str = None,
    context: Dict[str, Any] = None,
    request_id: str = None
) -> JSONResponse:
    """Create standardized error response"""
    error_response = StandardErrorResponse(
        error=ErrorDetail(code=error_code, message=message, field=field, context=context),
        timestamp=time.time(),
        request_id=request_id
    )
    return JSONResponse(status_code=status_code, content=error_response.model_dump())

async def business_logic_exception_handler(request: Request, exc: BusinessLogicError):
    """Handle business logic exceptions"""
    status_code = BUSINESS_STATUS_CODES.get(exc.code, 400)
    request_id = getattr(request.state, 'request_id', None)

    logger.warning(f"Business logic error: {exc.code} - {exc.message}", extra={
        "error_code": exc.code,
        "request_id": request_id,
        "field": exc.field,
    })

    return create_error_response(
        error_code=exc.code,
        message=exc.message,
        status_code=status_code,
        field=exc.field,
        context=exc.context,
        request_id=request_id
    )

async def service_exception_handler(request: Request, exc: ServiceError):
    """Handle service-level exceptions"""
    status_code = SERVICE_STATUS_CODES.get(exc.code, 500)
    request_id = getattr(request.state, 'request_id', None)

    logger.error(f"Service error: {exc.code} - {exc.message}", extra={
        "error_code": exc.code,
        "request_id": request_id,
        "original_error": str(exc.original_error) if exc.original_error else None
    })

    return create_error_response(
        error_code=exc.code,
        message=exc.message,
        status_code=status_code,
        context={"retryable": exc.code == ErrorCodes.CONCURRENCY_CONFLICT},
        request_id=request_id
    )

async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Handle request body validation exceptions"""
    first_error = exc.errors()[0]
    field = ".".join(str(loc) for loc in first_error.get("loc", []))
    message = first_error.get("msg", "Validation error")

    logger.warning(f"Validation error: {message} on field {field}")

    return create_error_response(
        error_code=ErrorCodes.VALIDATION_ERROR,
        message=f"Validation error on field '{field}': {message}",
        status_code=400,
        field=field,
        request_id=getattr(request.state, 'request_id', None)
    )

async def http_exception_handler(request: Request, exc: HTTPException):
    """Handle FastAPI HTTP exceptions"""
    status_to_code = {
        401: ErrorCodes.UNAUTHORIZED,
        403: ErrorCodes.FORBIDDEN,
        429: ErrorCodes.RATE_LIMIT_EXCEEDED,
        503: ErrorCodes.SERVICE_UNAVAILABLE,
    }
    error_code = status_to_code.get(exc.status_code, ErrorCodes.INTERNAL_SERVER_ERROR)

    logger.warning(f"HTTP exception: {exc.status_code} - {exc.detail}")

    return create_error_response(
        error_code=error_code,
        message=str(exc.detail),
        status_code=exc.status_code,
        request_id=getattr(request.state, 'request_id', None)
    )

async def general_exception_handler(request: Request, exc: Exception):
    """Handle unexpected exceptions"""
    logger.error(f"Unexpected error: {str(exc)}", extra={"traceback": traceback.format_exc()})

    # Don't expose internal error details
    return create_error_response(
        error_code=ErrorCodes.INTERNAL_SERVER_ERROR,
        message="An unexpected error occurred. Please try again later.",
        status_code=500,
        request_id=getattr(request.state, 'request_id', None)
    )

def add_error_handlers(app):
    """Add all error handlers to FastAPI app"""
    app.add_exception_handler(BusinessLogicError, business_logic_exception_handler)
    app.add_exception_handler(ServiceError, service_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)
