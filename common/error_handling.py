"""
Typed error taxonomy and standardized error responses

Every failure the service can surface is a LoyaltyError subclass carrying an
ErrorCode. The HTTP layer maps codes to status codes; it never inspects
message text.
"""
from decimal import Decimal
from enum import Enum
from typing import Optional, Dict, Any
from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder
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
    trace_id: Optional[str] = None

class ErrorCode(str, Enum):
    # Authentication
    UNAUTHORIZED = "UNAUTHORIZED"
    INVALID_CREDENTIALS = "INVALID_CREDENTIALS"

    # Validation
    VALIDATION_ERROR = "VALIDATION_ERROR"
    INVALID_ORDER_NUMBER = "INVALID_ORDER_NUMBER"

    # Business Logic
    ORDER_CONFLICT = "ORDER_CONFLICT"
    LOGIN_TAKEN = "LOGIN_TAKEN"
    INSUFFICIENT_FUNDS = "INSUFFICIENT_FUNDS"
    NOT_FOUND = "NOT_FOUND"

    # System Errors
    INTERNAL_SERVER_ERROR = "INTERNAL_SERVER_ERROR"
    DATABASE_ERROR = "DATABASE_ERROR"

    # External Service Errors
    ORACLE_UNAVAILABLE = "ORACLE_UNAVAILABLE"

STATUS_CODE_MAP = {
    ErrorCode.UNAUTHORIZED: 401,
    ErrorCode.INVALID_CREDENTIALS: 401,
    ErrorCode.VALIDATION_ERROR: 400,
    ErrorCode.INVALID_ORDER_NUMBER: 422,
    ErrorCode.ORDER_CONFLICT: 409,
    ErrorCode.LOGIN_TAKEN: 409,
    ErrorCode.INSUFFICIENT_FUNDS: 402,
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.DATABASE_ERROR: 500,
    ErrorCode.INTERNAL_SERVER_ERROR: 500,
    ErrorCode.ORACLE_UNAVAILABLE: 502,
}

class LoyaltyError(Exception):
    """Base class for every error the service raises on purpose"""
    code: ErrorCode = ErrorCode.INTERNAL_SERVER_ERROR

    def __init__(self, message: str, field: str = None, context: Dict[str, Any] = None):
        self.message = message
        self.field = field
        self.context = context or {}
        super().__init__(message)

    @property
    def status_code(self) -> int:
        return STATUS_CODE_MAP.get(self.code, 500)

class ValidationFailed(LoyaltyError):
    code = ErrorCode.VALIDATION_ERROR

class InvalidOrderNumberError(LoyaltyError):
    code = ErrorCode.INVALID_ORDER_NUMBER

    def __init__(self, number: str, message: str = "invalid order number"):
        super().__init__(message, field="order", context={"number": number})
        self.number = number

class OrderNumberFormatError(InvalidOrderNumberError):
    """Order number is empty or contains something other than ASCII digits"""

    def __init__(self, number: str):
        super().__init__(number, message="order number must be a non-empty string of digits")

class OrderConflictError(LoyaltyError):
    code = ErrorCode.ORDER_CONFLICT

    def __init__(self, order_id: str, owner_id: Optional[int]):
        super().__init__(
            f"order number {order_id} has already been used",
            field="order",
            context={"order": order_id},
        )
        self.order_id = order_id
        # kept off the response context: owners are not disclosed to other users
        self.owner_id = owner_id

class LoginTakenError(LoyaltyError):
    code = ErrorCode.LOGIN_TAKEN

    def __init__(self, login: str):
        super().__init__(f"login {login!r} is already taken", field="login")
        self.login = login

class InvalidCredentialsError(LoyaltyError):
    code = ErrorCode.INVALID_CREDENTIALS

    def __init__(self):
        super().__init__("invalid login or password")

class UnauthorizedError(LoyaltyError):
    code = ErrorCode.UNAUTHORIZED

class InsufficientFundsError(LoyaltyError):
    code = ErrorCode.INSUFFICIENT_FUNDS

    def __init__(self, owner_id: int, required: Decimal, available: Decimal):
        super().__init__(
            "insufficient funds",
            field="sum",
            context={"required": str(required), "available": str(available)},
        )
        self.owner_id = owner_id
        self.required = required
        self.available = available

class NotFoundError(LoyaltyError):
    code = ErrorCode.NOT_FOUND

class StorageError(LoyaltyError):
    """Connection or transaction failure in the storage layer"""
    code = ErrorCode.DATABASE_ERROR

    def __init__(self, message: str, original_error: Exception = None):
        super().__init__(message)
        self.original_error = original_error

class TransientOracleError(LoyaltyError):
    """Accrual oracle failed for this order; try again on a later tick"""
    code = ErrorCode.ORACLE_UNAVAILABLE

    def __init__(self, order_id: str, message: str, original_error: Exception = None):
        super().__init__(f"accrual lookup for order {order_id} failed: {message}", context={"order": order_id})
        self.order_id = order_id
        self.original_error = original_error

class OracleRateLimitedError(TransientOracleError):
    def __init__(self, order_id: str, retry_after: Optional[float]):
        super().__init__(order_id, "rate limited by accrual system")
        self.retry_after = retry_after

def create_error_response(
    error_code: str,
    message: str,
    status_code: int = 500,
    field: str = None,
    context: Dict[str, Any] = None,
    trace_id: str = None,
) -> JSONResponse:
    """Create standardized error response"""

    error_detail = ErrorDetail(
        code=error_code,
        message=message,
        field=field,
        context=context
    )

    error_response = StandardErrorResponse(
        error=error_detail,
        timestamp=time.time(),
        trace_id=trace_id,
    )

    return JSONResponse(
        status_code=status_code,
        content=jsonable_encoder(error_response)
    )

async def loyalty_exception_handler(request: Request, exc: LoyaltyError):
    """Handle every typed service error"""

    trace_id = getattr(request.state, 'trace_id', None)
    status_code = exc.status_code

    if status_code >= 500:
        logger.error(f"Service error: {exc.code.value} - {exc.message}", extra={
            "error_code": exc.code.value,
            "trace_id": trace_id,
            "original_error": str(getattr(exc, "original_error", None) or ""),
        })
        # internals stay in the log
        message = "An unexpected error occurred. Please try again later."
        context = None
    else:
        logger.warning(f"Business logic error: {exc.code.value} - {exc.message}", extra={
            "error_code": exc.code.value,
            "trace_id": trace_id,
            "field": exc.field,
        })
        message = exc.message
        context = exc.context or None

    return create_error_response(
        error_code=exc.code.value,
        message=message,
        status_code=status_code,
        field=exc.field,
        context=context,
        trace_id=trace_id,
    )

async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Handle validation exceptions"""

    trace_id = getattr(request.state, 'trace_id', None)

    # Extract first validation error
    errors = exc.errors()
    first_error = errors[0] if errors else {}
    field = ".".join(str(loc) for loc in first_error.get("loc", []))
    message = first_error.get("msg", "Validation error")

    logger.warning(f"Validation error: {message} on field {field}", extra={
        "trace_id": trace_id,
    })

    return create_error_response(
        error_code=ErrorCode.VALIDATION_ERROR.value,
        message=f"Validation error on field '{field}': {message}",
        status_code=400,
        field=field,
        trace_id=trace_id,
    )

async def http_exception_handler(request: Request, exc: HTTPException):
    """Handle FastAPI HTTP exceptions"""

    trace_id = getattr(request.state, 'trace_id', None)

    status_to_code = {
        400: ErrorCode.VALIDATION_ERROR,
        401: ErrorCode.UNAUTHORIZED,
        404: ErrorCode.NOT_FOUND,
    }

    error_code = status_to_code.get(exc.status_code, ErrorCode.INTERNAL_SERVER_ERROR)

    logger.warning(f"HTTP exception: {exc.status_code} - {exc.detail}", extra={
        "status_code": exc.status_code,
        "trace_id": trace_id,
    })

    return create_error_response(
        error_code=error_code.value,
        message=str(exc.detail),
        status_code=exc.status_code,
        trace_id=trace_id,
    )

async def general_exception_handler(request: Request, exc: Exception):
    """Handle unexpected exceptions"""

    trace_id = getattr(request.state, 'trace_id', None)

    logger.error(f"Unexpected error: {str(exc)}", extra={
        "trace_id": trace_id,
        "traceback": traceback.format_exc()
    })

    return create_error_response(
        error_code=ErrorCode.INTERNAL_SERVER_ERROR.value,
        message="An unexpected error occurred. Please try again later.",
        status_code=500,
        trace_id=trace_id,
    )

def add_error_handlers(app):
    """Add all error handlers to FastAPI app"""
    app.add_exception_handler(LoyaltyError, loyalty_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)
