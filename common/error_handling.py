"""
Standardized error responses and the allocation error taxonomy
"""
from decimal import Decimal
from typing import Optional, Dict, Any
from fastapi import HTTPException, Request
from fastapi.encoders import jsonable_encoder
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
    trace_id: Optional[str] = None
    request_id: Optional[str] = None

class ErrorCodes:
    """Standard error codes"""
    # Authentication
    UNAUTHORIZED = "UNAUTHORIZED"
    INVALID_TOKEN = "INVALID_TOKEN"

    # Validation
    VALIDATION_ERROR = "VALIDATION_ERROR"

    # Business Logic
    NOT_FOUND = "NOT_FOUND"
    CONSERVATION_VIOLATION = "CONSERVATION_VIOLATION"
    ALLOCATION_CONFLICT = "ALLOCATION_CONFLICT"

    # System Errors
    INTERNAL_SERVER_ERROR = "INTERNAL_SERVER_ERROR"
    DATABASE_ERROR = "DATABASE_ERROR"

class BusinessLogicError(Exception):
    """Custom exception for business logic errors"""
    code = ErrorCodes.VALIDATION_ERROR

    def __init__(self, message: str, field: str = None, context: Dict[str, Any] = None, code: str = None):
        if code is not None:
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
    """Malformed input, rejected before any transaction opens"""
    code = ErrorCodes.VALIDATION_ERROR

class NotFoundError(BusinessLogicError):
    code = ErrorCodes.NOT_FOUND

class ConflictError(BusinessLogicError):
    """An allocation with the same (payout request, user, flow) key already exists"""
    code = ErrorCodes.ALLOCATION_CONFLICT

class ConservationViolation(BusinessLogicError):
    """The proposed allocations would exceed the payout request total"""
    code = ErrorCodes.CONSERVATION_VIOLATION

    def __init__(self, overrun: Decimal, total_amount: Decimal, proposed_total: Decimal, payout_request_id: int = None):
        self.overrun = overrun
        self.total_amount = total_amount
        self.proposed_total = proposed_total
        self.payout_request_id = payout_request_id
        super().__init__(
            f"Allocated total {proposed_total} exceeds payout request total {total_amount} by {overrun}",
            field="allocated_amount",
            context={
                "payout_request_id": payout_request_id,
                "overrun": str(overrun),
                "total_amount": str(total_amount),
                "proposed_total": str(proposed_total),
            },
        )

class TransactionError(ServiceError):
    """Underlying datastore failure; the transaction has been rolled back"""
    def __init__(self, message: str, original_error: Exception = None):
        super().__init__(ErrorCodes.DATABASE_ERROR, message, original_error)

def require_id(value: Any, field: str) -> int:
    """Ids must be positive integers; anything else is rejected before storage is touched."""
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValidationError(f"{field} must be a positive integer", field=field)
    return value

def create_error_response(
    error_code: str,
    message: str,
    status_code: int = 500,
    field: str = None,
    context: Dict[str, Any] = None,
    trace_id: str = None,
    request_id: str = None
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
        request_id=request_id
    )

    return JSONResponse(
        status_code=status_code,
        content=jsonable_encoder(error_response.model_dump())
    )

def _request_ids(request: Request):
    return getattr(request.state, 'trace_id', None), getattr(request.state, 'request_id', None)

async def business_logic_exception_handler(request: Request, exc: BusinessLogicError):
    """Handle business logic exceptions"""

    status_code_map = {
        ErrorCodes.VALIDATION_ERROR: 400,
        ErrorCodes.CONSERVATION_VIOLATION: 400,
        ErrorCodes.NOT_FOUND: 404,
        ErrorCodes.ALLOCATION_CONFLICT: 409,
    }

    status_code = status_code_map.get(exc.code, 400)
    trace_id, request_id = _request_ids(request)

    logger.warning(f"Business logic error: {exc.code} - {exc.message}", extra={
        "error_code": exc.code,
        "trace_id": trace_id,
        "request_id": request_id,
        "field": exc.field,
        "context": exc.context
    })

    return create_error_response(
        error_code=exc.code,
        message=exc.message,
        status_code=status_code,
        field=exc.field,
        context=exc.context,
        trace_id=trace_id,
        request_id=request_id
    )

async def service_exception_handler(request: Request, exc: ServiceError):
    """Handle service-level exceptions"""

    status_code_map = {
        ErrorCodes.DATABASE_ERROR: 503,
    }

    status_code = status_code_map.get(exc.code, 500)
    trace_id, request_id = _request_ids(request)

    logger.error(f"Service error: {exc.code} - {exc.message}", extra={
        "error_code": exc.code,
        "trace_id": trace_id,
        "request_id": request_id,
        "original_error": str(exc.original_error) if exc.original_error else None
    })

    return create_error_response(
        error_code=exc.code,
        message=exc.message,
        status_code=status_code,
        trace_id=trace_id,
        request_id=request_id
    )

async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Handle request validation exceptions"""

    trace_id, request_id = _request_ids(request)

    first_error = exc.errors()[0]
    field = ".".join(str(loc) for loc in first_error.get("loc", []))
    message = first_error.get("msg", "Validation error")

    logger.warning(f"Validation error: {message} on field {field}", extra={
        "trace_id": trace_id,
        "request_id": request_id,
    })

    return create_error_response(
        error_code=ErrorCodes.VALIDATION_ERROR,
        message=f"Validation error on field '{field}': {message}",
        status_code=400,
        field=field,
        context={"validation_errors": jsonable_encoder(exc.errors(), custom_encoder={Exception: str})},
        trace_id=trace_id,
        request_id=request_id
    )

async def http_exception_handler(request: Request, exc: HTTPException):
    """Handle FastAPI HTTP exceptions"""

    trace_id, request_id = _request_ids(request)

    status_to_code = {
        401: ErrorCodes.UNAUTHORIZED,
        404: ErrorCodes.NOT_FOUND,
        500: ErrorCodes.INTERNAL_SERVER_ERROR,
    }

    error_code = status_to_code.get(exc.status_code, ErrorCodes.INTERNAL_SERVER_ERROR)

    logger.warning(f"HTTP exception: {exc.status_code} - {exc.detail}", extra={
        "status_code": exc.status_code,
        "trace_id": trace_id,
        "request_id": request_id
    })

    return create_error_response(
        error_code=error_code,
        message=str(exc.detail),
        status_code=exc.status_code,
        trace_id=trace_id,
        request_id=request_id
    )

async def general_exception_handler(request: Request, exc: Exception):
    """Handle unexpected exceptions"""

    trace_id, request_id = _request_ids(request)

    logger.error(f"Unexpected error: {str(exc)}", extra={
        "trace_id": trace_id,
        "request_id": request_id,
        "traceback": traceback.format_exc()
    })

    return create_error_response(
        error_code=ErrorCodes.INTERNAL_SERVER_ERROR,
        message="An unexpected error occurred. Please try again later.",
        status_code=500,
        trace_id=trace_id,
        request_id=request_id
    )

def add_error_handlers(app):
    """Add all error handlers to FastAPI app"""
    app.add_exception_handler(BusinessLogicError, business_logic_exception_handler)
    app.add_exception_handler(ServiceError, service_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)
