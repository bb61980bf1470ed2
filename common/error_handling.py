"""
Standardized error taxonomy and FastAPI error responses for the treasury service
"""
from typing import Optional, Dict, Any
from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse
from fastapi.encoders import jsonable_encoder
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

class ErrorCodes:
    """Standard error codes"""
    # Validation
    VALIDATION_ERROR = "VALIDATION_ERROR"
    INVALID_AMOUNT = "INVALID_AMOUNT"
    UNKNOWN_PLAN = "UNKNOWN_PLAN"
    MISSING_BANK_DETAILS = "MISSING_BANK_DETAILS"

    # Ledger
    INSUFFICIENT_BALANCE = "INSUFFICIENT_BALANCE"
    PAYOUT_IN_PROGRESS = "PAYOUT_IN_PROGRESS"
    LEDGER_INCONSISTENT = "LEDGER_INCONSISTENT"

    # System Errors
    INTERNAL_SERVER_ERROR = "INTERNAL_SERVER_ERROR"
    CIRCUIT_BREAKER_OPEN = "CIRCUIT_BREAKER_OPEN"

    # External Service Errors
    GATEWAY_FAILURE = "GATEWAY_FAILURE"
    TRANSFER_OUTCOME_UNKNOWN = "TRANSFER_OUTCOME_UNKNOWN"

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

class InvalidAmount(BusinessLogicError):
    def __init__(self, message: str, field: str = "amount", context: Dict[str, Any] = None):
        super().__init__(ErrorCodes.INVALID_AMOUNT, message, field=field, context=context)

class UnknownPlan(BusinessLogicError):
    def __init__(self, plan: str):
        super().__init__(ErrorCodes.UNKNOWN_PLAN, f"Unknown subscription plan: {plan}",
                         field="plan", context={"plan": plan})

class MissingBankDetails(BusinessLogicError):
    def __init__(self, message: str = "Account number and routing number are required"):
        super().__init__(ErrorCodes.MISSING_BANK_DETAILS, message)

class InsufficientBalance(BusinessLogicError):
    """Forced payout amount exceeds the pending balance"""
    def __init__(self, requested, available):
        super().__init__(
            ErrorCodes.INSUFFICIENT_BALANCE,
            f"Payout amount {requested} exceeds pending balance {available}",
            field="amount",
            context={"requested": str(requested), "available": str(available)},
        )

class PayoutAlreadyInProgress(BusinessLogicError):
    """Another payout attempt holds the balance"""
    def __init__(self, payout_id: str):
        super().__init__(
            ErrorCodes.PAYOUT_IN_PROGRESS,
            f"Payout {payout_id} is already in progress",
            context={"payout_id": payout_id},
        )
        self.payout_id = payout_id

class GatewayFailure(ServiceError):
    """Bank transfer failed or went unanswered; the payout record is attached as `payout`"""
    def __init__(self, message: str, payout=None, original_error: Exception = None,
                 code: str = ErrorCodes.GATEWAY_FAILURE):
        super().__init__(code, message, original_error)
        self.payout = payout

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
        content=jsonable_encoder(error_response.model_dump())
    )

async def business_logic_exception_handler(request: Request, exc: BusinessLogicError):
    """Handle business logic exceptions"""

    status_code_map = {
        ErrorCodes.INVALID_AMOUNT: 400,
        ErrorCodes.MISSING_BANK_DETAILS: 400,
        ErrorCodes.INSUFFICIENT_BALANCE: 400,
        ErrorCodes.UNKNOWN_PLAN: 404,
        ErrorCodes.PAYOUT_IN_PROGRESS: 409,
    }

    status_code = status_code_map.get(exc.code, 400)
    trace_id = getattr(request.state, 'trace_id', None)

    logger.warning(f"Business logic error: {exc.code} - {exc.message}", extra={
        "error_code": exc.code,
        "trace_id": trace_id,
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
    )

async def service_exception_handler(request: Request, exc: ServiceError):
    """Handle service-level exceptions"""

    status_code_map = {
        ErrorCodes.CIRCUIT_BREAKER_OPEN: 503,
        ErrorCodes.GATEWAY_FAILURE: 502,
        ErrorCodes.TRANSFER_OUTCOME_UNKNOWN: 504,
    }

    status_code = status_code_map.get(exc.code, 500)
    trace_id = getattr(request.state, 'trace_id', None)

    context = None
    payout = getattr(exc, "payout", None)
    if payout is not None:
        context = {"payout": payout.to_dict()}

    logger.error(f"Service error: {exc.code} - {exc.message}", extra={
        "error_code": exc.code,
        "trace_id": trace_id,
        "original_error": str(exc.original_error) if exc.original_error else None
    })

    return create_error_response(
        error_code=exc.code,
        message=exc.message,
        status_code=status_code,
        context=context,
        trace_id=trace_id,
    )

async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Handle validation exceptions"""

    trace_id = getattr(request.state, 'trace_id', None)

    # Extract first validation error
    first_error = exc.errors()[0]
    field = ".".join(str(loc) for loc in first_error.get("loc", []))
    message = first_error.get("msg", "Validation error")

    logger.warning(f"Validation error: {message} on field {field}", extra={
        "trace_id": trace_id,
    })

    return create_error_response(
        error_code=ErrorCodes.VALIDATION_ERROR,
        message=f"Validation error on field '{field}': {message}",
        status_code=400,
        field=field,
        trace_id=trace_id,
    )

async def http_exception_handler(request: Request, exc: HTTPException):
    """Handle FastAPI HTTP exceptions"""

    trace_id = getattr(request.state, 'trace_id', None)

    status_to_code = {
        400: ErrorCodes.VALIDATION_ERROR,
        500: ErrorCodes.INTERNAL_SERVER_ERROR,
    }

    error_code = status_to_code.get(exc.status_code, ErrorCodes.INTERNAL_SERVER_ERROR)

    logger.warning(f"HTTP exception: {exc.status_code} - {exc.detail}", extra={
        "status_code": exc.status_code,
        "trace_id": trace_id,
    })

    return create_error_response(
        error_code=error_code,
        message=str(exc.detail),
        status_code=exc.status_code,
        trace_id=trace_id,
    )

async def general_exception_handler(request: Request, exc: Exception):
    """Handle unexpected exceptions"""

    trace_id = getattr(request.state, 'trace_id', None)

    # Log full traceback for debugging
    logger.error(f"Unexpected error: {str(exc)}", extra={
        "trace_id": trace_id,
        "traceback": traceback.format_exc()
    })

    # Don't expose internal error details in production
    return create_error_response(
        error_code=ErrorCodes.INTERNAL_SERVER_ERROR,
        message="An unexpected error occurred. Please try again later.",
        status_code=500,
        trace_id=trace_id,
    )

def add_error_handlers(app):
    """Add all error handlers to FastAPI app"""
    app.add_exception_handler(BusinessLogicError, business_logic_exception_handler)
    app.add_exception_handler(ServiceError, service_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)
