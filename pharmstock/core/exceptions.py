from typing import Dict, Any, Optional
from fastapi import status
from pydantic import BaseModel
import logging

logger = logging.getLogger(__name__)


class BaseCustomException(Exception):
    """Base class for custom exceptions"""

    def __init__(
        self,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: Optional[Dict[str, Any]] = None,
        error_code: Optional[str] = None
    ):
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        self.error_code = error_code
        super().__init__(self.message)


class ValidationError(BaseCustomException):
    """Exception for validation errors"""

    def __init__(
        self,
        message: str = "Validation failed",
        details: Optional[Dict[str, Any]] = None,
        error_code: Optional[str] = None
    ):
        super().__init__(
            message=message,
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            details=details,
            error_code=error_code or "VALIDATION_ERROR"
        )


class MissingReasonError(ValidationError):
    """A rejection was attempted without a reason"""

    def __init__(
        self,
        message: str = "A reason is required",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, details=details, error_code="MISSING_REASON")


class NegativeValueError(ValidationError):
    """A stock figure was set below zero"""

    def __init__(
        self,
        message: str = "Value must not be negative",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, details=details, error_code="NEGATIVE_VALUE")


class AuthenticationError(BaseCustomException):
    """Exception for authentication errors"""

    def __init__(
        self,
        message: str = "Authentication failed",
        details: Optional[Dict[str, Any]] = None,
        error_code: Optional[str] = None
    ):
        super().__init__(
            message=message,
            status_code=status.HTTP_401_UNAUTHORIZED,
            details=details,
            error_code=error_code or "AUTHENTICATION_ERROR"
        )


class AuthorizationError(BaseCustomException):
    """Exception for authorization errors"""

    def __init__(
        self,
        message: str = "Access denied",
        details: Optional[Dict[str, Any]] = None,
        error_code: Optional[str] = None
    ):
        super().__init__(
            message=message,
            status_code=status.HTTP_403_FORBIDDEN,
            details=details,
            error_code=error_code or "AUTHORIZATION_ERROR"
        )


class NotFoundError(BaseCustomException):
    """Exception for resource not found errors"""

    def __init__(
        self,
        message: str = "Resource not found",
        details: Optional[Dict[str, Any]] = None,
        error_code: Optional[str] = None
    ):
        super().__init__(
            message=message,
            status_code=status.HTTP_404_NOT_FOUND,
            details=details,
            error_code=error_code or "NOT_FOUND_ERROR"
        )


class StockCardNotFoundError(NotFoundError):
    """No stock card exists for a drug/warehouse pair"""

    def __init__(
        self,
        message: str = "Stock card not found",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, details=details, error_code="STOCK_CARD_NOT_FOUND")


class ConflictError(BaseCustomException):
    """Exception for conflict errors"""

    def __init__(
        self,
        message: str = "Resource conflict",
        details: Optional[Dict[str, Any]] = None,
        error_code: Optional[str] = None
    ):
        super().__init__(
            message=message,
            status_code=status.HTTP_409_CONFLICT,
            details=details,
            error_code=error_code or "CONFLICT_ERROR"
        )


class InsufficientAvailableError(ConflictError):
    """Available (unreserved) stock cannot cover a reservation"""

    def __init__(
        self,
        message: str = "Insufficient available stock",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, details=details, error_code="INSUFFICIENT_AVAILABLE")


class InsufficientStockError(ConflictError):
    """On-hand stock cannot cover a debit"""

    def __init__(
        self,
        message: str = "Insufficient stock on hand",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, details=details, error_code="INSUFFICIENT_STOCK")


class DuplicateNumberError(ConflictError):
    """Requisition number already used in this hospital"""

    def __init__(
        self,
        message: str = "Requisition number already exists",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, details=details, error_code="DUPLICATE_NUMBER")


class DatabaseError(BaseCustomException):
    """Exception for database errors"""

    def __init__(
        self,
        message: str = "Database operation failed",
        details: Optional[Dict[str, Any]] = None,
        error_code: Optional[str] = None
    ):
        super().__init__(
            message=message,
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            details=details,
            error_code=error_code or "DATABASE_ERROR"
        )


class InvariantViolationError(BaseCustomException):
    """A ledger invariant would break; always a defect in the caller"""

    def __init__(
        self,
        message: str = "Stock invariant violated",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(
            message=message,
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            details=details,
            error_code="INVARIANT_VIOLATION"
        )


class BusinessLogicError(BaseCustomException):
    """Exception for business logic errors"""

    def __init__(
        self,
        message: str = "Business logic error",
        details: Optional[Dict[str, Any]] = None,
        error_code: Optional[str] = None
    ):
        super().__init__(
            message=message,
            status_code=status.HTTP_400_BAD_REQUEST,
            details=details,
            error_code=error_code or "BUSINESS_LOGIC_ERROR"
        )


class InvalidStateError(BusinessLogicError):
    """Workflow action is not legal from the requisition's current status"""

    def __init__(
        self,
        message: str = "Action not allowed in current status",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, details=details, error_code="INVALID_STATE")


# Response models for errors
class ErrorResponse(BaseModel):
    """Standard error response model"""
    error: str
    message: str
    error_code: Optional[str] = None
    details: Optional[Dict[str, Any]] = None
    timestamp: Optional[str] = None
    request_id: Optional[str] = None


# Exception handler functions
def create_error_response(
    exception: BaseCustomException,
    request_id: Optional[str] = None
) -> Dict[str, Any]:
    """Create standardized error response"""
    from datetime import datetime, timezone

    response = {
        "error": exception.__class__.__name__.replace("Error", " Error"),
        "message": exception.message,
        "error_code": exception.error_code,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "request_id": request_id
    }

    if exception.details:
        response["details"] = exception.details

    return response


# Utility functions for common error scenarios
def handle_database_error(error: Exception, operation: str = "database operation") -> DatabaseError:
    """Handle database errors and convert to DatabaseError"""
    logger.error(f"Database error during {operation}: {error}")

    error_message = "Database operation failed"
    if "connection" in str(error).lower():
        error_message = "Database connection failed"
    elif "timeout" in str(error).lower():
        error_message = "Database operation timed out"
    elif "constraint" in str(error).lower():
        error_message = "Database constraint violation"

    return DatabaseError(
        message=error_message,
        details={"operation": operation, "original_error": str(error)},
        error_code="DATABASE_OPERATION_ERROR"
    )
