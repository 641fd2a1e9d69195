"""
eventscore/errors.py
Centralized error taxonomy for the certification engine.

ERROR RESPONSE STRUCTURE:
{
    "success": false,
    "error": "ErrorType",
    "message": "Human-readable description",
    "code": "UNIQUE_ERROR_CODE",
    "details": {} (optional)
}

HTTP STATUS CODE DISCIPLINE:
- 400: Stage out of order, missing fields, signatures not collected yet
- 401: Authentication missing or expired
- 403: Role lacks the capability for the action
- 404: Event / contest / category / certification / request does not exist
- 409: Stage or signature already present, record already terminal
- 422: Request body validation (Pydantic)
- 500: NEVER caused by user input (internal only)
"""

import logging
from typing import Optional, Dict, Any

from fastapi import status
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class ErrorCode:
    """Unique error codes for machine-readable error handling"""

    VALIDATION_ERROR = "VALIDATION_ERROR"
    MISSING_FIELD = "MISSING_FIELD"

    AUTH_REQUIRED = "AUTH_REQUIRED"
    AUTH_INVALID = "AUTH_INVALID"
    PERMISSION_DENIED = "PERMISSION_DENIED"

    NOT_FOUND = "NOT_FOUND"

    PREREQUISITE_NOT_MET = "PREREQUISITE_NOT_MET"
    ALREADY_COMPLETED = "ALREADY_COMPLETED"
    DUPLICATE_SIGNATURE = "DUPLICATE_SIGNATURE"
    DUPLICATE_OPEN_REQUEST = "DUPLICATE_OPEN_REQUEST"
    NOT_READY = "NOT_READY"
    ALREADY_TERMINAL = "ALREADY_TERMINAL"
    CONCURRENT_MODIFICATION = "CONCURRENT_MODIFICATION"

    RATE_LIMITED = "RATE_LIMITED"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class APIError(Exception):
    """Base API exception with consistent structure"""

    def __init__(
        self,
        status_code: int,
        error: str,
        message: str,
        code: str,
        details: Optional[Dict[str, Any]] = None
    ):
        self.status_code = status_code
        self.error = error
        self.message = message
        self.code = code
        self.details = details
        super().__init__(message)

    def to_response(self) -> JSONResponse:
        """Convert to FastAPI JSONResponse"""
        return JSONResponse(status_code=self.status_code, content=self.to_dict())

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary"""
        result = {
            "success": False,
            "error": self.error,
            "message": self.message,
            "code": self.code
        }
        if self.details:
            result["details"] = self.details
        return result


class NotFoundError(APIError):
    """404 Not Found - Resource does not exist"""
    def __init__(self, resource: str, identifier: Any = None):
        message = f"{resource} not found"
        if identifier is not None:
            message = f"{resource} with id '{identifier}' not found"
        super().__init__(
            status_code=status.HTTP_404_NOT_FOUND,
            error="Not Found",
            message=message,
            code=ErrorCode.NOT_FOUND,
            details={"resource": resource, "id": identifier} if identifier is not None else None
        )


class ValidationError(APIError):
    """400 Bad Request - Missing or malformed field"""
    def __init__(self, message: str, code: str = ErrorCode.VALIDATION_ERROR, details: Optional[Dict] = None):
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            error="Validation Error",
            message=message,
            code=code,
            details=details
        )


class PreconditionFailedError(APIError):
    """400 Bad Request - Stage attempted out of order"""
    def __init__(self, message: str, details: Optional[Dict] = None):
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            error="Precondition Failed",
            message=message,
            code=ErrorCode.PREREQUISITE_NOT_MET,
            details=details
        )


class NotReadyError(APIError):
    """400 Bad Request - Execute attempted before all signatures were collected"""
    def __init__(self, message: str, details: Optional[Dict] = None):
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            error="Not Ready",
            message=message,
            code=ErrorCode.NOT_READY,
            details=details
        )


class UnauthorizedError(APIError):
    """403 Forbidden - Role lacks permission for the action"""
    def __init__(self, message: str = "Permission denied", details: Optional[Dict] = None):
        super().__init__(
            status_code=status.HTTP_403_FORBIDDEN,
            error="Unauthorized",
            message=message,
            code=ErrorCode.PERMISSION_DENIED,
            details=details
        )


class AlreadyCompletedError(APIError):
    """409 Conflict - Stage or signature already present"""
    def __init__(self, message: str, code: str = ErrorCode.ALREADY_COMPLETED, details: Optional[Dict] = None):
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            error="Already Completed",
            message=message,
            code=code,
            details=details
        )


class DuplicateSignatureError(AlreadyCompletedError):
    """409 Conflict - Signature slot already filled"""
    def __init__(self, message: str = "This signature slot has already been signed", details: Optional[Dict] = None):
        super().__init__(message, code=ErrorCode.DUPLICATE_SIGNATURE, details=details)


class AlreadyTerminalError(APIError):
    """409 Conflict - Record is EXECUTED / REJECTED / CERTIFIED"""
    def __init__(self, message: str, details: Optional[Dict] = None):
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            error="Already Terminal",
            message=message,
            code=ErrorCode.ALREADY_TERMINAL,
            details=details
        )


class ConcurrentModificationError(APIError):
    """409 Conflict - Record changed between read and write"""
    def __init__(self, message: str, details: Optional[Dict] = None):
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            error="Concurrent Modification",
            message=message,
            code=ErrorCode.CONCURRENT_MODIFICATION,
            details=details
        )


def validate_not_empty(value: Optional[str], field_name: str) -> str:
    """Validate that a string is not empty and return it stripped"""
    if value is None or value.strip() == "":
        raise ValidationError(
            f"{field_name} is required",
            code=ErrorCode.MISSING_FIELD,
            details={"field": field_name}
        )
    return value.strip()


def success_response(data: Any = None, message: str = "OK") -> Dict[str, Any]:
    """Standard success envelope shared by every route"""
    return {"success": True, "data": data, "message": message}


def get_error_summary() -> Dict[str, Any]:
    """Return summary of error handling system for documentation"""
    return {
        "service": "eventscore-error-handler",
        "response_structure": {
            "success": "boolean (always false for errors)",
            "error": "string (error type)",
            "message": "string (human-readable)",
            "code": "string (machine-readable)",
            "details": "object (optional)"
        },
        "error_codes": [
            attr for attr in dir(ErrorCode)
            if not attr.startswith('_')
        ]
    }
