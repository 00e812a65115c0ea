"""
Error types and standard error response models.
Exceptions raised by the realtime components and the JSON shape the relay
returns on failure.
"""
from typing import Optional, Dict, Any
from pydantic import BaseModel, Field
from enum import Enum


class ErrorCode(str, Enum):
    """Standard error codes for API responses."""
    # Authentication & Authorization
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"
    NOT_AUTHENTICATED = "NOT_AUTHENTICATED"

    # Resource
    NOT_FOUND = "NOT_FOUND"

    # Server
    INTERNAL_ERROR = "INTERNAL_ERROR"
    UPSTREAM_ERROR = "UPSTREAM_ERROR"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
    TIMEOUT = "TIMEOUT"


class NotificationError(Exception):
    """Base class for notification relay errors."""

    error_code: ErrorCode = ErrorCode.INTERNAL_ERROR

    def __init__(self, message: str, detail: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail


class NotificationAPIError(NotificationError):
    """
    A call to the backend REST API failed.

    status_code is None for transport failures (timeouts, refused
    connections) where no HTTP response was received.
    """

    error_code = ErrorCode.UPSTREAM_ERROR

    def __init__(self, message: str, status_code: Optional[int] = None, detail: Optional[str] = None):
        super().__init__(message, detail)
        self.status_code = status_code
        if status_code is None:
            self.error_code = ErrorCode.SERVICE_UNAVAILABLE
        elif status_code == 404:
            self.error_code = ErrorCode.NOT_FOUND


class AuthenticationError(NotificationAPIError):
    """Backend rejected the bearer credential (401/403). Invalidates the session."""

    def __init__(self, message: str, status_code: int = 401, detail: Optional[str] = None):
        super().__init__(message, status_code, detail)
        self.error_code = ErrorCode.FORBIDDEN if status_code == 403 else ErrorCode.UNAUTHORIZED


class NotAuthenticatedError(NotificationError):
    """An operation needs a session but no valid credential is present."""

    error_code = ErrorCode.NOT_AUTHENTICATED


class ErrorResponse(BaseModel):
    """
    Standard error response model.
    All relay error responses follow this structure.
    """
    error: bool = Field(default=True, description="Always true for error responses")
    error_code: ErrorCode = Field(..., description="Standard error code")
    message: str = Field(..., description="Human-readable error message")
    detail: Optional[str] = Field(None, description="Additional error details")
    timestamp: Optional[str] = Field(None, description="Error timestamp (ISO format)")
    metadata: Optional[Dict[str, Any]] = Field(None, description="Additional error metadata")

    class Config:
        json_schema_extra = {
            "example": {
                "error": True,
                "error_code": "UNAUTHORIZED",
                "message": "Your session has expired. Please login again.",
                "detail": "HTTP 401",
                "timestamp": "2024-01-01T00:00:00Z",
                "metadata": {}
            }
        }


def create_error_response(
    error_code: ErrorCode,
    message: str,
    detail: Optional[str] = None,
    status_code: int = 400,
    metadata: Optional[Dict[str, Any]] = None
) -> tuple[ErrorResponse, int]:
    """
    Helper function to create standardized error responses.

    Args:
        error_code: Standard error code
        message: Human-readable error message
        detail: Additional error details
        status_code: HTTP status code
        metadata: Additional error metadata

    Returns:
        Tuple of (ErrorResponse, status_code)
    """
    from datetime import datetime

    error_response = ErrorResponse(
        error=True,
        error_code=error_code,
        message=message,
        detail=detail,
        timestamp=datetime.utcnow().isoformat() + "Z",
        metadata=metadata or {}
    )

    return error_response, status_code
