"""
Shared error handling for the CRM Automation service.
"""

from typing import Dict, Any, Optional
from pydantic import BaseModel, Field

from .logging import get_request_id


class ErrorResponse(BaseModel):
    """Standard error response format."""

    error: str
    code: str
    details: Dict[str, Any] = Field(default_factory=dict)
    request_id: Optional[str] = None


class AutomationError(Exception):
    """Base exception for automation service errors."""

    status_code: int = 500

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None,
                 status_code: Optional[int] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        if status_code is not None:
            self.status_code = status_code
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
        return ErrorResponse(
            error=self.message,
            code=self.code,
            details=self.details,
            request_id=get_request_id(),
        )


class ValidationError(AutomationError):
    """Malformed rule, condition tree or request."""

    status_code = 400

    def __init__(self, message: str = "Validation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("VALIDATION_ERROR", message, details)


class AuthenticationError(AutomationError):
    """Missing or invalid session token or cron secret."""

    status_code = 401

    def __init__(self, message: str = "Authentication failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("AUTHENTICATION_ERROR", message, details)


class AuthorizationError(AutomationError):
    """Role check failed."""

    status_code = 403

    def __init__(self, message: str = "Authorization failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("AUTHORIZATION_ERROR", message, details)


class NotFoundError(AutomationError):
    """Entity does not exist in the caller's organization."""

    status_code = 404

    def __init__(self, entity: str, entity_id: Optional[str] = None,
                 details: Optional[Dict[str, Any]] = None):
        message = f"{entity} not found"
        super().__init__("NOT_FOUND", message, {**(details or {}), "id": entity_id} if entity_id else details)


class ConflictError(AutomationError):
    """State conflict, e.g. cancelling a job that is no longer pending."""

    status_code = 409

    def __init__(self, message: str = "Conflict", details: Optional[Dict[str, Any]] = None):
        super().__init__("CONFLICT", message, details)


class UnprocessableError(AutomationError):
    """Well-formed request that cannot be acted on."""

    status_code = 422

    def __init__(self, message: str = "Unprocessable request", details: Optional[Dict[str, Any]] = None):
        super().__init__("UNPROCESSABLE", message, details)


class ServiceError(AutomationError):
    """Service-related errors."""

    status_code = 500

    def __init__(self, message: str = "Service error", details: Optional[Dict[str, Any]] = None):
        super().__init__("SERVICE_ERROR", message, details)


class ExternalServiceError(AutomationError):
    """External service errors."""

    status_code = 502

    def __init__(self, service: str, message: str = "External service error", details: Optional[Dict[str, Any]] = None):
        super().__init__("EXTERNAL_SERVICE_ERROR", f"{service}: {message}", details)
