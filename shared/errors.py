"""
Shared error handling for the automation service.
"""

from typing import Dict, Any, Optional
from pydantic import BaseModel

from shared.logging import request_id_var


class ErrorResponse(BaseModel):
    """Standard error response format."""

    request_id: Optional[str] = None
    code: str
    message: str
    details: Dict[str, Any] = {}


class AutomationException(Exception):
    """Base exception for automation services."""

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
        return ErrorResponse(
            request_id=request_id_var.get(),
            code=self.code,
            message=self.message,
            details=self.details
        )


class ConfigurationError(AutomationException):
    """Malformed rule, condition or action document."""

    def __init__(self, message: str = "Invalid rule configuration", details: Optional[Dict[str, Any]] = None):
        super().__init__("CONFIGURATION_ERROR", message, details)


class ActionError(AutomationException):
    """Base class for classified action failures."""

    transient = False


class TransientActionError(ActionError):
    """Retryable action failure (timeout, collaborator unavailable)."""

    transient = True

    def __init__(self, message: str = "Action temporarily unavailable", details: Optional[Dict[str, Any]] = None):
        super().__init__("TRANSIENT_ACTION_ERROR", message, details)


class PermanentActionError(ActionError):
    """Non-retryable action failure (validation, not found)."""

    def __init__(self, message: str = "Action failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("PERMANENT_ACTION_ERROR", message, details)


class SafetyTrip(AutomationException):
    """A deliberate skip raised by a safety check (rate limit, loop, kill switch)."""

    def __init__(self, status: str, reason: str, details: Optional[Dict[str, Any]] = None):
        self.status = status
        self.reason = reason
        super().__init__("SAFETY_TRIP", reason, details)


class ValidationError(AutomationException):
    """Validation-related errors."""

    def __init__(self, message: str = "Validation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("VALIDATION_ERROR", message, details)


class NotFoundError(AutomationException):
    """Requested entity does not exist."""

    def __init__(self, entity: str, entity_id: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("NOT_FOUND", f"{entity} '{entity_id}' not found", details)
