"""
Shared error handling for the Policy Engine.
"""

from typing import Dict, Any, Optional
from pydantic import BaseModel, Field


class ErrorResponse(BaseModel):
    """Standard error response format."""

    code: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


class PolicyEngineException(Exception):
    """Base exception for Policy Engine components."""

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
        return ErrorResponse(
            code=self.code,
            message=self.message,
            details=self.details
        )


class ValidationError(PolicyEngineException):
    """Malformed rule, condition or action found at activation time."""

    def __init__(self, message: str = "Validation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("VALIDATION_ERROR", message, details)


class DependencyError(PolicyEngineException):
    """Dependency cycle or unmet prerequisite found at activation time."""

    def __init__(self, message: str = "Dependency check failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("DEPENDENCY_ERROR", message, details)


class ConfigurationError(PolicyEngineException):
    """Invalid regex, rollout percentage out of range, malformed NOT node."""

    def __init__(self, message: str = "Invalid configuration", details: Optional[Dict[str, Any]] = None):
        super().__init__("CONFIGURATION_ERROR", message, details)


class NotFoundError(PolicyEngineException):
    """Referenced definition does not exist."""

    def __init__(self, message: str = "Not found", details: Optional[Dict[str, Any]] = None):
        super().__init__("NOT_FOUND", message, details)


class PermissionDeniedError(PolicyEngineException):
    """Actor role is not allowed to perform the operation."""

    def __init__(self, message: str = "Permission denied", details: Optional[Dict[str, Any]] = None):
        super().__init__("PERMISSION_DENIED", message, details)


class BatchItemError(PolicyEngineException):
    """Isolated failure of a single item inside a bulk operation."""

    def __init__(self, target_id: str, message: str = "Batch item failed", details: Optional[Dict[str, Any]] = None):
        details = dict(details or {})
        details.setdefault("target_id", target_id)
        super().__init__("BATCH_ITEM_ERROR", message, details)
        self.target_id = target_id
