"""
Shared error handling for the Entitlement Engine.
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


class EntitlementError(Exception):
    """Base exception for Entitlement Engine components."""

    status_code = 400

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


class UnauthenticatedError(EntitlementError):
    """No user identity is available for the operation."""

    status_code = 401

    def __init__(self, message: str = "User not authenticated", details: Optional[Dict[str, Any]] = None):
        super().__init__("UNAUTHENTICATED", message, details)


class PermissionDeniedError(EntitlementError):
    """The backing store rejected the call (ACL / security rules)."""

    status_code = 403

    def __init__(self, message: str = "Permission denied", details: Optional[Dict[str, Any]] = None):
        super().__init__("PERMISSION_DENIED", message, details)


class StoreUnavailableError(EntitlementError):
    """The backing store could not be reached."""

    status_code = 503

    def __init__(self, message: str = "Store unavailable", details: Optional[Dict[str, Any]] = None):
        super().__init__("STORE_UNAVAILABLE", message, details)


class TransactionConflictError(EntitlementError):
    """A single optimistic transaction attempt lost a race."""

    status_code = 409

    def __init__(self, message: str = "Transaction conflict", details: Optional[Dict[str, Any]] = None):
        super().__init__("TRANSACTION_CONFLICT", message, details)


class RetryableError(EntitlementError):
    """Transient failure; the caller may retry the whole operation."""

    status_code = 503

    def __init__(self, message: str = "Operation failed, retry later", details: Optional[Dict[str, Any]] = None):
        super().__init__("RETRYABLE", message, details)


class CatalogUnavailableError(EntitlementError):
    """The remote plan-config source failed."""

    status_code = 503

    def __init__(self, message: str = "Plan catalog unavailable", details: Optional[Dict[str, Any]] = None):
        super().__init__("CATALOG_UNAVAILABLE", message, details)


class ValidationError(EntitlementError):
    """Validation-related errors."""

    def __init__(self, message: str = "Validation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("VALIDATION_ERROR", message, details)
