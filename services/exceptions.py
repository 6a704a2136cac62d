"""
Business exceptions raised by the services and turned into JSON errors by the API.
"""
from typing import Dict, Any, Optional


class BusinessException(Exception):
    """Base exception for business logic errors."""

    status_code = 400

    def __init__(self, message: str, code: str = "BUSINESS_ERROR", details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(self.message)


class NotFoundException(BusinessException):
    status_code = 404

    def __init__(self, entity_type: str, entity_id: Any):
        super().__init__(f"{entity_type} {entity_id} not found", "NOT_FOUND", {
            "entity_type": entity_type,
            "entity_id": entity_id,
        })


class ValidationException(BusinessException):
    """Raised when data validation fails."""

    def __init__(self, message: str, field_errors: Optional[Dict[str, Any]] = None):
        super().__init__(message, "VALIDATION_ERROR", field_errors or {})


class PermissionDeniedException(BusinessException):
    status_code = 403

    def __init__(self, message: str = "Access denied"):
        super().__init__(message, "PERMISSION_DENIED")


class NoCouriersAvailableException(BusinessException):
    """Raised when auto-assignment finds no courier at all."""

    status_code = 409

    def __init__(self, order_id: int):
        super().__init__(f"No couriers in the system to take order {order_id}", "NO_COURIERS", {
            "order_id": order_id,
        })


class AuthenticationException(BusinessException):
    status_code = 401

    def __init__(self, message: str = "Authentication required"):
        super().__init__(message, "UNAUTHORIZED")
