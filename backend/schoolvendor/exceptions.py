"""
School Vendor Exception Hierarchy

Every error raised by the order/payment core carries a stable error code,
a human readable message and optional details for the API response.
"""
from typing import Optional, Dict, Any


class StoreError(Exception):
    """
    Base exception for all order/payment core errors.

    Subclasses pin the error code and the HTTP status used by the API layer.
    """

    status_code: int = 400

    def __init__(
        self,
        error_code: str,
        message: str,
        details: Optional[Dict[str, Any]] = None
    ):
        self.error_code = error_code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to API error response format."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details
        }


class NotFoundError(StoreError):
    """
    Referenced Order, Transaction or Product does not exist.
    """

    status_code = 404

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("store:not_found", message, details)


class ValidationError(StoreError):
    """
    Malformed input or a request the current state does not allow.

    Examples:
    - Refund amount out of bounds
    - Missing shipping details for an order with physical items
    - Unsupported payment method
    """

    status_code = 400

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        error_code: str = "store:validation_failed"
    ):
        super().__init__(error_code, message, details)


class InvalidTransitionError(ValidationError):
    """
    Order status change not present in the transition table.
    """

    def __init__(self, current_status: str, requested_status: str):
        super().__init__(
            f"Cannot transition from {current_status} to {requested_status}",
            {"current_status": current_status, "requested_status": requested_status},
            error_code="order:transition_invalid"
        )
        self.current_status = current_status
        self.requested_status = requested_status


class InsufficientStockError(ValidationError):
    """
    Requested quantity exceeds the product's available stock.
    """

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details, error_code="stock:insufficient")


class InvalidStateError(ValidationError):
    """
    Operation not allowed for the order or transaction in its current status.

    Example:
    - Initiating payment for an order that is already shipped
    """

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details, error_code="payment:invalid_state")


class AuthorizationError(StoreError):
    """
    Actor lacks the role or ownership needed for the operation.
    """

    status_code = 403

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("store:forbidden", message, details)


class PaymentError(StoreError):
    """
    Payment provider dispatch or refund call failed.
    """

    status_code = 402

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("payment:failed", message, details)


class DatabaseError(StoreError):
    """
    Underlying store operation failed unexpectedly.
    """

    status_code = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("store:database_error", message, details)


class SideEffectError(StoreError):
    """
    An order transition was committed but one of its side effects failed.

    The status change is not reverted; the audit trail stays authoritative.
    """

    status_code = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("order:side_effect_failed", message, details)
