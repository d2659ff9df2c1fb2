"""
Exception hierarchy shared by the domain, core services and API.

Categories map one-to-one onto how callers react:
- ValidationError: bad input or illegal transition, nothing was written
- NotFoundError: unknown order/payment/wallet id, nothing was written
- ConsistencyError: the write would break a ledger invariant, nothing was written
- GatewayError (integrations.tap_client): the payment gateway failed or refused
"""
from typing import Any, Dict, Optional


class LaundryOpsError(Exception):
    """Base exception for all laundry operations errors."""

    error_code = "laundry_ops_error"

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = context

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict for API responses."""
        return {
            "error": {
                "code": self.error_code,
                "message": self.message,
                "type": self.__class__.__name__,
            }
        }


class ValidationError(LaundryOpsError):
    """Raised when a request is invalid for the current state."""

    error_code = "validation_error"


class InvalidTransition(ValidationError):
    """Raised when an order cannot move from its current status to the requested one."""

    error_code = "invalid_transition"

    def __init__(
        self,
        current_status: Any,
        requested_status: Any,
        message: Optional[str] = None,
    ):
        current = getattr(current_status, "value", current_status)
        requested = getattr(requested_status, "value", requested_status)
        super().__init__(
            message or f"Cannot transition from {current} to {requested}",
            current_status=current,
            requested_status=requested,
        )
        self.current_status = current_status
        self.requested_status = requested_status


class NotPermittedError(ValidationError):
    """Raised when the acting staff member's role may not perform an operation."""

    error_code = "not_permitted"


class TransitionNotPermitted(NotPermittedError):
    """Raised when the actor's role may not set the requested status."""

    error_code = "transition_not_permitted"


class NotFoundError(LaundryOpsError):
    """Raised when a referenced entity does not exist."""

    error_code = "not_found"


class ConsistencyError(LaundryOpsError):
    """Raised when a write would violate a ledger or payment invariant."""

    error_code = "consistency_error"


class InsufficientBalanceError(ConsistencyError):
    """Raised when a debit would drive a wallet balance below zero."""

    error_code = "insufficient_balance"
