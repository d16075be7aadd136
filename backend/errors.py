"""
Ride Marketplace - Domain Errors

Business-focused exceptions raised by the booking core and turned into
JSON responses by the application error handler. Each error carries an
HTTP status, a stable code and an ``outcome`` telling the caller whether
nothing happened or a financial operation partially happened and needs
reconciliation.
"""

from typing import Any, Dict, Optional


OUTCOME_NONE = 'none'
OUTCOME_PARTIAL = 'partial'


class MarketplaceError(Exception):
    """Base exception for all domain errors."""

    status_code: int = 500

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        outcome: str = OUTCOME_NONE,
    ) -> None:
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}
        self.outcome = outcome
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'error': self.message,
            'code': self.code,
            'details': self.details,
            'outcome': self.outcome,
        }


class ValidationError(MarketplaceError):
    """Malformed request. Never retried automatically."""
    status_code = 400


class NotFound(MarketplaceError):
    """A referenced ride, booking or profile does not exist."""
    status_code = 404


class CompatibilityError(MarketplaceError):
    """Eligibility rule violated; the reason is shown to the requester verbatim."""
    status_code = 403


class UnauthorizedAction(MarketplaceError):
    """Caller is not the passenger, the owning driver or an admin as required."""
    status_code = 403


class InventoryExhausted(MarketplaceError):
    """Lost the seat race. ``details['seats_available']`` holds current availability."""
    status_code = 409

    def __init__(self, ride_id: int, requested: int, seats_available: int) -> None:
        super().__init__(
            f"Only {seats_available} seat(s) left on this ride, {requested} requested.",
            details={
                'ride_id': ride_id,
                'requested': requested,
                'seats_available': seats_available,
            },
        )


class StateTransitionError(MarketplaceError):
    """Transition attempted from a terminal or incompatible state."""
    status_code = 409


class PaymentError(MarketplaceError):
    """Base class for failures reported by the payment processor."""
    status_code = 502


class PaymentAuthorizationFailed(PaymentError):
    status_code = 402


class PaymentCaptureFailed(PaymentError):
    pass


class VoidFailed(PaymentError):
    pass


class RefundFailed(PaymentError):
    pass
