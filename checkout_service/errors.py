"""
errors.py — Error Taxonomy of the Checkout Core

Every failure surfaced by the service clients, the gateway adapter or the
checkout session derives from CheckoutError. Each class carries a stable
``error_code`` and the HTTP status the API layer answers with.
"""

from typing import Optional


class CheckoutError(Exception):
    """Base class of all checkout failures."""
    error_code = "checkout_error"
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(CheckoutError):
    """Bad input, correctable by the cashier. No network call was made."""
    error_code = "validation_error"
    status_code = 400


class NetworkError(CheckoutError):
    """The backend could not be reached or the connection broke mid-request."""
    error_code = "network_error"
    status_code = 502


class ServerError(CheckoutError):
    """The backend answered with an unexpected HTTP status."""
    error_code = "server_error"
    status_code = 502

    def __init__(self, message: str, code: Optional[int] = None):
        super().__init__(message)
        self.code = code


class GatewayDeclined(CheckoutError):
    """The gateway authoritatively refused the charge."""
    error_code = "payment_declined"
    status_code = 402


class GatewayUnavailable(CheckoutError):
    """The gateway library or the intent endpoint is not available."""
    error_code = "gateway_unavailable"
    status_code = 503


class VerificationFailed(CheckoutError):
    """The backend reported the confirmed payment as not completed."""
    error_code = "verification_failed"
    status_code = 402


class ReconciliationRequired(CheckoutError):
    """
    Verification could not be carried out after the gateway reported success.

    The order is left PENDING on purpose: the charge may have gone through,
    so an operator has to reconcile it against the gateway.
    """
    error_code = "reconciliation_required"
    status_code = 502

    def __init__(self, message: str, order_id: str, gateway_intent_id: Optional[str] = None):
        super().__init__(message)
        self.order_id = order_id
        self.gateway_intent_id = gateway_intent_id


class SessionBusy(CheckoutError):
    """A request for this checkout is still in flight."""
    error_code = "session_busy"
    status_code = 409


class SessionClosed(CheckoutError):
    """The checkout already reached a terminal phase."""
    error_code = "session_closed"
    status_code = 409


class PaymentCancelled(CheckoutError):
    """The cashier cancelled the checkout while this request was waiting on the gateway."""
    error_code = "payment_cancelled"
    status_code = 409
