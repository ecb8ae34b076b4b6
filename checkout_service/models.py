"""
models.py — Data Models for the Checkout Flow

This module defines the data structures exchanged between the checkout core,
the Order Service and the Payment backend.
It uses Pydantic models to ensure type safety and automatic validation of incoming data.

Models:
    - CartLine: A single priced line of the cart, snapshotted at order creation.
    - OrderRequest: The payload sent to the Order Service.
    - Order: The server-assigned order record.
    - PaymentIntentRef: Reference to one gateway-side payment intent.
    - VerificationResult: Backend verdict on a confirmed payment.
    - PaymentDetails: Payment data attached to a settled order.
    - BillingDetails / ConfirmationResult: Gateway confirmation handshake.
    - PaymentSession: Transient state of one checkout.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Annotated, List, Optional

from pydantic import BaseModel, ConfigDict, Field, PlainSerializer, SecretStr

# Decimal amounts go over the wire as JSON numbers
Money = Annotated[Decimal, PlainSerializer(float, return_type=float, when_used="json")]


class PaymentMethod(str, Enum):
    CASH = "CASH"
    ELECTRONIC = "ELECTRONIC"


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    CANCELLED = "CANCELLED"


class VerificationStatus(str, Enum):
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class ConfirmationOutcome(str, Enum):
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    USER_CANCELLED = "USER_CANCELLED"


class SessionPhase(str, Enum):
    """Phases of a checkout session. SETTLED and FAILED_* are terminal."""
    IDLE = "IDLE"
    SUBMITTING = "SUBMITTING"
    ORDER_CREATED = "ORDER_CREATED"
    AWAITING_GATEWAY = "AWAITING_GATEWAY"
    VERIFYING = "VERIFYING"
    SETTLED = "SETTLED"
    FAILED_CLEANED_UP = "FAILED_CLEANED_UP"
    FAILED_NEEDS_RECONCILIATION = "FAILED_NEEDS_RECONCILIATION"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_PHASES


TERMINAL_PHASES = frozenset({
    SessionPhase.SETTLED,
    SessionPhase.FAILED_CLEANED_UP,
    SessionPhase.FAILED_NEEDS_RECONCILIATION,
})


class CartLine(BaseModel):
    """
    Represents a single product line in the cart.

    Attributes:
        itemId (str): Identifier of the menu item.
        name (str): Display name of the item.
        unitPrice (Decimal): Price per unit. Must be greater than zero.
        quantity (int): Number of units. Must be greater than zero.
    """
    model_config = ConfigDict(frozen=True)

    itemId: str
    name: str
    unitPrice: Money = Field(..., gt=0)
    quantity: int = Field(..., gt=0)


class OrderRequest(BaseModel):
    """
    Represents a new order as submitted to the Order Service.

    Built by the checkout core once the customer fields and the cart have been
    validated and the totals computed. Never mutated after submission.
    """
    model_config = ConfigDict(frozen=True)

    customerName: str = Field(..., min_length=1)
    phoneNumber: str = Field(..., min_length=1)
    lines: List[CartLine]
    subtotal: Money
    tax: Money
    grandTotal: Money
    paymentMethod: PaymentMethod


class PaymentDetails(BaseModel):
    gatewayIntentId: str
    gatewayPaymentMethodId: Optional[str] = None
    status: VerificationStatus = VerificationStatus.COMPLETED


class Order(BaseModel):
    """
    Server-assigned order record. The checkout core only holds a read-only copy;
    local status changes are applied on a copy (``model_copy``).
    """
    model_config = ConfigDict(frozen=True)

    orderId: str
    customerName: str
    phoneNumber: str
    lines: List[CartLine]
    subtotal: Money
    tax: Money
    grandTotal: Money
    paymentMethod: PaymentMethod
    status: OrderStatus = OrderStatus.PENDING
    createdAt: Optional[datetime] = None
    paymentDetails: Optional[PaymentDetails] = None


class PaymentIntentRef(BaseModel):
    """
    Reference to one gateway-side payment intent.

    The client secret is single use and scoped to this intent; it is never
    rendered in logs or API responses.
    """
    model_config = ConfigDict(frozen=True)

    gatewayIntentId: str
    clientSecret: SecretStr


class VerificationResult(BaseModel):
    status: VerificationStatus
    message: Optional[str] = None


class BillingDetails(BaseModel):
    name: str
    phone: str


class ConfirmationResult(BaseModel):
    """Outcome of the client-side gateway confirmation handshake."""
    outcome: ConfirmationOutcome
    gatewayPaymentIntentId: Optional[str] = None
    gatewayPaymentMethodId: Optional[str] = None
    errorMessage: Optional[str] = None


class PaymentSession(BaseModel):
    """
    State of one checkout, owned by a single CheckoutSession.

    Attributes:
        phase (SessionPhase): Current phase of the state machine.
        order (Order): The order created for this checkout, if any.
        intentRef (PaymentIntentRef): The payment intent of the current attempt, if any.
        paymentDetails (PaymentDetails): Set once an electronic payment is verified.
        error (str): Last error surfaced to the cashier.
        warning (str): Non-fatal problem, e.g. a compensating delete that did not go through.
    """
    phase: SessionPhase = SessionPhase.IDLE
    order: Optional[Order] = None
    intentRef: Optional[PaymentIntentRef] = None
    paymentDetails: Optional[PaymentDetails] = None
    error: Optional[str] = None
    warning: Optional[str] = None
