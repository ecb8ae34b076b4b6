"""
workflow.py — Core Orchestration Logic for the Checkout

This module contains the state machine that settles one checkout.
It coordinates the Order Service, the Payment backend and the gateway
confirmation adapter in the correct sequence.

Workflow Overview:
1. Validate customer details and cart, compute totals
2. Create a PENDING order via the Order Service (REST)
3. Cash: settle immediately. Electronic: load the gateway and request a payment intent
4. Confirm the intent through the gateway adapter
5. Verify the confirmed payment with the Payment backend
6. Handle errors and compensation steps (Saga Pattern): delete the order
   whenever the electronic leg fails or is cancelled

Every trigger returns the session state; failures surfaced to the cashier are
raised as CheckoutError after the state has been updated.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Iterable, Optional

from . import errors
from .amounts import calculate_totals
from .clients import CHECKOUT_CURRENCY, OrderServiceClient, PaymentGatewayClient
from .gateway import GatewayConfirmationAdapter
from .models import (
    BillingDetails,
    CartLine,
    ConfirmationOutcome,
    OrderRequest,
    OrderStatus,
    PaymentDetails,
    PaymentMethod,
    PaymentSession,
    SessionPhase,
    VerificationStatus,
)

log = logging.getLogger(__name__)


class CheckoutSession:
    """
    State machine for one checkout, from submission to a terminal phase.

    Phases: IDLE → SUBMITTING → (ORDER_CREATED) → AWAITING_GATEWAY → VERIFYING →
    SETTLED | FAILED_CLEANED_UP | FAILED_NEEDS_RECONCILIATION.

    Only one request is in flight at a time; any trigger arriving meanwhile is
    rejected with SessionBusy, except a cashier cancel, which abandons the
    outstanding call unless the payment is being verified. The compensating
    delete of the order runs at most once per session.
    """

    def __init__(self, orders: OrderServiceClient, payments: PaymentGatewayClient,
                 gateway: GatewayConfirmationAdapter, currency: str = CHECKOUT_CURRENCY):
        self.orders = orders
        self.payments = payments
        self.gateway = gateway
        self.currency = currency
        self.state = PaymentSession()
        self._in_flight = False
        self._compensated = False
        self._step: Optional[asyncio.Task] = None
        self._cancel_requested = False
        self._cancelled: Optional[asyncio.Event] = None

    @property
    def phase(self) -> SessionPhase:
        return self.state.phase

    @property
    def log_prefix(self) -> str:
        order = self.state.order
        return f"[Order: {order.orderId}]" if order else "[Order: -]"

    def _set(self, **changes):
        self.state = self.state.model_copy(update=changes)

    @asynccontextmanager
    async def _request(self):
        """Marks a network call as outstanding for the duration of the block."""
        if self._in_flight:
            raise errors.SessionBusy("A request for this checkout is still in progress")
        self._in_flight = True
        try:
            yield
        finally:
            self._in_flight = False

    async def _outstanding(self, call, *args):
        async with self._request():
            return await call(*args)

    async def _cancellable(self, call, *args):
        """
        Runs a call as a task that cancel() can abandon. Once the cashier
        cancelled, the outcome of the call is dropped and PaymentCancelled is
        raised after cancel() has finished.
        """
        self._step = asyncio.ensure_future(self._outstanding(call, *args))
        try:
            result = await self._step
        except (asyncio.CancelledError, errors.CheckoutError):
            if not self._cancel_requested:
                raise
            result = None
        finally:
            self._step = None
        if self._cancel_requested:
            await self._cancelled.wait()
            raise errors.PaymentCancelled("Checkout was cancelled by the cashier")
        return result

    def _guard(self, *allowed: SessionPhase):
        if self._in_flight or self._step is not None:
            raise errors.SessionBusy("A request for this checkout is still in progress")
        if self.phase.is_terminal:
            raise errors.SessionClosed(f"Checkout already finished ({self.phase.value}); start a new checkout")
        if self._cancel_requested:
            raise errors.SessionBusy("Checkout is being cancelled")
        if self.phase not in allowed:
            raise errors.SessionBusy(f"Checkout is busy ({self.phase.value})")

    # --- Triggers ---

    async def submit(self, customer_name: str, phone_number: str, lines: Iterable[CartLine],
                     payment_method: PaymentMethod) -> PaymentSession:
        """
        Submits the cart for payment.

        Args:
            customer_name (str): Customer name, required.
            phone_number (str): Customer phone number, required.
            lines (Iterable[CartLine]): Cart snapshot, must not be empty.
            payment_method (PaymentMethod): CASH or ELECTRONIC.

        Returns:
            PaymentSession: SETTLED for cash, AWAITING_GATEWAY for electronic payments.

        Raises:
            errors.ValidationError: Missing customer details or empty cart (session stays IDLE).
            errors.NetworkError / errors.ServerError: Order creation failed (session back to IDLE).
            errors.GatewayUnavailable / errors.ServerError: Gateway or intent unavailable
                (order deleted, session FAILED_CLEANED_UP).
            errors.PaymentCancelled: The cashier cancelled meanwhile. During order creation the
                session goes back to IDLE; later cancel() has deleted the order.
        """
        self._guard(SessionPhase.IDLE)
        lines = list(lines)
        if not customer_name or not customer_name.strip() or not phone_number or not phone_number.strip():
            self._set(error="Please enter customer details")
            raise errors.ValidationError("Please enter customer details")
        if not lines:
            self._set(error="Your cart is empty")
            raise errors.ValidationError("Your cart is empty")

        totals = calculate_totals(lines)
        request = OrderRequest(
            customerName=customer_name.strip(),
            phoneNumber=phone_number.strip(),
            lines=lines,
            subtotal=totals.subtotal,
            tax=totals.tax,
            grandTotal=totals.grandTotal,
            paymentMethod=payment_method,
        )

        self._set(phase=SessionPhase.SUBMITTING, error=None, warning=None)
        log.info(f"Submitting {payment_method.value} order over {totals.grandTotal} {self.currency}.")
        try:
            order = await self._cancellable(self.orders.create_order, request)
        except errors.PaymentCancelled:
            self._cancel_requested = False
            raise
        except errors.CheckoutError as e:
            log.error(f"Order creation failed: {e}")
            self._set(phase=SessionPhase.IDLE, error=str(e))
            raise

        if payment_method == PaymentMethod.CASH:
            # Cash settles immediately, no gateway involved
            self._set(phase=SessionPhase.SETTLED, order=order.model_copy(update={"status": OrderStatus.PAID}))
            log.info(f"{self.log_prefix} Cash received. Checkout settled.")
            return self.state

        self._set(phase=SessionPhase.ORDER_CREATED, order=order)
        try:
            await self._cancellable(self.gateway.load)
        except errors.PaymentCancelled:
            raise
        except errors.CheckoutError as e:
            log.error(f"{self.log_prefix} Unable to load payment gateway: {e}")
            await self._fail_and_compensate(str(e))
            raise

        self._set(phase=SessionPhase.AWAITING_GATEWAY)
        await self._request_intent()
        return self.state

    async def confirm(self) -> PaymentSession:
        """
        Confirms the electronic payment through the gateway adapter and verifies it.

        Returns:
            PaymentSession: SETTLED on verified payment, FAILED_CLEANED_UP if the
            customer cancelled at the gateway.

        Raises:
            errors.ValidationError: Card details are not valid yet (nothing sent).
            errors.GatewayDeclined: The gateway refused the payment (order deleted).
            errors.VerificationFailed: The backend did not confirm the payment; the
                session returns to AWAITING_GATEWAY and a retry uses a fresh intent.
            errors.ReconciliationRequired: Verification could not be carried out; the
                order stays PENDING for manual reconciliation.
            errors.PaymentCancelled: The cashier cancelled while the confirmation was outstanding.
        """
        self._guard(SessionPhase.AWAITING_GATEWAY)
        if self.gateway.validation_error:
            raise errors.ValidationError(self.gateway.validation_error)

        if self.state.intentRef is None:
            await self._request_intent()
        intent = self.state.intentRef
        order = self.state.order
        billing = BillingDetails(name=order.customerName, phone=order.phoneNumber)

        log.info(f"{self.log_prefix} Confirming payment intent {intent.gatewayIntentId}.")
        try:
            result = await self._cancellable(self.gateway.confirm_payment,
                                             intent.clientSecret.get_secret_value(), billing)
        except (errors.ValidationError, errors.PaymentCancelled):
            raise
        except errors.CheckoutError as e:
            log.error(f"{self.log_prefix} Gateway confirmation failed: {e}")
            await self._fail_and_compensate(str(e))
            raise

        if result.outcome == ConfirmationOutcome.USER_CANCELLED:
            log.info(f"{self.log_prefix} Payment cancelled at the gateway.")
            await self._fail_and_compensate("Payment cancelled")
            return self.state

        if result.outcome == ConfirmationOutcome.FAILED:
            message = result.errorMessage or "Payment failed"
            log.warning(f"{self.log_prefix} Payment failed at the gateway: {message}")
            await self._fail_and_compensate(f"Payment failed: {message}")
            raise errors.GatewayDeclined(f"Payment failed: {message}")

        if result.gatewayPaymentIntentId and result.gatewayPaymentIntentId != intent.gatewayIntentId:
            # Some intent was charged, but not the one this order asked for
            message = (f"Gateway confirmed intent {result.gatewayPaymentIntentId}, "
                       f"expected {intent.gatewayIntentId}")
            log.critical(f"{self.log_prefix} {message}. REQUIRES MANUAL RECONCILIATION!")
            self._set(phase=SessionPhase.FAILED_NEEDS_RECONCILIATION, error=message)
            raise errors.ReconciliationRequired(message, order.orderId, result.gatewayPaymentIntentId)

        return await self._verify(result.gatewayPaymentMethodId)

    async def cancel(self) -> PaymentSession:
        """
        Abandons the checkout on cashier request.

        Accepted while waiting for the gateway, also while the gateway load, the
        intent request or the confirmation hangs: that call is cancelled and has
        unwound before the order is deleted. A hanging order creation is abandoned
        and the session returns to IDLE. A no-op when nothing has been submitted
        or the session is already finished. Rejected with SessionBusy while the
        payment is being verified or the order is already being deleted.
        """
        if self.phase == SessionPhase.IDLE or self.phase.is_terminal:
            return self.state
        # Verification must run to completion; a running delete is already cleaning up
        if (self.phase == SessionPhase.VERIFYING or self._cancel_requested
                or (self._in_flight and self._step is None)):
            raise errors.SessionBusy(f"Checkout cannot be cancelled now ({self.phase.value})")

        self._cancel_requested = True
        self._cancelled = asyncio.Event()
        try:
            step = self._step
            if step is not None:
                log.warning(f"{self.log_prefix} Abandoning outstanding call on cashier request.")
                step.cancel()
                await asyncio.wait([step])
            if self.phase == SessionPhase.SUBMITTING:
                # No order id yet, nothing to delete
                warning = "Order submission abandoned; the Order Service may still have created the order"
                log.warning(f"{warning}.")
                self._set(phase=SessionPhase.IDLE, error="Order submission cancelled", warning=warning)
            else:
                log.info(f"{self.log_prefix} Payment cancelled by cashier.")
                await self._fail_and_compensate("Payment cancelled")
        finally:
            self._cancelled.set()
        return self.state

    # --- Steps ---

    async def _request_intent(self):
        amount = self.state.order.grandTotal
        try:
            intent = await self._cancellable(self.payments.create_payment_intent, amount, self.currency)
        except errors.PaymentCancelled:
            raise
        except errors.CheckoutError as e:
            log.error(f"{self.log_prefix} Payment intent could not be created: {e}")
            await self._fail_and_compensate(str(e))
            raise
        self._set(intentRef=intent)

    async def _verify(self, payment_method_id: Optional[str]) -> PaymentSession:
        intent = self.state.intentRef
        order = self.state.order
        self._set(phase=SessionPhase.VERIFYING)
        log.info(f"{self.log_prefix} Verifying payment {intent.gatewayIntentId} with the backend.")
        try:
            async with self._request():
                verification = await self.payments.verify_payment(
                    order.orderId,
                    intent.gatewayIntentId,
                    payment_method_id,
                    intent.clientSecret.get_secret_value(),
                )
        except (errors.NetworkError, errors.ServerError) as e:
            message = f"Payment processing failed: {e}"
            log.critical(f"{self.log_prefix} Verification of {intent.gatewayIntentId} failed ({e}). "
                         f"Order left PENDING. REQUIRES MANUAL RECONCILIATION!")
            self._set(phase=SessionPhase.FAILED_NEEDS_RECONCILIATION, intentRef=None, error=message)
            raise errors.ReconciliationRequired(message, order.orderId, intent.gatewayIntentId) from e

        if verification.status != VerificationStatus.COMPLETED:
            # Intent is single use: a retry requests a fresh one
            message = f"Payment verification failed: {verification.message or 'payment not completed'}"
            log.warning(f"{self.log_prefix} {message}. Waiting for retry.")
            self._set(phase=SessionPhase.AWAITING_GATEWAY, intentRef=None, error=message)
            raise errors.VerificationFailed(message)

        details = PaymentDetails(
            gatewayIntentId=intent.gatewayIntentId,
            gatewayPaymentMethodId=payment_method_id,
            status=VerificationStatus.COMPLETED,
        )
        self._set(
            phase=SessionPhase.SETTLED,
            order=order.model_copy(update={"status": OrderStatus.PAID, "paymentDetails": details}),
            paymentDetails=details,
            intentRef=None,
            error=None,
        )
        log.info(f"{self.log_prefix} Payment successful. Checkout settled.")
        return self.state

    async def _fail_and_compensate(self, reason: str):
        """
        Compensation (Saga Pattern): deletes the PENDING order and ends the session.
        Deletion failures are logged and kept as a warning, never raised.
        """
        order = self.state.order
        warning = None
        if order is not None and not self._compensated:
            self._compensated = True
            try:
                async with self._request():
                    await self.orders.delete_order(order.orderId)
                log.info(f"{self.log_prefix} Compensation successful. Order deleted.")
                order = order.model_copy(update={"status": OrderStatus.CANCELLED})
            except errors.CheckoutError as e:
                warning = f"Order {order.orderId} could not be deleted: {e}"
                log.warning(f"{self.log_prefix} COMPENSATION FAILED: {e}. Orphaned PENDING order needs cleanup.")
        self._set(phase=SessionPhase.FAILED_CLEANED_UP, order=order, intentRef=None, error=reason, warning=warning)


class CheckoutTerminal:
    """
    Owns the checkout session of one POS terminal.

    A new checkout may only start once the current one has not left IDLE or has
    reached a terminal phase.
    """

    def __init__(self, orders: OrderServiceClient, payments: PaymentGatewayClient,
                 gateway: GatewayConfirmationAdapter, currency: str = CHECKOUT_CURRENCY):
        self.orders = orders
        self.payments = payments
        self.gateway = gateway
        self.currency = currency
        self.session = self._create()

    def _create(self) -> CheckoutSession:
        return CheckoutSession(self.orders, self.payments, self.gateway, currency=self.currency)

    def new_session(self) -> CheckoutSession:
        """Discards the current session and starts a fresh one."""
        current = self.session
        if current.phase != SessionPhase.IDLE and not current.phase.is_terminal:
            raise errors.SessionBusy(f"Current checkout is still in progress ({current.phase.value})")
        self.session = self._create()
        return self.session

    async def aclose(self):
        await self.orders.aclose()
        await self.payments.aclose()
