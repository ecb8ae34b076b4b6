"""
Tests for the checkout state machine: cash and electronic paths, compensation,
verification outcomes and the busy/cancel guards.
"""

import asyncio
from decimal import Decimal

import pytest

from checkout_service import errors
from checkout_service.models import (
    ConfirmationOutcome,
    ConfirmationResult,
    OrderStatus,
    PaymentMethod,
    SessionPhase,
    VerificationResult,
    VerificationStatus,
)
from checkout_service.workflow import CheckoutTerminal

GATEWAY_CALLS = {"load", "create_payment_intent", "confirm_payment", "verify_payment"}


async def submit_electronic(session, cart):
    return await session.submit("Asha", "9876543210", cart, PaymentMethod.ELECTRONIC)


@pytest.mark.asyncio
async def test_cash_checkout_settles_without_gateway(session, cart, call_log):
    state = await session.submit("Asha", "9876543210", cart, PaymentMethod.CASH)

    assert state.phase == SessionPhase.SETTLED
    assert state.order.status == OrderStatus.PAID
    assert state.order.subtotal == Decimal("200.00")
    assert state.order.tax == Decimal("2.00")
    assert state.order.grandTotal == Decimal("202.00")
    assert call_log.names() == ["create_order"]
    assert not GATEWAY_CALLS & set(call_log.names())


@pytest.mark.asyncio
async def test_submit_sends_totals_and_customer_details(session, cart, call_log):
    await session.submit("  Asha ", "9876543210", cart, PaymentMethod.CASH)

    _, (request,) = call_log.calls[0]
    assert request.customerName == "Asha"
    assert request.lines == cart
    assert request.grandTotal == Decimal("202.00")
    assert request.paymentMethod == PaymentMethod.CASH


@pytest.mark.asyncio
@pytest.mark.parametrize("name, phone", [("", "9876543210"), ("Asha", ""), ("   ", "9876543210")])
async def test_missing_customer_details_are_rejected_without_network(session, cart, call_log, name, phone):
    with pytest.raises(errors.ValidationError):
        await session.submit(name, phone, cart, PaymentMethod.CASH)

    assert session.phase == SessionPhase.IDLE
    assert call_log.calls == []


@pytest.mark.asyncio
async def test_empty_cart_is_rejected(session, call_log):
    with pytest.raises(errors.ValidationError, match="empty"):
        await session.submit("Asha", "9876543210", [], PaymentMethod.ELECTRONIC)

    assert session.phase == SessionPhase.IDLE
    assert call_log.calls == []


@pytest.mark.asyncio
async def test_order_creation_failure_returns_to_idle(session, cart, fake_orders, network_error):
    fake_orders.create_error = network_error

    with pytest.raises(errors.NetworkError):
        await session.submit("Asha", "9876543210", cart, PaymentMethod.CASH)

    assert session.phase == SessionPhase.IDLE
    assert session.state.order is None
    assert session.state.error

    # The cashier may simply try again
    fake_orders.create_error = None
    state = await session.submit("Asha", "9876543210", cart, PaymentMethod.CASH)
    assert state.phase == SessionPhase.SETTLED


@pytest.mark.asyncio
async def test_electronic_submit_awaits_gateway(session, cart, call_log):
    state = await submit_electronic(session, cart)

    assert state.phase == SessionPhase.AWAITING_GATEWAY
    assert state.order.status == OrderStatus.PENDING
    assert state.intentRef.gatewayIntentId == "pi_test1"
    assert call_log.names() == ["create_order", "load", "create_payment_intent"]
    assert call_log.calls[2][1] == (Decimal("202.00"), "INR")


@pytest.mark.asyncio
async def test_successful_electronic_payment_settles(session, cart, call_log):
    await submit_electronic(session, cart)
    state = await session.confirm()

    assert state.phase == SessionPhase.SETTLED
    assert state.order.status == OrderStatus.PAID
    assert state.order.paymentDetails.gatewayIntentId == "pi_test1"
    assert state.order.paymentDetails.gatewayPaymentMethodId == "pm_card_visa"
    assert state.paymentDetails.status == VerificationStatus.COMPLETED
    assert state.intentRef is None
    assert call_log.count("delete_order") == 0
    assert call_log.names()[-2:] == ["confirm_payment", "verify_payment"]
    _, verify_args = call_log.calls[-1]
    assert verify_args == ("ORD-1", "pi_test1", "pm_card_visa", "pi_test1_secret_abc")


@pytest.mark.asyncio
async def test_confirmation_uses_customer_as_billing_details(session, cart, call_log):
    await submit_electronic(session, cart)
    await session.confirm()

    (secret, billing), = [args for name, args in call_log.calls if name == "confirm_payment"]
    assert secret == "pi_test1_secret_abc"
    assert billing.name == "Asha"
    assert billing.phone == "9876543210"


@pytest.mark.asyncio
async def test_user_cancel_at_gateway_deletes_order_once(session, cart, fake_gateway, call_log):
    fake_gateway.outcomes.append((ConfirmationOutcome.USER_CANCELLED, None))
    await submit_electronic(session, cart)

    state = await session.confirm()

    assert state.phase == SessionPhase.FAILED_CLEANED_UP
    assert state.order.status == OrderStatus.CANCELLED
    assert [args for name, args in call_log.calls if name == "delete_order"] == [("ORD-1",)]
    assert call_log.count("verify_payment") == 0


@pytest.mark.asyncio
async def test_declined_payment_deletes_order_and_raises(session, cart, fake_gateway, call_log):
    fake_gateway.outcomes.append((ConfirmationOutcome.FAILED, "Your card was declined."))
    await submit_electronic(session, cart)

    with pytest.raises(errors.GatewayDeclined, match="declined"):
        await session.confirm()

    assert session.phase == SessionPhase.FAILED_CLEANED_UP
    assert call_log.count("delete_order") == 1
    assert call_log.count("verify_payment") == 0


@pytest.mark.asyncio
async def test_cashier_cancel_while_awaiting_gateway(session, cart, call_log):
    await submit_electronic(session, cart)

    state = await session.cancel()
    again = await session.cancel()

    assert state.phase == SessionPhase.FAILED_CLEANED_UP
    assert again.phase == SessionPhase.FAILED_CLEANED_UP
    assert call_log.count("delete_order") == 1
    assert call_log.count("confirm_payment") == 0


@pytest.mark.asyncio
async def test_cancel_before_submission_is_a_noop(session, call_log):
    state = await session.cancel()

    assert state.phase == SessionPhase.IDLE
    assert call_log.calls == []


@pytest.mark.asyncio
async def test_intent_failure_cleans_up_order(session, cart, fake_payments, call_log):
    fake_payments.intent_error = errors.GatewayUnavailable("Payment gateway is not reachable")

    with pytest.raises(errors.GatewayUnavailable):
        await submit_electronic(session, cart)

    assert session.phase == SessionPhase.FAILED_CLEANED_UP
    assert call_log.count("delete_order") == 1


@pytest.mark.asyncio
async def test_gateway_load_failure_cleans_up_order(session, cart, fake_gateway, call_log):
    fake_gateway.load_error = errors.GatewayUnavailable("Unable to load the payment gateway")

    with pytest.raises(errors.GatewayUnavailable):
        await submit_electronic(session, cart)

    assert session.phase == SessionPhase.FAILED_CLEANED_UP
    assert call_log.names() == ["create_order", "load", "delete_order"]


@pytest.mark.asyncio
async def test_failed_compensation_is_only_a_warning(session, cart, fake_orders, fake_gateway, network_error):
    fake_orders.delete_error = network_error
    fake_gateway.outcomes.append((ConfirmationOutcome.USER_CANCELLED, None))
    await submit_electronic(session, cart)

    state = await session.confirm()

    assert state.phase == SessionPhase.FAILED_CLEANED_UP
    assert "ORD-1" in state.warning
    assert state.order.status == OrderStatus.PENDING


@pytest.mark.asyncio
async def test_verification_transport_failure_requires_reconciliation(session, cart, fake_payments, call_log,
                                                                      network_error):
    fake_payments.verify_error = network_error
    await submit_electronic(session, cart)

    with pytest.raises(errors.ReconciliationRequired) as excinfo:
        await session.confirm()

    assert excinfo.value.order_id == "ORD-1"
    assert excinfo.value.gateway_intent_id == "pi_test1"
    assert session.phase == SessionPhase.FAILED_NEEDS_RECONCILIATION
    assert session.state.order.status == OrderStatus.PENDING
    assert call_log.count("delete_order") == 0


@pytest.mark.asyncio
async def test_verification_server_error_requires_reconciliation(session, cart, fake_payments, call_log):
    fake_payments.verify_error = errors.ServerError("Payment verification failed (500)", code=500)
    await submit_electronic(session, cart)

    with pytest.raises(errors.ReconciliationRequired):
        await session.confirm()

    assert session.phase == SessionPhase.FAILED_NEEDS_RECONCILIATION
    assert call_log.count("delete_order") == 0


@pytest.mark.asyncio
async def test_failed_verification_allows_retry_with_fresh_intent(session, cart, fake_payments, call_log):
    fake_payments.verify_results.append(VerificationResult(status=VerificationStatus.FAILED, message="not captured"))
    await submit_electronic(session, cart)

    with pytest.raises(errors.VerificationFailed):
        await session.confirm()
    assert session.phase == SessionPhase.AWAITING_GATEWAY
    assert session.state.intentRef is None
    assert call_log.count("delete_order") == 0

    state = await session.confirm()

    assert state.phase == SessionPhase.SETTLED
    assert state.paymentDetails.gatewayIntentId == "pi_test2"
    assert call_log.count("create_payment_intent") == 2
    assert call_log.count("verify_payment") == 2


@pytest.mark.asyncio
async def test_confirm_rejected_while_card_invalid(session, cart, fake_gateway, call_log):
    await submit_electronic(session, cart)
    fake_gateway.set_field_error("Your card number is invalid.")

    with pytest.raises(errors.ValidationError, match="card number"):
        await session.confirm()

    assert session.phase == SessionPhase.AWAITING_GATEWAY
    assert call_log.count("confirm_payment") == 0

    fake_gateway.set_field_error(None)
    state = await session.confirm()
    assert state.phase == SessionPhase.SETTLED


@pytest.mark.asyncio
async def test_mismatched_intent_is_not_verified(session, cart, fake_gateway, call_log):
    await submit_electronic(session, cart)

    async def confirm_other(client_secret, billing_details):
        return ConfirmationResult(outcome=ConfirmationOutcome.SUCCEEDED, gatewayPaymentIntentId="pi_other",
                                  gatewayPaymentMethodId="pm_card_visa")

    fake_gateway.confirm_payment = confirm_other

    with pytest.raises(errors.ReconciliationRequired):
        await session.confirm()

    assert session.phase == SessionPhase.FAILED_NEEDS_RECONCILIATION
    assert call_log.count("verify_payment") == 0
    assert call_log.count("delete_order") == 0


@pytest.mark.asyncio
async def test_resubmission_while_in_flight_is_busy(session, cart, fake_orders, call_log):
    release = asyncio.Event()
    original = fake_orders.create_order

    async def slow_create(request):
        await release.wait()
        return await original(request)

    fake_orders.create_order = slow_create
    first = asyncio.create_task(session.submit("Asha", "9876543210", cart, PaymentMethod.ELECTRONIC))
    await asyncio.sleep(0)
    assert session.phase == SessionPhase.SUBMITTING

    with pytest.raises(errors.SessionBusy):
        await session.submit("Asha", "9876543210", cart, PaymentMethod.ELECTRONIC)
    with pytest.raises(errors.SessionBusy):
        await session.confirm()

    release.set()
    state = await first
    assert state.phase == SessionPhase.AWAITING_GATEWAY
    assert fake_orders.created == 1


@pytest.mark.asyncio
async def test_cancel_rejected_while_verifying(session, cart, fake_payments, call_log):
    release = asyncio.Event()
    original = fake_payments.verify_payment

    async def slow_verify(*args):
        await release.wait()
        return await original(*args)

    fake_payments.verify_payment = slow_verify
    await submit_electronic(session, cart)
    confirming = asyncio.create_task(session.confirm())
    while session.phase != SessionPhase.VERIFYING:
        await asyncio.sleep(0)

    with pytest.raises(errors.SessionBusy):
        await session.cancel()
    with pytest.raises(errors.SessionBusy):
        await session.confirm()

    release.set()
    state = await confirming
    assert state.phase == SessionPhase.SETTLED
    assert call_log.count("delete_order") == 0


@pytest.mark.asyncio
async def test_terminal_session_rejects_new_submission(session, cart):
    await session.submit("Asha", "9876543210", cart, PaymentMethod.CASH)

    with pytest.raises(errors.SessionClosed):
        await session.submit("Asha", "9876543210", cart, PaymentMethod.CASH)
    with pytest.raises(errors.SessionClosed):
        await session.confirm()


@pytest.mark.asyncio
async def test_never_more_than_one_outstanding_request(session, cart, fake_payments, call_log):
    fake_payments.verify_results.append(VerificationResult(status=VerificationStatus.FAILED))
    await submit_electronic(session, cart)
    with pytest.raises(errors.VerificationFailed):
        await session.confirm()
    await session.confirm()

    assert call_log.peak == 1


@pytest.mark.asyncio
async def test_terminal_starts_new_session_only_when_finished(fake_orders, fake_payments, fake_gateway, cart):
    terminal = CheckoutTerminal(fake_orders, fake_payments, fake_gateway)
    first = terminal.session
    await first.submit("Asha", "9876543210", cart, PaymentMethod.ELECTRONIC)

    with pytest.raises(errors.SessionBusy):
        terminal.new_session()

    await first.cancel()
    second = terminal.new_session()

    assert second is not first
    assert second.phase == SessionPhase.IDLE


def hanging(call_log, name, release):
    """A double that records the call and then waits until released."""
    async def call(*args):
        try:
            await call_log.enter(name, *args)
            await release.wait()
        finally:
            call_log.leave()
    return call


async def until_called(call_log, name):
    while call_log.count(name) == 0:
        await asyncio.sleep(0)


@pytest.mark.asyncio
async def test_cancel_abandons_hung_intent_request(fake_orders, fake_payments, fake_gateway, cart, call_log):
    terminal = CheckoutTerminal(fake_orders, fake_payments, fake_gateway)
    session = terminal.session
    fake_payments.create_payment_intent = hanging(call_log, "create_payment_intent", asyncio.Event())
    submitting = asyncio.create_task(submit_electronic(session, cart))
    await until_called(call_log, "create_payment_intent")
    assert session.phase == SessionPhase.AWAITING_GATEWAY

    with pytest.raises(errors.SessionBusy):
        terminal.new_session()

    state = await session.cancel()

    assert state.phase == SessionPhase.FAILED_CLEANED_UP
    assert state.order.status == OrderStatus.CANCELLED
    assert call_log.names() == ["create_order", "load", "create_payment_intent", "delete_order"]
    assert call_log.peak == 1
    with pytest.raises(errors.PaymentCancelled):
        await submitting
    assert terminal.new_session().phase == SessionPhase.IDLE


@pytest.mark.asyncio
async def test_cancel_abandons_hung_confirmation(session, cart, fake_gateway, call_log):
    await submit_electronic(session, cart)
    fake_gateway.confirm_payment = hanging(call_log, "confirm_payment", asyncio.Event())
    confirming = asyncio.create_task(session.confirm())
    await until_called(call_log, "confirm_payment")

    with pytest.raises(errors.SessionBusy):
        await session.confirm()

    state = await session.cancel()

    assert state.phase == SessionPhase.FAILED_CLEANED_UP
    assert call_log.count("delete_order") == 1
    assert call_log.count("verify_payment") == 0
    assert call_log.peak == 1
    with pytest.raises(errors.PaymentCancelled):
        await confirming
    assert session.phase == SessionPhase.FAILED_CLEANED_UP


@pytest.mark.asyncio
async def test_cancel_abandons_hung_order_creation(session, cart, fake_orders, call_log):
    original = fake_orders.create_order
    fake_orders.create_order = hanging(call_log, "create_order", asyncio.Event())
    submitting = asyncio.create_task(submit_electronic(session, cart))
    await until_called(call_log, "create_order")

    state = await session.cancel()

    assert state.phase == SessionPhase.IDLE
    assert state.warning
    assert call_log.count("delete_order") == 0
    with pytest.raises(errors.PaymentCancelled):
        await submitting

    fake_orders.create_order = original
    state = await submit_electronic(session, cart)
    assert state.phase == SessionPhase.AWAITING_GATEWAY
    assert state.warning is None
