"""
Shared fixtures: recording test doubles for the backends and the gateway, and
real clients wired to the mock backends through httpx.ASGITransport.
"""

import asyncio
from datetime import datetime, timezone
from decimal import Decimal

import httpx
import pytest
import pytest_asyncio

from checkout_service import errors
from checkout_service.clients import OrderServiceClient, PaymentGatewayClient
from checkout_service.gateway import GatewayConfirmationAdapter
from checkout_service.models import (
    CartLine,
    ConfirmationOutcome,
    ConfirmationResult,
    Order,
    OrderStatus,
    PaymentIntentRef,
    VerificationResult,
    VerificationStatus,
)
from checkout_service.workflow import CheckoutSession
from mock_services import mock_order_service, mock_payment_service


class CallLog:
    """Records calls across all doubles and the peak number of outstanding calls."""

    def __init__(self):
        self.calls = []
        self.outstanding = 0
        self.peak = 0

    async def enter(self, name, *args):
        self.calls.append((name, args))
        self.outstanding += 1
        self.peak = max(self.peak, self.outstanding)
        await asyncio.sleep(0)

    def leave(self):
        self.outstanding -= 1

    def names(self):
        return [name for name, _ in self.calls]

    def count(self, name):
        return self.names().count(name)


class FakeOrders:
    def __init__(self, log: CallLog):
        self.log = log
        self.create_error = None
        self.delete_error = None
        self.created = 0

    async def create_order(self, request):
        await self.log.enter("create_order", request)
        try:
            if self.create_error:
                raise self.create_error
            self.created += 1
            return Order(
                orderId=f"ORD-{self.created}",
                status=OrderStatus.PENDING,
                createdAt=datetime(2026, 1, 5, 14, 30, tzinfo=timezone.utc),
                **request.model_dump(),
            )
        finally:
            self.log.leave()

    async def delete_order(self, order_id):
        await self.log.enter("delete_order", order_id)
        try:
            if self.delete_error:
                raise self.delete_error
        finally:
            self.log.leave()

    async def aclose(self):
        pass


class FakePayments:
    def __init__(self, log: CallLog):
        self.log = log
        self.intent_error = None
        self.verify_results = []
        self.verify_error = None
        self.intents = 0

    async def create_payment_intent(self, amount, currency):
        await self.log.enter("create_payment_intent", amount, currency)
        try:
            if self.intent_error:
                raise self.intent_error
            self.intents += 1
            intent_id = f"pi_test{self.intents}"
            return PaymentIntentRef(gatewayIntentId=intent_id, clientSecret=f"{intent_id}_secret_abc")
        finally:
            self.log.leave()

    async def verify_payment(self, order_id, gateway_intent_id, gateway_payment_method_id, client_secret):
        await self.log.enter("verify_payment", order_id, gateway_intent_id, gateway_payment_method_id, client_secret)
        try:
            if self.verify_error:
                raise self.verify_error
            if self.verify_results:
                return self.verify_results.pop(0)
            return VerificationResult(status=VerificationStatus.COMPLETED)
        finally:
            self.log.leave()

    async def aclose(self):
        pass


class FakeGateway(GatewayConfirmationAdapter):
    """Scripted confirmation adapter. Reports SUCCEEDED for the intent of the given secret by default."""

    def __init__(self, log: CallLog):
        super().__init__()
        self.log = log
        self.outcomes = []
        self.load_error = None
        self.confirm_error = None

    async def load(self):
        await self.log.enter("load")
        try:
            if self.load_error:
                raise self.load_error
        finally:
            self.log.leave()

    async def confirm_payment(self, client_secret, billing_details):
        await self.log.enter("confirm_payment", client_secret, billing_details)
        try:
            if self.confirm_error:
                raise self.confirm_error
            intent_id = client_secret.partition("_secret_")[0]
            if self.outcomes:
                outcome, message = self.outcomes.pop(0)
            else:
                outcome, message = ConfirmationOutcome.SUCCEEDED, None
            return ConfirmationResult(
                outcome=outcome,
                gatewayPaymentIntentId=intent_id,
                gatewayPaymentMethodId="pm_card_visa",
                errorMessage=message,
            )
        finally:
            self.log.leave()

    def set_field_error(self, error):
        self._publish_validation(error)


@pytest.fixture
def call_log():
    return CallLog()


@pytest.fixture
def fake_orders(call_log):
    return FakeOrders(call_log)


@pytest.fixture
def fake_payments(call_log):
    return FakePayments(call_log)


@pytest.fixture
def fake_gateway(call_log):
    return FakeGateway(call_log)


@pytest.fixture
def session(fake_orders, fake_payments, fake_gateway):
    return CheckoutSession(fake_orders, fake_payments, fake_gateway, currency="INR")


@pytest.fixture
def cart():
    return [CartLine(itemId="item-1", name="Masala Dosa", unitPrice=Decimal("100"), quantity=2)]


@pytest.fixture
def network_error():
    return errors.NetworkError("connection refused")


@pytest_asyncio.fixture
async def order_client():
    mock_order_service.ORDERS.clear()
    transport = httpx.ASGITransport(app=mock_order_service.app)
    client = OrderServiceClient("http://orders.test/api/v1.0", token_provider=lambda: "token-123",
                                transport=transport)
    yield client
    await client.aclose()


@pytest_asyncio.fixture
async def payment_client():
    mock_payment_service.INTENTS.clear()
    transport = httpx.ASGITransport(app=mock_payment_service.app)
    client = PaymentGatewayClient("http://payments.test/api/v1.0", token_provider=lambda: "token-123",
                                  transport=transport)
    yield client
    await client.aclose()
