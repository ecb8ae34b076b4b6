"""
This module provides communication clients for the backends used by the checkout core:
- Order Service (REST API)
- Payment backend (REST API) fronting the payment gateway
Each class encapsulates its protocol logic, error handling, and connection management.
HTTP failures are translated into the checkout error taxonomy (see errors.py).
"""

import logging
import os
from decimal import Decimal
from typing import Callable, Optional

import httpx
import pydantic

from . import errors
from .models import (
    Order,
    OrderRequest,
    PaymentIntentRef,
    VerificationResult,
    VerificationStatus,
)

# Service addresses (normally taken from env vars)
ORDER_SERVICE_URL = os.environ.get("ORDER_SERVICE_URL", "http://localhost:8080/api/v1.0")
PAYMENT_SERVICE_URL = os.environ.get("PAYMENT_SERVICE_URL", "http://localhost:8080/api/v1.0")
CHECKOUT_CURRENCY = os.environ.get("CHECKOUT_CURRENCY", "INR")
# Unset means no timeout: a hung call keeps the session in its current phase
HTTP_TIMEOUT = os.environ.get("CHECKOUT_HTTP_TIMEOUT")

log = logging.getLogger(__name__)

TokenProvider = Callable[[], Optional[str]]


def env_token_provider() -> Optional[str]:
    """Reads the cashier's bearer token from the session environment."""
    return os.environ.get("POS_AUTH_TOKEN")


def _parse(model, response: httpx.Response):
    try:
        return model.model_validate(response.json())
    except (ValueError, pydantic.ValidationError) as e:
        raise errors.ServerError(f"Unexpected response from {response.url}", code=response.status_code) from e


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or response.reason_phrase
    if isinstance(body, dict):
        detail = body.get("message") or body.get("detail") or body
        if isinstance(detail, dict):
            return str(detail.get("message") or detail)
        return str(detail)
    return str(body)


class _BackendClient:
    """
    Shared plumbing for the REST clients: base URL, bearer credential and timeouts.
    """
    def __init__(self, base_url: str, token_provider: TokenProvider = env_token_provider,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        """
        Initializes the HTTP client with the configured timeout.
        Args:
            base_url (str): Root URL of the backend API.
            token_provider (callable): Returns the bearer token, or None if there is none.
            transport (httpx.AsyncBaseTransport): Optional transport, e.g. to run against an ASGI app.
        """
        timeout_config = httpx.Timeout(float(HTTP_TIMEOUT) if HTTP_TIMEOUT else None)
        self.token_provider = token_provider
        self.client = httpx.AsyncClient(base_url=base_url, timeout=timeout_config, transport=transport)

    def _headers(self) -> dict:
        token = self.token_provider()
        return {"Authorization": f"Bearer {token}"} if token else {}

    async def aclose(self):
        """Closes the HTTP client session."""
        await self.client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        await self.aclose()


# --- Order Service Client (REST) ---
class OrderServiceClient(_BackendClient):
    """
    Client for the Order Service (REST API).
    Creates pending orders and deletes them again as a compensating action.
    """
    def __init__(self, base_url: str = ORDER_SERVICE_URL, **kwargs):
        super().__init__(base_url, **kwargs)

    async def create_order(self, order_request: OrderRequest) -> Order:
        """
        Creates a new PENDING order via the Order Service REST API.
        Args:
            order_request (OrderRequest): Validated order payload.
        Returns:
            Order: The order as persisted by the backend, including its orderId.
        Raises:
            errors.NetworkError: If the request fails without a usable response (unreachable, undecodable body).
            errors.ValidationError: If the service rejects the payload (400/422).
            errors.ServerError: For any other error status.
        """
        payload = order_request.model_dump(mode="json")
        try:
            response = await self.client.post("/orders", json=payload, headers=self._headers())
            response.raise_for_status()
        except httpx.RequestError as e:
            log.error(f"Order Service request failed while creating order: {e!r}")
            raise errors.NetworkError(f"Order service request failed: {e!r}") from e
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            detail = _error_detail(e.response)
            if status in (400, 422):
                log.warning(f"Order rejected by Order Service: {detail}")
                raise errors.ValidationError(f"Order rejected: {detail}") from e
            log.error(f"HTTP error while creating order: {status} - {detail}")
            raise errors.ServerError(f"Order service error ({status})", code=status) from e

        order = _parse(Order, response)
        log.info(f"[Order: {order.orderId}] Order created with status {order.status.value}.")
        return order

    async def delete_order(self, order_id: str) -> None:
        """
        Deletes an order. Used as a compensating action only.
        A 404 counts as success: the order is already gone.
        Args:
            order_id (str): The order to delete.
        Raises:
            errors.NetworkError: If the request fails without a usable response (unreachable, undecodable body).
            errors.ServerError: If deletion is neither confirmed nor idempotently absent.
        """
        log.info(f"[Order: {order_id}] Compensation: sending DELETE to Order Service.")
        try:
            response = await self.client.delete(f"/orders/{order_id}", headers=self._headers())
        except httpx.RequestError as e:
            raise errors.NetworkError(f"Order service request failed: {e!r}") from e

        if response.status_code == 404:
            log.info(f"[Order: {order_id}] Order already absent, nothing to delete.")
            return
        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            raise errors.ServerError(f"Order deletion failed ({status})", code=status) from e


# --- Payment Gateway Client (REST) ---
class PaymentGatewayClient(_BackendClient):
    """
    Client for the Payment backend (REST API).
    Requests payment intents and asks the backend to verify confirmed payments.
    """
    def __init__(self, base_url: str = PAYMENT_SERVICE_URL, **kwargs):
        super().__init__(base_url, **kwargs)

    async def create_payment_intent(self, amount: Decimal, currency: str = CHECKOUT_CURRENCY) -> PaymentIntentRef:
        """
        Requests a gateway-side payment intent sized to the grand total.
        Args:
            amount (Decimal): Amount in major currency units. Must be greater than zero.
            currency (str): ISO currency code (e.g. 'INR').
        Returns:
            PaymentIntentRef: Intent id and its single-use client secret.
        Raises:
            errors.ValidationError: If the amount is not positive (no call is made).
            errors.GatewayUnavailable: If the request fails without a usable response.
            errors.ServerError: If the backend returns an error status.
        """
        if amount <= 0:
            raise errors.ValidationError("Payment amount must be greater than zero")

        payload = {"amount": float(amount), "currency": currency}
        try:
            response = await self.client.post("/payments/create-payment-intent", json=payload,
                                              headers=self._headers())
            response.raise_for_status()
        except httpx.RequestError as e:
            log.error(f"Payment backend request failed while creating intent: {e!r}")
            raise errors.GatewayUnavailable(f"Payment gateway request failed: {e!r}") from e
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            log.error(f"HTTP error while creating payment intent: {status} - {_error_detail(e.response)}")
            raise errors.ServerError(f"Payment intent could not be created ({status})", code=status) from e

        intent = _parse(PaymentIntentRef, response)
        log.info(f"Payment intent {intent.gatewayIntentId} created for {amount} {currency}.")
        return intent

    async def verify_payment(self, order_id: str, gateway_intent_id: str,
                             gateway_payment_method_id: Optional[str], client_secret: str) -> VerificationResult:
        """
        Asks the backend to re-confirm the gateway's authoritative charge status.
        Args:
            order_id (str): The order the payment belongs to.
            gateway_intent_id (str): The confirmed intent.
            gateway_payment_method_id (str): The payment method used for the confirmation.
            client_secret (str): The intent's client secret.
        Returns:
            VerificationResult: COMPLETED, or FAILED for an explicit business refusal (400/402/409).
        Raises:
            errors.NetworkError: If the request fails without a usable response. Payment status is unknown.
            errors.ServerError: For any other error status. Payment status is unknown.
        """
        payload = {
            "orderId": order_id,
            "gatewayIntentId": gateway_intent_id,
            "gatewayPaymentMethodId": gateway_payment_method_id,
            "clientSecret": client_secret,
        }
        try:
            response = await self.client.post("/payments/verify", json=payload, headers=self._headers())
            response.raise_for_status()
        except httpx.RequestError as e:
            log.error(f"[Order: {order_id}] Payment verification request failed: {e!r}. Status unknown.")
            raise errors.NetworkError(f"Payment verification request failed: {e!r}") from e
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            detail = _error_detail(e.response)
            if status in (400, 402, 409):
                log.warning(f"[Order: {order_id}] Payment verification refused: {detail}")
                return VerificationResult(status=VerificationStatus.FAILED, message=detail)
            log.error(f"[Order: {order_id}] HTTP error during payment verification: {status} - {detail}")
            raise errors.ServerError(f"Payment verification failed ({status})", code=status) from e

        return _parse(VerificationResult, response)
