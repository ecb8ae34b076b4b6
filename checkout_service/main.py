"""
main.py — FastAPI Entry Point for the Checkout Service

This module provides the REST API used by the POS front end of one terminal.
It exposes the checkout state machine: the front end dispatches cashier actions
(Cash, UPI/Card, Pay, Cancel, Print) and renders the returned session state.

Responsibilities:
    • Accept checkout submissions and card form updates
    • Drive gateway confirmation, verification and cancellation
    • Render and print receipts of settled checkouts
    • Provide system health information
"""

import logging
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel

from . import errors
from .clients import CHECKOUT_CURRENCY, OrderServiceClient, PaymentGatewayClient
from .gateway import StripeConfirmationAdapter
from .logging_config import setup_logging
from .models import CartLine, PaymentMethod
from .receipt import ReceiptPresenter, stdout_printer
from .workflow import CheckoutSession, CheckoutTerminal

# Initialization
# Configure logging and initialize FastAPI app
setup_logging()
log = logging.getLogger(__name__)
app = FastAPI(title="POS Checkout Service")


class SubmitCheckoutRequest(BaseModel):
    """
    Checkout submission from the cart summary.

    Attributes:
        customerName (str): Customer name entered by the cashier.
        phoneNumber (str): Customer mobile number.
        lines (List[CartLine]): Current cart contents.
        paymentMethod (PaymentMethod): CASH or ELECTRONIC (UPI/Card button).
    """
    customerName: str = ""
    phoneNumber: str = ""
    lines: List[CartLine] = []
    paymentMethod: PaymentMethod


class CardFieldsUpdate(BaseModel):
    number: Optional[str] = None
    expMonth: Optional[int] = None
    expYear: Optional[int] = None
    cvc: Optional[str] = None


def get_terminal(request: Request) -> CheckoutTerminal:
    """Returns the terminal of this process, creating it on first use."""
    terminal = getattr(request.app.state, "terminal", None)
    if terminal is None:
        terminal = CheckoutTerminal(OrderServiceClient(), PaymentGatewayClient(), StripeConfirmationAdapter())
        request.app.state.terminal = terminal
        log.info("Checkout terminal initialised.")
    return terminal


def get_printer():
    """
    Host print facility for receipts. Defaults to the service's stdout; a terminal
    with a directly attached printer overrides this dependency.
    """
    return stdout_printer


def session_view(session: CheckoutSession) -> dict:
    view = session.state.model_dump(mode="json")
    view["validationError"] = session.gateway.validation_error
    return view


def _raise_http(e: errors.CheckoutError, session: CheckoutSession):
    raise HTTPException(
        status_code=e.status_code,
        detail={"errorCode": e.error_code, "message": e.message, "session": session_view(session)},
    )


@app.on_event("shutdown")
async def on_shutdown():
    """Closes the backend HTTP clients of the terminal, if one was created."""
    terminal = getattr(app.state, "terminal", None)
    if terminal is not None:
        await terminal.aclose()


# API Endpoint: Cash / UPI-Card buttons
@app.post("/v1/checkout")
async def submit_checkout(body: SubmitCheckoutRequest, terminal: CheckoutTerminal = Depends(get_terminal)):
    """
    Submits the cart for payment.

    Cash checkouts settle immediately; electronic checkouts return in
    AWAITING_GATEWAY, ready for the card form and /v1/checkout/confirm.

    Raises:
        HTTPException: With the error code of the CheckoutError and the session state.
    """
    session = terminal.session
    try:
        await session.submit(body.customerName, body.phoneNumber, body.lines, body.paymentMethod)
    except errors.CheckoutError as e:
        log.warning(f"Checkout submission failed: {e.error_code} - {e}")
        _raise_http(e, session)
    return session_view(session)


@app.post("/v1/checkout/card")
async def update_card(body: CardFieldsUpdate, terminal: CheckoutTerminal = Depends(get_terminal)):
    """Updates card form fields and returns the field-level validation state."""
    gateway = terminal.gateway
    if not hasattr(gateway, "update_card"):
        raise HTTPException(status_code=400, detail={"errorCode": "validation_error",
                                                     "message": "Gateway does not collect card fields"})
    fields = {"number": body.number, "exp_month": body.expMonth, "exp_year": body.expYear, "cvc": body.cvc}
    gateway.update_card(**{key: value for key, value in fields.items() if value is not None})
    return {"validationError": gateway.validation_error}


@app.post("/v1/checkout/confirm")
async def confirm_payment(terminal: CheckoutTerminal = Depends(get_terminal)):
    """Confirms the electronic payment and verifies it with the backend."""
    session = terminal.session
    try:
        await session.confirm()
    except errors.ReconciliationRequired as e:
        log.critical(f"[Order: {e.order_id}] Checkout needs reconciliation (intent {e.gateway_intent_id}).")
        _raise_http(e, session)
    except errors.CheckoutError as e:
        _raise_http(e, session)
    return session_view(session)


@app.post("/v1/checkout/cancel")
async def cancel_checkout(terminal: CheckoutTerminal = Depends(get_terminal)):
    """Close/cancel action of the payment modal."""
    session = terminal.session
    try:
        await session.cancel()
    except errors.CheckoutError as e:
        _raise_http(e, session)
    return session_view(session)


@app.get("/v1/checkout")
async def get_checkout(terminal: CheckoutTerminal = Depends(get_terminal)):
    return session_view(terminal.session)


@app.post("/v1/checkout/new")
async def new_checkout(terminal: CheckoutTerminal = Depends(get_terminal)):
    """Discards a finished checkout and starts a new one."""
    try:
        session = terminal.new_session()
    except errors.CheckoutError as e:
        _raise_http(e, terminal.session)
    return session_view(session)


@app.get("/v1/checkout/receipt", response_class=PlainTextResponse)
async def get_receipt(terminal: CheckoutTerminal = Depends(get_terminal)):
    session = terminal.session
    try:
        presenter = ReceiptPresenter(session.state, currency=terminal.currency)
    except errors.CheckoutError as e:
        _raise_http(e, session)
    return presenter.render()


@app.post("/v1/checkout/receipt/print")
async def print_receipt(terminal: CheckoutTerminal = Depends(get_terminal), printer=Depends(get_printer)):
    """Print action of the receipt popup, delegated to the host print facility."""
    session = terminal.session
    try:
        presenter = ReceiptPresenter(session.state, printer=printer, currency=terminal.currency)
    except errors.CheckoutError as e:
        _raise_http(e, session)
    presenter.print()
    log.info(f"{session.log_prefix} Receipt printed.")
    return {"status": "printed", "orderId": presenter.order.orderId}


# Health Check Endpoint
@app.get("/health")
def health_check():
    """
    Simple health check endpoint.

    Returns:
        dict: A basic JSON object indicating service availability.
    """
    return {"status": "ok", "currency": CHECKOUT_CURRENCY}
