"""
mock_payment_service.py — Mock Implementation of the Payment backend (REST API)

This module provides a simulated Payment backend for testing the checkout flow.
It exposes a simple FastAPI application that mimics intent creation and
server-side verification of gateway payments.

Simulation Scenarios (verification, by gatewayPaymentMethodId):
    • Starts with "pm_decline_" → Payment not completed (HTTP 402, status FAILED)
    • Starts with "pm_error_"   → Backend failure (HTTP 500)
    • Unknown intent or wrong client secret → HTTP 400, status FAILED
    • Anything else → Payment COMPLETED

Endpoints:
    POST /api/v1.0/payments/create-payment-intent — Creates an intent and its client secret.
    POST /api/v1.0/payments/verify — Verifies a confirmed payment.

Port:
    Default: 8081 (HTTP)
"""

import logging
import uuid
from decimal import Decimal
from typing import Dict, Optional

from fastapi import APIRouter, FastAPI, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

app = FastAPI(title="Mock Payment Service")
router = APIRouter(prefix="/api/v1.0")
logging.basicConfig(level=logging.INFO)

# gatewayIntentId -> clientSecret
INTENTS: Dict[str, str] = {}


class IntentRequest(BaseModel):
    """
    Represents a payment intent request payload.

    Attributes:
        amount (Decimal): Amount in major currency units.
        currency (str): ISO 4217 currency code (e.g., 'INR').
    """
    amount: Decimal = Field(..., gt=0)
    currency: str


class VerifyRequest(BaseModel):
    orderId: str
    gatewayIntentId: str
    gatewayPaymentMethodId: Optional[str] = None
    clientSecret: str


@router.post("/payments/create-payment-intent")
def create_payment_intent(request: IntentRequest):
    intent_id = f"pi_{uuid.uuid4().hex[:24]}"
    client_secret = f"{intent_id}_secret_{uuid.uuid4().hex[:16]}"
    INTENTS[intent_id] = client_secret
    logging.info(f"[PS] Intent {intent_id} created over {request.amount} {request.currency}.")
    return {"gatewayIntentId": intent_id, "clientSecret": client_secret}


@router.post("/payments/verify")
def verify_payment(request: VerifyRequest):
    """
    Verifies a payment confirmed on the client side.

    Returns:
        dict: {"status": "COMPLETED"} on success.

    Raises:
        HTTPException(500): Simulated backend failure.
    """
    logging.info(f"[PS] Verification for order {request.orderId} (intent {request.gatewayIntentId}).")

    if INTENTS.get(request.gatewayIntentId) != request.clientSecret:
        logging.warning(f"[PS] Unknown intent or client secret for {request.orderId}.")
        return JSONResponse(status_code=400, content={"status": "FAILED", "message": "Unknown payment intent."})

    method_id = request.gatewayPaymentMethodId or ""
    if method_id.startswith("pm_decline_"):
        logging.warning(f"[PS] Payment for {request.orderId} not completed.")
        return JSONResponse(status_code=402, content={"status": "FAILED", "message": "Payment not completed."})

    if method_id.startswith("pm_error_"):
        logging.error(f"[PS] Simulated failure while verifying {request.orderId}.")
        raise HTTPException(status_code=500, detail={"errorCode": "internal_error", "message": "Verification failed."})

    logging.info(f"[PS] Payment for {request.orderId} verified.")
    return {"status": "COMPLETED"}


app.include_router(router)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8081)
