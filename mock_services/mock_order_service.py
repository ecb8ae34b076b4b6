"""
mock_order_service.py — Mock Implementation of the Order Service (REST API)

This module provides a simulated Order Service for local runs and tests of the checkout flow.
Orders are kept in memory only.

Endpoints:
    POST   /api/v1.0/orders            — Creates a PENDING order (201).
    GET    /api/v1.0/orders/{orderId}  — Returns a stored order.
    DELETE /api/v1.0/orders/{orderId}  — Deletes an order (204, or 404 if unknown).

Port:
    Default: 8080 (HTTP)
"""

import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Dict

from fastapi import APIRouter, FastAPI, HTTPException, Response

from checkout_service.models import Order, OrderRequest, OrderStatus

app = FastAPI(title="Mock Order Service")
router = APIRouter(prefix="/api/v1.0")
logging.basicConfig(level=logging.INFO)

# orderId -> Order
ORDERS: Dict[str, Order] = {}


@router.post("/orders", status_code=201)
def create_order(request: OrderRequest):
    """
    Stores a new PENDING order.

    Payload validation (missing customer fields, non-positive prices) is done by
    the OrderRequest model and answered with 422.

    Returns:
        dict: The stored order including its generated orderId.
    """
    order_id = f"ORD{int(time.time() * 1000)}{uuid.uuid4().hex[:6].upper()}"
    order = Order(
        orderId=order_id,
        status=OrderStatus.PENDING,
        createdAt=datetime.now(timezone.utc),
        **request.model_dump(),
    )
    ORDERS[order_id] = order
    logging.info(f"[OS] Order {order_id} created ({request.paymentMethod.value}, {request.grandTotal}).")
    return order.model_dump(mode="json")


@router.get("/orders/{order_id}")
def get_order(order_id: str):
    order = ORDERS.get(order_id)
    if order is None:
        raise HTTPException(status_code=404, detail={"errorCode": "order_not_found", "message": "Order not found."})
    return order.model_dump(mode="json")


@router.delete("/orders/{order_id}", status_code=204)
def delete_order(order_id: str):
    if ORDERS.pop(order_id, None) is None:
        logging.warning(f"[OS] Order {order_id} not found for deletion.")
        raise HTTPException(status_code=404, detail={"errorCode": "order_not_found", "message": "Order not found."})
    logging.info(f"[OS] Order {order_id} deleted.")
    return Response(status_code=204)


app.include_router(router)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8080)
