"""
Mastercard Capture Route.

Endpoint:
  POST /api/v1/mastercard/orders/{order_id}/capture — Capture an authorized payment

Only orders in 'processing' that are not yet captured can be captured;
anything else is rejected without calling the gateway.
"""

import logging

from fastapi import APIRouter, Depends

from app.core.dependencies import get_dispatcher
from app.schemas.mastercard import TransactionView
from app.services.payment_dispatcher import PaymentDispatcher

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post(
    "/orders/{order_id}/capture",
    response_model=TransactionView,
    summary="Capture an authorized Mastercard payment",
    tags=["mastercard", "payments"],
)
async def capture_payment(
    order_id: str,
    dispatcher: PaymentDispatcher = Depends(get_dispatcher),
):
    txn = await dispatcher.capture(order_id)
    return TransactionView(status="captured", transaction=txn, gateway_code=txn.gateway_code)
