"""
Mastercard Refund Route.

Endpoint:
  POST /api/v1/mastercard/orders/{order_id}/refund — Refund a captured payment

Body is optional; the amount defaults to the order total.
"""

from typing import Optional

from fastapi import APIRouter, Body, Depends

from app.core.dependencies import get_dispatcher
from app.schemas.mastercard import RefundRequest, TransactionView
from app.services.payment_dispatcher import PaymentDispatcher

router = APIRouter()


@router.post(
    "/orders/{order_id}/refund",
    response_model=TransactionView,
    summary="Refund a Mastercard payment",
    tags=["mastercard", "payments"],
)
async def refund_payment(
    order_id: str,
    body: Optional[RefundRequest] = Body(None),
    dispatcher: PaymentDispatcher = Depends(get_dispatcher),
):
    body = body or RefundRequest()
    txn = await dispatcher.refund(order_id, amount=body.amount, reason=body.reason)
    return TransactionView(status="refunded", transaction=txn, gateway_code=txn.gateway_code)
