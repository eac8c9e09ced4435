"""
Mastercard Void Route.

Endpoint:
  POST /api/v1/mastercard/orders/{order_id}/void — Void the order's latest transaction

Targets the capture when there is one, otherwise the payment itself.
"""

from fastapi import APIRouter, Depends

from app.core.dependencies import get_dispatcher
from app.schemas.mastercard import TransactionView
from app.services.payment_dispatcher import PaymentDispatcher

router = APIRouter()


@router.post(
    "/orders/{order_id}/void",
    response_model=TransactionView,
    summary="Void a Mastercard transaction",
    tags=["mastercard", "payments"],
)
async def void_payment(
    order_id: str,
    dispatcher: PaymentDispatcher = Depends(get_dispatcher),
):
    txn = await dispatcher.void(order_id)
    return TransactionView(status="voided", transaction=txn, gateway_code=txn.gateway_code)
