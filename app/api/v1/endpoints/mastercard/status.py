"""
Mastercard Status Routes.

Endpoints:
  GET /api/v1/mastercard/orders/{order_id}                     — Local order status
  GET /api/v1/mastercard/orders/{order_id}/transactions/{ref}  — Gateway transaction lookup
  GET /api/v1/mastercard/payment-options                       — Credentials check
"""

import logging

from fastapi import APIRouter, Depends

from app.core.dependencies import get_dispatcher, get_gateway_service
from app.core.exceptions import ExternalServiceError, OrderNotFound
from app.schemas.common import GenericApiResponse
from app.schemas.mastercard import (
    OrderNoteView,
    OrderStatusResponse,
    TransactionApproved,
    TransactionView,
)
from app.services.mastercard_service import MastercardGatewayService
from app.services.payment_dispatcher import PaymentDispatcher

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get(
    "/orders/{order_id}",
    response_model=OrderStatusResponse,
    summary="Local payment status of an order",
)
async def get_order_status(
    order_id: str,
    dispatcher: PaymentDispatcher = Depends(get_dispatcher),
):
    order = await dispatcher.orders.get(order_id)
    if order is None:
        raise OrderNotFound(order_id)

    return OrderStatusResponse(
        id=order.id,
        status=order.status,
        total=order.total,
        currency=order.currency,
        captured=order.is_captured,
        transaction_id=order.transaction_id,
        failure_reason=order.failure_reason,
        notes=[OrderNoteView.model_validate(note) for note in order.notes],
    )


@router.get(
    "/orders/{order_id}/transactions/{txn_ref}",
    response_model=TransactionView,
    summary="Look up a transaction at the gateway",
)
async def get_transaction(
    order_id: str,
    txn_ref: str,
    client: MastercardGatewayService = Depends(get_gateway_service),
):
    result = await client.retrieve_transaction(order_id, txn_ref)
    if isinstance(result, TransactionApproved):
        return TransactionView(
            status="approved",
            transaction=result.transaction,
            gateway_code=result.transaction.gateway_code,
        )
    return TransactionView(
        status="declined",
        transaction=result.transaction,
        gateway_code=result.gateway_code,
        data={"result": result.result},
    )


@router.get(
    "/payment-options",
    response_model=GenericApiResponse,
    summary="Check gateway credentials via a payment options inquiry",
)
async def get_payment_options(
    client: MastercardGatewayService = Depends(get_gateway_service),
):
    if not client.config.is_available:
        return GenericApiResponse(
            success=False,
            message="API credentials are not configured.",
            status_code=503,
        )
    try:
        options = await client.list_payment_options()
    except ExternalServiceError as e:
        logger.error(f"[mastercard] payment options inquiry failed: {e.message}")
        return GenericApiResponse(
            success=False,
            message=f'Error communicating with Mastercard API: "{e.message}"',
            status_code=e.status_code,
            data=e.details,
        )

    return GenericApiResponse(
        success=True,
        message="Mastercard API credentials are valid.",
        status_code=200,
        data={"card_types": client.payment_methods(options)},
    )
