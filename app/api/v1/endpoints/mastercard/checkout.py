"""
Mastercard Checkout Routes.

Endpoints:
  POST /api/v1/mastercard/orders/{order_id}/pay               — Start payment
  POST /api/v1/mastercard/orders/{order_id}/checkout-session  — Hosted checkout session
  POST /api/v1/mastercard/orders/{order_id}/session           — Hosted session

The checkout-session response never carries the success indicator: it
stays on the order and is only compared server-side on return.
"""

import logging

from fastapi import APIRouter, Depends

from app.core.config import HOSTED_CHECKOUT, HOSTED_SESSION, GatewayConfig
from app.core.dependencies import get_dispatcher, get_gateway_config
from app.schemas.mastercard import PayRedirectResponse, SessionResponse
from app.services.payment_dispatcher import PaymentDispatcher

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post(
    "/orders/{order_id}/pay",
    response_model=PayRedirectResponse,
    summary="Start a Mastercard payment",
    description="Mark the order pending and return the pay page the customer is sent to.",
)
async def process_payment(
    order_id: str,
    dispatcher: PaymentDispatcher = Depends(get_dispatcher),
):
    target = await dispatcher.process_payment(order_id)
    return PayRedirectResponse(redirect=target.url)


@router.post(
    "/orders/{order_id}/checkout-session",
    response_model=SessionResponse,
    summary="Create a hosted checkout session",
)
async def create_checkout_session(
    order_id: str,
    dispatcher: PaymentDispatcher = Depends(get_dispatcher),
    config: GatewayConfig = Depends(get_gateway_config),
):
    checkout = await dispatcher.begin_checkout(order_id)
    logger.info(f"[mastercard] checkout session {checkout.session.id} created for order {order_id}")

    return SessionResponse(
        order_id=order_id,
        session_id=checkout.session.id,
        session_version=checkout.session.version,
        merchant_id=config.merchant_id,
        method=HOSTED_CHECKOUT,
        script_src=config.hosted_checkout_js,
        use_modal=config.use_modal,
    )


@router.post(
    "/orders/{order_id}/session",
    response_model=SessionResponse,
    summary="Create a hosted session for card collection",
)
async def create_session(
    order_id: str,
    dispatcher: PaymentDispatcher = Depends(get_dispatcher),
    config: GatewayConfig = Depends(get_gateway_config),
):
    session = await dispatcher.create_session(order_id)
    logger.info(f"[mastercard] hosted session {session.id} created for order {order_id}")

    return SessionResponse(
        order_id=order_id,
        session_id=session.id,
        session_version=session.version,
        merchant_id=config.merchant_id,
        method=HOSTED_SESSION,
        script_src=config.hosted_session_js,
        threedsecure=config.threedsecure,
    )
