"""
Mastercard Webhook Route.

Endpoint:
  POST /api/v1/mastercard/webhook — Gateway notifications

The gateway re-delivers anything not acknowledged with a 2xx, so every
delivery is acknowledged; failures are recorded on the webhook event row
and the order instead.
"""

import logging

from fastapi import APIRouter, Depends, Request

from app.core.dependencies import get_dispatcher
from app.schemas.mastercard import WebhookAck
from app.services.payment_dispatcher import PaymentDispatcher
from app.services.payment_port import NotificationHeaders

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post(
    "/webhook",
    response_model=WebhookAck,
    summary="Receive Mastercard gateway notifications",
    tags=["mastercard", "webhooks"],
)
async def handle_mastercard_webhook(
    request: Request,
    dispatcher: PaymentDispatcher = Depends(get_dispatcher),
):
    try:
        payload = await request.json()
    except ValueError:
        logger.warning("[mastercard] webhook body is not valid JSON")
        return WebhookAck()
    if not isinstance(payload, dict):
        logger.warning("[mastercard] webhook body is not a JSON object")
        return WebhookAck()

    headers = NotificationHeaders(
        secret=request.headers.get("X-Notification-Secret"),
        notification_id=request.headers.get("X-Notification-Id"),
    )
    logger.info(
        f"[mastercard] webhook received — id={headers.notification_id}, "
        f"keys={list(payload.keys())}"
    )
    return await dispatcher.handle_notification(headers, payload)
