"""
Return / notification dispatcher.

Stateless entry point for every inbound trigger: loads the order, takes
the per-order lock, re-enters the orchestrator at the right state and maps
the outcome to what the browser should see. This is the only place where
outcomes become redirects.
"""

import hmac
import logging
from contextlib import AbstractAsyncContextManager
from decimal import Decimal
from typing import Callable, Optional, Protocol
from urllib.parse import urlencode

from app.core.config import HOSTED_CHECKOUT, GatewayConfig
from app.core.exceptions import AppException, OperationNotAllowed, OrderNotFound
from app.core.logging import redact
from app.models.order import ORDER_STATUS_PENDING, Order
from app.schemas.mastercard import (
    CheckoutSession,
    GatewaySession,
    GatewayTransaction,
    StepUpResponse,
    WebhookAck,
)
from app.schemas.webhook import WebhookEventCreate, WebhookEventResponse
from app.services.payment_orchestrator import (
    AlertSink,
    OrderStore,
    PaymentFailure,
    PaymentOrchestrator,
    PaymentOutcome,
    StepUpRequired,
)
from app.services.mastercard_service import MastercardGatewayService
from app.services.payment_port import (
    NotificationHeaders,
    PaymentGatewayPort,
    RedirectTarget,
    ReturnParams,
    ReturnResponse,
)

logger = logging.getLogger(__name__)

PSP = "mastercard"

LockFactory = Callable[[str], AbstractAsyncContextManager]


class NotificationLedger(Protocol):
    async def check_and_create_webhook_event(
        self, webhook_data: WebhookEventCreate
    ) -> Optional[WebhookEventResponse]: ...

    async def mark_processed(self, id: str) -> None: ...

    async def mark_failed(self, id: str, error_message: str) -> None: ...


def _with_query(url: str, **params: str) -> str:
    separator = "&" if "?" in url else "?"
    return f"{url}{separator}{urlencode(params)}"


class PaymentDispatcher(PaymentGatewayPort):
    def __init__(
        self,
        config: GatewayConfig,
        client: MastercardGatewayService,
        orders: OrderStore,
        ledger: NotificationLedger,
        lock_factory: LockFactory,
        alerts: Optional[AlertSink] = None,
    ):
        self.config = config
        self.orders = orders
        self.ledger = ledger
        self.lock_factory = lock_factory
        self.orchestrator = PaymentOrchestrator(config, client, orders, alerts)

    async def _load(self, order_id: str) -> Order:
        order = await self.orders.get(order_id)
        if order is None:
            raise OrderNotFound(order_id)
        return order

    # ──────────────────────────────────────────────────────────────
    # Redirect mapping
    # ──────────────────────────────────────────────────────────────

    def success_redirect(self, order: Order) -> RedirectTarget:
        return RedirectTarget(url=_with_query(self.config.success_url, order_id=order.id))

    def error_redirect(self, message: str) -> RedirectTarget:
        return RedirectTarget(
            url=_with_query(self.config.checkout_url, error=message),
            notice=message,
        )

    def to_response(self, outcome: PaymentOutcome) -> ReturnResponse:
        if isinstance(outcome, StepUpRequired):
            return StepUpResponse(order_id=outcome.order.id, redirect=outcome.redirect)
        if isinstance(outcome, PaymentFailure):
            return self.error_redirect(outcome.reason)
        return self.success_redirect(outcome.order)

    # ──────────────────────────────────────────────────────────────
    # Port
    # ──────────────────────────────────────────────────────────────

    async def process_payment(self, order_id: str) -> RedirectTarget:
        order = await self._load(order_id)
        if order.is_paid:
            return self.success_redirect(order)

        order.status = ORDER_STATUS_PENDING
        order.add_note("Awaiting Mastercard payment")
        await self.orders.save(order)
        return RedirectTarget(url=_with_query(self.config.pay_page_url, order_id=order.id))

    async def begin_checkout(self, order_id: str) -> CheckoutSession:
        async with self.lock_factory(order_id):
            order = await self._load(order_id)
            return await self.orchestrator.begin_hosted_checkout(order)

    async def create_session(self, order_id: str) -> GatewaySession:
        async with self.lock_factory(order_id):
            order = await self._load(order_id)
            return await self.orchestrator.create_hosted_session(order)

    async def handle_return(self, params: ReturnParams) -> ReturnResponse:
        async with self.lock_factory(params.order_id):
            order = await self._load(params.order_id)

            if self.config.method == HOSTED_CHECKOUT:
                outcome = await self.orchestrator.complete_hosted_checkout(
                    order, params.result_indicator
                )
                return self.to_response(outcome)

            session = None
            if params.session_id:
                session = GatewaySession(id=params.session_id, version=params.session_version or None)

            if params.process_acs_result:
                outcome = await self.orchestrator.resume_step_up(
                    order, params.three_ds_id or "", params.pa_res or "", session
                )
                return self.to_response(outcome)

            if session is None:
                raise OperationNotAllowed(
                    "Missing session_id.", details={"order_id": params.order_id}
                )
            outcome = await self.orchestrator.start_hosted_session(order, session)
            return self.to_response(outcome)

    async def capture(self, order_id: str) -> GatewayTransaction:
        async with self.lock_factory(order_id):
            order = await self._load(order_id)
            return await self.orchestrator.capture(order)

    async def refund(
        self, order_id: str, amount: Optional[Decimal] = None, reason: str = ""
    ) -> GatewayTransaction:
        async with self.lock_factory(order_id):
            order = await self._load(order_id)
            return await self.orchestrator.refund(order, amount, reason)

    async def void(self, order_id: str) -> GatewayTransaction:
        async with self.lock_factory(order_id):
            order = await self._load(order_id)
            return await self.orchestrator.void(order)

    async def handle_notification(
        self, headers: NotificationHeaders, payload: dict
    ) -> WebhookAck:
        if self.config.notification_secret and not hmac.compare_digest(
            (headers.secret or "").encode(), self.config.notification_secret.encode()
        ):
            logger.warning("[mastercard] notification rejected: bad notification secret")
            return WebhookAck()

        order_data = payload.get("order") if isinstance(payload.get("order"), dict) else {}
        txn_data = payload.get("transaction") if isinstance(payload.get("transaction"), dict) else {}
        order_id = order_data.get("id")
        if not order_id:
            logger.warning("[mastercard] notification without order id ignored")
            return WebhookAck()
        order_id = str(order_id)

        event_id = headers.notification_id or f"{order_id}:{txn_data.get('id', '-')}"
        event = await self.ledger.check_and_create_webhook_event(
            WebhookEventCreate(
                event_id=event_id,
                psp=PSP,
                event_type=txn_data.get("type"),
                order_id=order_id,
                payload=redact(payload),
            )
        )
        if event is None:
            return WebhookAck()

        try:
            async with self.lock_factory(order_id):
                order = await self._load(order_id)
                outcome = await self.orchestrator.reconcile_order(order)
            logger.info(
                f"[mastercard] notification {event_id} for order {order_id}: "
                f"{type(outcome).__name__}"
            )
            await self.ledger.mark_processed(event.id)
        except AppException as e:
            logger.error(
                f"[mastercard] notification {event_id} for order {order_id} failed: "
                f"{e.error_code} {e.message}"
            )
            await self.ledger.mark_failed(event.id, e.message)
        except Exception as e:
            logger.exception(
                f"[mastercard] notification {event_id} for order {order_id} failed unexpectedly: {e}"
            )
            await self.ledger.mark_failed(event.id, str(e) or type(e).__name__)

        return WebhookAck()
