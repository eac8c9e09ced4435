"""
Pytest configuration and fixtures.
"""
from contextlib import asynccontextmanager
from decimal import Decimal
from typing import Any, AsyncIterator, Dict, List, Optional

import pytest

from app.core.config import HOSTED_SESSION, GatewayConfig
from app.models.order import ORDER_STATUS_PENDING, Order
from app.schemas.webhook import WebhookEventCreate, WebhookEventResponse
from app.services.mastercard_service import MastercardGatewayService
from app.services.payment_dispatcher import PaymentDispatcher
from app.services.payment_orchestrator import PaymentOrchestrator
from gateway_stub import GATEWAY_HOST, MERCHANT_ID, PASSWORD, GatewayStub


class InMemoryOrderStore:
    """Order store keeping orders in a dict; records the meta of every save."""

    def __init__(self):
        self.orders: Dict[str, Order] = {}
        self.saved_meta: List[Dict[str, Any]] = []

    async def get(self, order_id: str) -> Optional[Order]:
        return self.orders.get(order_id)

    async def save(self, order: Order) -> None:
        self.orders[order.id] = order
        self.saved_meta.append(dict(order.meta or {}))

    def persisted_attempt(self, order_id: str) -> int:
        order = self.orders[order_id]
        return int(order.get_meta("txn_attempt", 0))


class RecordingAlerts:
    def __init__(self):
        self.alerts: List[Dict[str, Any]] = []

    async def send_critical_alert(self, title: str, alert: str, platform: Optional[str] = None):
        self.alerts.append({"title": title, "alert": alert, "platform": platform})
        return {"status": "ok"}


class InMemoryLedger:
    """Notification dedupe with the same contract as IdempotencyService."""

    def __init__(self):
        self.events: Dict[str, WebhookEventResponse] = {}

    async def check_and_create_webhook_event(
        self, webhook_data: WebhookEventCreate
    ) -> Optional[WebhookEventResponse]:
        existing = self.events.get(webhook_data.event_id)
        if existing is not None:
            if existing.error_message is not None:
                existing.error_message = None
                return existing
            return None
        event = WebhookEventResponse(
            id=f"whevt_{len(self.events) + 1}",
            event_id=webhook_data.event_id,
            psp=webhook_data.psp,
            event_type=webhook_data.event_type,
            order_id=webhook_data.order_id,
        )
        self.events[webhook_data.event_id] = event
        return event

    def _by_id(self, id: str) -> WebhookEventResponse:
        return next(e for e in self.events.values() if e.id == id)

    async def mark_processed(self, id: str) -> None:
        event = self._by_id(id)
        event.processed = True
        event.error_message = None

    async def mark_failed(self, id: str, error_message: str) -> None:
        event = self._by_id(id)
        event.processed = False
        event.error_message = error_message


@asynccontextmanager
async def noop_lock(order_id: str) -> AsyncIterator[None]:
    yield


def build_config(**overrides: Any) -> GatewayConfig:
    values: Dict[str, Any] = dict(
        gateway_host=GATEWAY_HOST,
        merchant_id=MERCHANT_ID,
        password=PASSWORD,
        webhook_url="https://shop.example/api/v1/mastercard/webhook",
        method=HOSTED_SESSION,
        capture=True,
        threedsecure=False,
        return_url="https://shop.example/api/v1/mastercard/return",
        success_url="https://shop.example/checkout/success",
        checkout_url="https://shop.example/checkout",
        pay_page_url="https://shop.example/checkout/pay",
        merchant_name="Example Shop",
        max_retries=2,
        retry_backoff=0,
    )
    values.update(overrides)
    return GatewayConfig(**values)


@pytest.fixture
def config() -> GatewayConfig:
    return build_config()


@pytest.fixture
def gateway() -> GatewayStub:
    return GatewayStub()


@pytest.fixture
def client(config, gateway) -> MastercardGatewayService:
    return MastercardGatewayService(config, transport=gateway.transport())


@pytest.fixture
def store() -> InMemoryOrderStore:
    return InMemoryOrderStore()


@pytest.fixture
def alerts() -> RecordingAlerts:
    return RecordingAlerts()


@pytest.fixture
def ledger() -> InMemoryLedger:
    return InMemoryLedger()


@pytest.fixture
def make_order(store):
    def _make(
        order_id: str = "1001",
        total: str = "20.00",
        currency: str = "EUR",
        status: str = ORDER_STATUS_PENDING,
        meta: Optional[Dict[str, Any]] = None,
    ) -> Order:
        order = Order(
            id=order_id,
            total=Decimal(total),
            currency=currency,
            status=status,
            meta=dict(meta or {}),
            customer_email="jane@example.com",
            customer_first_name="Jane",
            customer_last_name="Doe",
            billing_street="1 Main St",
            billing_city="Dublin",
            billing_postcode="D01",
            billing_country="IRL",
            notes=[],
        )
        store.orders[order_id] = order
        return order

    return _make


@pytest.fixture
def orchestrator_factory(gateway, store, alerts):
    def _build(**overrides: Any) -> PaymentOrchestrator:
        cfg = build_config(**overrides)
        client = MastercardGatewayService(cfg, transport=gateway.transport())
        return PaymentOrchestrator(cfg, client, store, alerts)

    return _build


@pytest.fixture
def orchestrator(orchestrator_factory) -> PaymentOrchestrator:
    return orchestrator_factory()


@pytest.fixture
def dispatcher_factory(gateway, store, ledger, alerts):
    def _build(**overrides: Any) -> PaymentDispatcher:
        cfg = build_config(**overrides)
        client = MastercardGatewayService(cfg, transport=gateway.transport())
        return PaymentDispatcher(
            config=cfg,
            client=client,
            orders=store,
            ledger=ledger,
            lock_factory=noop_lock,
            alerts=alerts,
        )

    return _build
