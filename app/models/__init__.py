from app.models.base import Base, TimestampMixin
from app.models.order import Order, OrderNote
from app.models.webhook import WebhookEvent

__all__ = [
    "Base",
    "TimestampMixin",
    "Order",
    "OrderNote",
    "WebhookEvent",
]
