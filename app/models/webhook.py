from typing import Any

from sqlalchemy import JSON, Boolean, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import Base, TimestampMixin, generate_prefixed_id


def generate_webhook_event_id() -> str:
    return generate_prefixed_id("whevt")


class WebhookEvent(TimestampMixin, Base):
    """One row per gateway notification delivery, keyed by notification id."""

    __tablename__ = "webhook_events"

    id: Mapped[str] = mapped_column(
        String(50), primary_key=True, default=generate_webhook_event_id
    )
    event_id: Mapped[str] = mapped_column(String(255), unique=True, index=True)
    psp: Mapped[str] = mapped_column(String(50), nullable=False)
    event_type: Mapped[str | None] = mapped_column(String(100), nullable=True)
    order_id: Mapped[str | None] = mapped_column(String(64), index=True, nullable=True)
    processed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    payload: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    def __repr__(self) -> str:
        return f"<WebhookEvent {self.event_id} processed={self.processed}>"
