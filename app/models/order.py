from decimal import Decimal
from typing import Any

from sqlalchemy import JSON, ForeignKey, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.models.base import Base, TimestampMixin


ORDER_STATUS_PENDING = "pending"
ORDER_STATUS_PROCESSING = "processing"
ORDER_STATUS_COMPLETED = "completed"
ORDER_STATUS_FAILED = "failed"

PAID_STATUSES = {ORDER_STATUS_PROCESSING, ORDER_STATUS_COMPLETED}


class Order(TimestampMixin, Base):
    """
    Storefront order as seen by the payment core.

    ``meta`` is persistent scratch state shared between invocations
    (attempt counter, success indicator, capture flag, pending 3DS state).
    """

    __tablename__ = "orders"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    total: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=ORDER_STATUS_PENDING, index=True
    )
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    transaction_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    customer_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    customer_first_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    customer_last_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    customer_phone: Mapped[str | None] = mapped_column(String(64), nullable=True)

    billing_street: Mapped[str | None] = mapped_column(String(255), nullable=True)
    billing_street2: Mapped[str | None] = mapped_column(String(255), nullable=True)
    billing_city: Mapped[str | None] = mapped_column(String(255), nullable=True)
    billing_postcode: Mapped[str | None] = mapped_column(String(32), nullable=True)
    billing_state: Mapped[str | None] = mapped_column(String(255), nullable=True)
    billing_country: Mapped[str | None] = mapped_column(String(3), nullable=True)

    meta: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True, default=dict)

    notes: Mapped[list["OrderNote"]] = relationship(
        back_populates="order",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="OrderNote.id",
    )

    def get_meta(self, key: str, default: Any = None) -> Any:
        return (self.meta or {}).get(key, default)

    def set_meta(self, key: str, value: Any) -> None:
        # Reassign so the JSON column is flagged dirty.
        self.meta = {**(self.meta or {}), key: value}

    def pop_meta(self, key: str) -> Any:
        data = dict(self.meta or {})
        value = data.pop(key, None)
        self.meta = data
        return value

    def add_note(self, text: str) -> None:
        self.notes.append(OrderNote(body=text))

    @property
    def is_paid(self) -> bool:
        return self.status in PAID_STATUSES

    @property
    def is_captured(self) -> bool:
        return bool(self.get_meta("captured", False))

    def __repr__(self) -> str:
        return f"<Order {self.id} {self.total} {self.currency} {self.status}>"


class OrderNote(TimestampMixin, Base):
    __tablename__ = "order_notes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("orders.id", ondelete="CASCADE"), index=True
    )
    body: Mapped[str] = mapped_column(Text, nullable=False)

    order: Mapped[Order] = relationship(back_populates="notes")

    def __repr__(self) -> str:
        return f"<OrderNote {self.order_id}: {self.body[:40]}>"
