"""
Validation and idempotency helpers shared by the client and orchestrator.

* transaction references: every mutating gateway call is addressed by a
  caller-chosen reference; capture/void/refund references are derived from
  the reference of the transaction they target.
* attempt counter: one fresh value per payment attempt, persisted on the
  order before the remote call so a value is never handed out twice.
* reconciliation: the gateway order is authoritative, the local order is
  brought in line with it (never the reverse).
"""

import logging
from decimal import ROUND_HALF_UP, Decimal

from app.core.exceptions import ValidationMismatch
from app.models.order import (
    ORDER_STATUS_COMPLETED,
    ORDER_STATUS_PROCESSING,
    Order,
)
from app.schemas.mastercard import GatewayOrder, GatewayTransaction

logger = logging.getLogger(__name__)

TWO_PLACES = Decimal("0.01")

META_TXN_ATTEMPT = "txn_attempt"
META_SUCCESS_INDICATOR = "success_indicator"
META_CAPTURED = "captured"
META_THREE_DS_ID = "three_ds_id"
META_SESSION_ID = "session_id"
META_SESSION_VERSION = "session_version"
META_PAYMENT_REF = "payment_ref"
META_CAPTURE_REF = "capture_ref"
META_REFUNDED_REFS = "refunded_refs"
META_VOIDED_REFS = "voided_refs"
META_RECONCILED = "reconciled"


def to_fixed_point(value) -> Decimal:
    """Quantize to the gateway's two-decimal representation."""
    return Decimal(str(value)).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def format_amount(value) -> str:
    return str(to_fixed_point(value))


# ── references ──


def capture_reference(txn_ref: str) -> str:
    return f"capture-{txn_ref}"


def void_reference(txn_ref: str) -> str:
    return f"void-{txn_ref}"


def refund_reference(txn_ref: str) -> str:
    return f"refund-{txn_ref}"


def allocate_attempt(order: Order) -> str:
    """
    Bump the order's attempt counter and return it as the next transaction
    reference. The caller must persist the order before using the value.
    """
    current = int(order.get_meta(META_TXN_ATTEMPT, 0) or 0)
    attempt = current + 1
    order.set_meta(META_TXN_ATTEMPT, attempt)
    return str(attempt)


# ── reconciliation ──


def validate_gateway_order(order: Order, gateway_order: GatewayOrder) -> None:
    if order.currency != gateway_order.currency:
        raise ValidationMismatch(
            "Currency does not match.",
            details={
                "order_id": order.id,
                "expected": order.currency,
                "received": gateway_order.currency,
            },
        )

    expected = to_fixed_point(order.total)
    received = to_fixed_point(gateway_order.amount)
    if expected != received:
        raise ValidationMismatch(
            "Amount does not match.",
            details={
                "order_id": order.id,
                "expected": str(expected),
                "received": str(received),
            },
        )


def payment_note(gateway_order: GatewayOrder, txn: GatewayTransaction | None) -> str:
    label = "CAPTURED" if gateway_order.is_captured else "AUTHORIZED"
    txn_id = txn.id if txn else "-"
    auth_code = (txn.authorization_code if txn else None) or "-"
    return f"Mastercard payment {label} (ID: {txn_id}, Auth Code: {auth_code})"


def apply_payment(
    order: Order,
    gateway_order: GatewayOrder,
    txn: GatewayTransaction | None = None,
) -> bool:
    """
    Map gateway state onto the local order. Returns False when nothing was
    applied because the order was already reconciled or completed.
    """
    validate_gateway_order(order, gateway_order)

    if order.status == ORDER_STATUS_COMPLETED:
        logger.info(f"[mastercard] order {order.id} already completed, not re-applying payment")
        return False
    if order.get_meta(META_RECONCILED) and not gateway_order.is_captured:
        logger.info(f"[mastercard] order {order.id} already reconciled")
        return False

    txn = txn or gateway_order.settlement_transaction()

    if gateway_order.is_captured:
        order.set_meta(META_CAPTURED, True)
        order.status = ORDER_STATUS_COMPLETED
    else:
        order.set_meta(META_CAPTURED, False)
        order.status = ORDER_STATUS_PROCESSING

    if txn is not None:
        order.transaction_id = txn.id
    order.failure_reason = None
    order.set_meta(META_RECONCILED, True)
    order.add_note(payment_note(gateway_order, txn))

    logger.info(
        f"[mastercard] order {order.id} reconciled: gateway status={gateway_order.status}, "
        f"local status={order.status}"
    )
    return True
