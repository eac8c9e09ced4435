"""
Pydantic models for the Mastercard gateway domain and the HTTP routes.

Gateway-side models are frozen: once the gateway returns a transaction or
an order it is never modified locally.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field


RESULT_SUCCESS = "SUCCESS"
RECOMMENDATION_PROCEED = "PROCEED"

ORDER_STATUS_CAPTURED = "CAPTURED"
ORDER_STATUS_AUTHORIZED = "AUTHORIZED"

TXN_TYPE_AUTHORIZATION = "AUTHORIZATION"
TXN_TYPE_CAPTURE = "CAPTURE"
TXN_TYPE_PAYMENT = "PAYMENT"


# ──────────────────────────────────────────────────────────────────────
#  Sessions
# ──────────────────────────────────────────────────────────────────────


class GatewaySession(BaseModel):
    """Gateway-issued session correlating card collection with a transaction."""

    model_config = ConfigDict(frozen=True)

    id: str
    version: Optional[str] = None

    def to_wire(self) -> Dict[str, str]:
        data = {"id": self.id}
        if self.version:
            data["version"] = self.version
        return data


class CheckoutSession(BaseModel):
    """Hosted checkout session plus the server-side success indicator."""

    model_config = ConfigDict(frozen=True)

    session: GatewaySession
    success_indicator: str


# ──────────────────────────────────────────────────────────────────────
#  3-D Secure
# ──────────────────────────────────────────────────────────────────────


class StepUpRedirect(BaseModel):
    """What the browser must submit to the issuer's ACS."""

    model_config = ConfigDict(frozen=True)

    method: str = "POST"
    url: str
    fields: Dict[str, str] = Field(default_factory=dict)


class EnrollmentResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    three_ds_id: str
    recommendation: str
    enrollment_status: Optional[str] = None
    redirect: Optional[StepUpRedirect] = None

    @property
    def proceed(self) -> bool:
        return self.recommendation == RECOMMENDATION_PROCEED


class ThreeDSecureContext(BaseModel):
    """3DS record carried into exactly one pay/authorize call."""

    model_config = ConfigDict(frozen=True)

    id: str
    acs_eci: Optional[str] = None
    authentication_token: Optional[str] = None
    pa_res_status: Optional[str] = None
    ve_res_enrolled: Optional[str] = None
    xid: Optional[str] = None

    def authentication_payload(self) -> Dict[str, str]:
        fields = {
            "acsEci": self.acs_eci,
            "authenticationToken": self.authentication_token,
            "paResStatus": self.pa_res_status,
            "veResEnrolled": self.ve_res_enrolled,
            "xid": self.xid,
        }
        return {k: v for k, v in fields.items() if v is not None}


class StepUpResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    recommendation: str
    context: ThreeDSecureContext

    @property
    def proceed(self) -> bool:
        return self.recommendation == RECOMMENDATION_PROCEED


# ──────────────────────────────────────────────────────────────────────
#  Orders & transactions
# ──────────────────────────────────────────────────────────────────────


class GatewayTransaction(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    type: Optional[str] = None
    result: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    authorization_code: Optional[str] = None
    reference: Optional[str] = None
    gateway_code: Optional[str] = None

    @property
    def is_success(self) -> bool:
        return self.result == RESULT_SUCCESS


class GatewayOrder(BaseModel):
    """Authoritative record of what happened at the gateway."""

    model_config = ConfigDict(frozen=True)

    id: str
    amount: Decimal
    currency: str
    status: Optional[str] = None
    result: Optional[str] = None
    transactions: Tuple[GatewayTransaction, ...] = ()

    @property
    def is_captured(self) -> bool:
        return self.status == ORDER_STATUS_CAPTURED

    @property
    def is_paid(self) -> bool:
        return self.status in (ORDER_STATUS_AUTHORIZED, ORDER_STATUS_CAPTURED)

    def authorization_transaction(self) -> Optional[GatewayTransaction]:
        for txn in self.transactions:
            if txn.type == TXN_TYPE_AUTHORIZATION and txn.is_success:
                return txn
        return None

    def capture_transaction(self) -> Optional[GatewayTransaction]:
        for txn in self.transactions:
            if txn.type in (TXN_TYPE_CAPTURE, TXN_TYPE_PAYMENT) and txn.is_success:
                return txn
        return None

    def settlement_transaction(self) -> Optional[GatewayTransaction]:
        """The transaction that best evidences the order's current status."""
        txn = self.capture_transaction() if self.is_captured else None
        txn = txn or self.authorization_transaction() or self.capture_transaction()
        if txn is None and self.transactions:
            txn = self.transactions[0]
        return txn


class TransactionApproved(BaseModel):
    model_config = ConfigDict(frozen=True)

    transaction: GatewayTransaction
    order: GatewayOrder


class TransactionDeclined(BaseModel):
    model_config = ConfigDict(frozen=True)

    result: str
    transaction: Optional[GatewayTransaction] = None
    order: Optional[GatewayOrder] = None
    gateway_code: Optional[str] = None


TransactionResult = Union[TransactionApproved, TransactionDeclined]


# ──────────────────────────────────────────────────────────────────────
#  HTTP routes
# ──────────────────────────────────────────────────────────────────────


class PayRedirectResponse(BaseModel):
    """Response for the pay endpoint (order moved to pending)."""

    result: str = "success"
    redirect: str


class SessionResponse(BaseModel):
    """Hosted checkout / hosted session initialization response."""

    order_id: str
    session_id: str
    session_version: Optional[str] = None
    merchant_id: str
    method: str
    script_src: str
    use_modal: Optional[bool] = None
    threedsecure: Optional[bool] = None


class StepUpResponse(BaseModel):
    """Returned instead of a redirect while the cardholder authenticates."""

    order_id: str
    state: str = "AWAITING_STEPUP"
    redirect: StepUpRedirect


class RefundRequest(BaseModel):
    amount: Optional[Decimal] = Field(None, gt=0, description="Defaults to the order total")
    reason: str = ""


class OrderNoteView(BaseModel):
    body: str

    model_config = {"from_attributes": True}


class OrderStatusResponse(BaseModel):
    id: str
    status: str
    total: Decimal
    currency: str
    captured: bool = False
    transaction_id: Optional[str] = None
    failure_reason: Optional[str] = None
    notes: List[OrderNoteView] = []


class TransactionView(BaseModel):
    status: str
    transaction: Optional[GatewayTransaction] = None
    gateway_code: Optional[str] = None
    data: Dict[str, Any] = {}


class WebhookAck(BaseModel):
    received: bool = True
