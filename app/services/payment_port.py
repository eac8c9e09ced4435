"""
Host-facing interface of the payment core.

The web layer calls these typed methods; it never reaches into the
orchestrator or the gateway client directly.
"""

from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Optional, Union

from pydantic import BaseModel

from app.schemas.mastercard import GatewayTransaction, StepUpResponse, WebhookAck


class RedirectTarget(BaseModel):
    url: str
    notice: Optional[str] = None


class ReturnParams(BaseModel):
    """Query/form parameters the browser brings back to the return URL."""

    order_id: str
    result_indicator: Optional[str] = None
    session_id: Optional[str] = None
    session_version: Optional[str] = None
    process_acs_result: bool = False
    three_ds_id: Optional[str] = None
    pa_res: Optional[str] = None


class NotificationHeaders(BaseModel):
    secret: Optional[str] = None
    notification_id: Optional[str] = None


ReturnResponse = Union[RedirectTarget, StepUpResponse]


class PaymentGatewayPort(ABC):
    @abstractmethod
    async def process_payment(self, order_id: str) -> RedirectTarget:
        """Mark the order pending and send the customer to the pay page."""

    @abstractmethod
    async def handle_return(self, params: ReturnParams) -> ReturnResponse:
        """Resume the order's payment from a browser return."""

    @abstractmethod
    async def capture(self, order_id: str) -> GatewayTransaction: ...

    @abstractmethod
    async def refund(
        self, order_id: str, amount: Optional[Decimal] = None, reason: str = ""
    ) -> GatewayTransaction: ...

    @abstractmethod
    async def void(self, order_id: str) -> GatewayTransaction: ...

    @abstractmethod
    async def handle_notification(
        self, headers: NotificationHeaders, payload: dict
    ) -> WebhookAck:
        """Process a gateway notification. Always acknowledged."""
