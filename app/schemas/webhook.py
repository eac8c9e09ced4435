from datetime import datetime
from typing import Any

from pydantic import BaseModel


class WebhookEventCreate(BaseModel):
    event_id: str
    psp: str
    event_type: str | None = None
    order_id: str | None = None
    payload: dict[str, Any] | None = None


class WebhookEventResponse(BaseModel):
    id: str
    event_id: str
    psp: str
    event_type: str | None = None
    order_id: str | None = None
    processed: bool = False
    error_message: str | None = None
    created_at: datetime | None = None

    model_config = {"from_attributes": True}
