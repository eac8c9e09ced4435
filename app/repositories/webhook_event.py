from typing import Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.webhook import WebhookEvent


class WebhookEventRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_event_id(self, event_id: str) -> WebhookEvent | None:
        result = await self.session.execute(
            select(WebhookEvent).where(WebhookEvent.event_id == event_id)
        )
        return result.scalar_one_or_none()

    async def create(self, **fields: Any) -> WebhookEvent:
        event = WebhookEvent(**fields)
        self.session.add(event)
        await self.session.flush()
        return event

    async def update_by_id(self, id: str, **fields: Any) -> None:
        await self.session.execute(
            update(WebhookEvent).where(WebhookEvent.id == id).values(**fields)
        )

    async def mark_as_processed(self, id: str) -> None:
        await self.update_by_id(id, processed=True, error_message=None)

    async def mark_as_failed(self, id: str, error_message: str) -> None:
        await self.update_by_id(id, processed=False, error_message=error_message)
