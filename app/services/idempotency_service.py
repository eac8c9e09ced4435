import logging

from sqlalchemy.exc import IntegrityError

from app.core.unit_of_work import UnitOfWork
from app.schemas.webhook import WebhookEventCreate, WebhookEventResponse

logger = logging.getLogger(__name__)


class IdempotencyService:
    """Dedupes gateway notification deliveries by notification id."""

    def __init__(self, uow: UnitOfWork):
        self.uow = uow

    async def check_and_create_webhook_event(
        self,
        webhook_data: WebhookEventCreate,
    ) -> WebhookEventResponse | None:
        existing = await self.uow.webhook_events.get_by_event_id(webhook_data.event_id)

        if existing is not None:
            if existing.processed and existing.error_message is None:
                logger.info(
                    "Notification already processed successfully: %s",
                    webhook_data.event_id,
                )
                return None

            if existing.error_message is not None:
                logger.info(
                    "Retrying previously failed notification: %s (error: %s)",
                    webhook_data.event_id,
                    existing.error_message,
                )
                await self.uow.webhook_events.update_by_id(
                    existing.id, error_message=None,
                )
                await self.uow.commit()
                return WebhookEventResponse.model_validate(existing)

            # processed=False, no error → another delivery is in flight
            logger.info(
                "Notification currently in progress, skipping: %s",
                webhook_data.event_id,
            )
            return None

        try:
            webhook_event = await self.uow.webhook_events.create(
                **webhook_data.model_dump(),
            )
            await self.uow.commit()
            logger.info("Created webhook event: %s", webhook_event.id)
            return WebhookEventResponse.model_validate(webhook_event)
        except IntegrityError:
            await self.uow.rollback()
            logger.info(
                "Concurrent duplicate insert detected for notification: %s",
                webhook_data.event_id,
            )
            return None

    async def mark_processed(self, id: str) -> None:
        await self.uow.webhook_events.mark_as_processed(id)
        await self.uow.commit()

    async def mark_failed(self, id: str, error_message: str) -> None:
        await self.uow.webhook_events.mark_as_failed(id, error_message)
        await self.uow.commit()
