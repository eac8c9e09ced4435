from sqlalchemy.ext.asyncio import AsyncSession

from app.models.order import Order
from app.repositories.order import OrderRepository
from app.repositories.webhook_event import WebhookEventRepository


class UnitOfWork:
    """Groups the repositories sharing one AsyncSession / transaction."""

    def __init__(self, session: AsyncSession):
        self.session = session
        self.orders = OrderRepository(session)
        self.webhook_events = WebhookEventRepository(session)

    async def commit(self) -> None:
        await self.session.commit()

    async def rollback(self) -> None:
        await self.session.rollback()


class SqlAlchemyOrderStore:
    """
    OrderStore backed by the orders table.

    ``save`` commits immediately: the orchestrator relies on the attempt
    counter being durable before the gateway call it guards.
    """

    def __init__(self, uow: UnitOfWork):
        self.uow = uow

    async def get(self, order_id: str) -> Order | None:
        return await self.uow.orders.get(order_id)

    async def save(self, order: Order) -> None:
        await self.uow.orders.flush(order)
        await self.uow.commit()
