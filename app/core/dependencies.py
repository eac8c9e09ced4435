from collections.abc import AsyncGenerator
from functools import lru_cache

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import GatewayConfig, settings
from app.core.database import get_db_session
from app.core.redis import redis_client
from app.core.unit_of_work import SqlAlchemyOrderStore, UnitOfWork
from app.services.idempotency_service import IdempotencyService
from app.services.mastercard_service import MastercardGatewayService
from app.services.payment_dispatcher import PaymentDispatcher
from app.services.slack_service import slack_service


async def get_unit_of_work(
    session: AsyncSession = Depends(get_db_session),
) -> AsyncGenerator[UnitOfWork, None]:
    uow = UnitOfWork(session)
    try:
        yield uow
    except Exception:
        await uow.rollback()
        raise


@lru_cache
def get_gateway_config() -> GatewayConfig:
    return settings.gateway_config()


def get_gateway_service(
    config: GatewayConfig = Depends(get_gateway_config),
) -> MastercardGatewayService:
    return MastercardGatewayService(config)


def get_dispatcher(
    uow: UnitOfWork = Depends(get_unit_of_work),
    config: GatewayConfig = Depends(get_gateway_config),
    client: MastercardGatewayService = Depends(get_gateway_service),
) -> PaymentDispatcher:
    return PaymentDispatcher(
        config=config,
        client=client,
        orders=SqlAlchemyOrderStore(uow),
        ledger=IdempotencyService(uow),
        lock_factory=redis_client.order_lock,
        alerts=slack_service,
    )
