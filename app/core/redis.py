import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from redis.asyncio import Redis
from redis.exceptions import LockError

from app.core.config import settings
from app.core.exceptions import OrderBusy

logger = logging.getLogger(__name__)

ORDER_LOCK_PREFIX = "order-lock"


class RedisClient:
    def __init__(self, url: str, password: str | None = None):
        self.url = url
        self.password = password or None
        self._client: Redis | None = None

    @property
    def client(self) -> Redis:
        if self._client is None:
            self._client = Redis.from_url(
                self.url, password=self.password, decode_responses=True
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    @asynccontextmanager
    async def order_lock(self, order_id: str) -> AsyncIterator[None]:
        """
        Serialize handlers touching the same order (browser return vs
        notification). Raises OrderBusy when the lock cannot be taken.
        """
        lock = self.client.lock(
            f"{ORDER_LOCK_PREFIX}:{order_id}",
            timeout=settings.ORDER_LOCK_TIMEOUT,
            blocking_timeout=settings.ORDER_LOCK_WAIT,
        )
        acquired = await lock.acquire()
        if not acquired:
            logger.warning(f"[mastercard] order lock busy for order {order_id}")
            raise OrderBusy(order_id)
        try:
            yield
        finally:
            try:
                await lock.release()
            except LockError as e:
                logger.warning(f"[mastercard] order lock for {order_id} expired before release: {e}")


redis_client = RedisClient(settings.REDIS_URL, settings.REDIS_PASSWORD)
