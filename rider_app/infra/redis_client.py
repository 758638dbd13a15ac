# rider_app/infra/redis_client.py
"""
Клиент Redis. Используется как транспорт change feed (Pub/Sub).
"""

from __future__ import annotations

import redis.asyncio as redis
from redis.asyncio.client import PubSub
from redis.exceptions import RedisError

from rider_app.common.constants import TypeMsg
from rider_app.common.logger import log_error, log_info


class RedisClient:
    """Асинхронный клиент Redis (Singleton)."""

    _instance: RedisClient | None = None
    _client: redis.Redis | None = None

    def __new__(cls) -> RedisClient:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self) -> None:
        """Инициализация (выполняется один раз благодаря Singleton)."""
        if hasattr(self, "_initialized"):
            return
        self._initialized = True
        self._client = None

    @property
    def client(self) -> redis.Redis:
        """Возвращает клиент Redis."""
        if self._client is None:
            raise RuntimeError("Redis клиент не инициализирован. Вызовите connect() сначала.")
        return self._client

    @property
    def is_connected(self) -> bool:
        return self._client is not None

    async def connect(
        self,
        url: str | None = None,
        max_connections: int = 20,
    ) -> None:
        """
        Подключается к Redis.

        Args:
            url: URL Redis (если None, берётся из конфига)
            max_connections: Максимальное количество соединений
        """
        if self._client is not None:
            return

        if url is None:
            from rider_app.config import settings
            url = settings.redis.url
            max_connections = settings.redis.REDIS_MAX_CONNECTIONS

        await log_info("Подключение к Redis...", type_msg=TypeMsg.INFO)

        self._client = redis.from_url(
            url,
            max_connections=max_connections,
            decode_responses=True,
        )
        await self._client.ping()

        await log_info("Подключение к Redis установлено", type_msg=TypeMsg.INFO)

    async def disconnect(self) -> None:
        """Закрывает соединение с Redis."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            await log_info("Соединение с Redis закрыто", type_msg=TypeMsg.INFO)

    def pubsub(self) -> PubSub:
        """Новый Pub/Sub объект на общем пуле соединений."""
        return self.client.pubsub()

    async def health_check(self) -> bool:
        """True, если Redis отвечает на PING."""
        try:
            return await self.client.ping()
        except (RedisError, RuntimeError, OSError) as e:
            await log_error(f"Health check Redis failed: {e}")
            return False


def get_redis() -> RedisClient:
    """Возвращает глобальный экземпляр RedisClient."""
    return RedisClient()


async def init_redis() -> None:
    """Подключается к Redis по настройкам из конфигурации."""
    from rider_app.config import settings

    await get_redis().connect(
        url=settings.redis.url,
        max_connections=settings.redis.REDIS_MAX_CONNECTIONS,
    )
    await log_info(
        f"Redis подключён: {settings.redis.REDIS_HOST}:{settings.redis.REDIS_PORT}/{settings.redis.REDIS_DB}",
        type_msg=TypeMsg.INFO,
    )


async def close_redis() -> None:
    """Закрывает подключение к Redis."""
    await get_redis().disconnect()
