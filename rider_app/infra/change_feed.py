# rider_app/infra/change_feed.py
"""
Change feed поверх Redis Pub/Sub.

Канал: <prefix>:<table>:<column>=<op>.<value>, например
realtime:ride_requests:id=eq.6f1c...

Сообщение в формате JSON:
    {"type": "INSERT" | "UPDATE", "table": "...", "record": {...}, "old_record": {...}}
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, Callable, Optional

from redis.asyncio.client import PubSub
from redis.exceptions import RedisError

from rider_app.common.constants import ChangeEventType, SubscriptionStatus, TypeMsg
from rider_app.common.logger import log_error, log_info
from rider_app.infra.redis_client import get_redis
from rider_app.infra.remote_store import (
    ChangeEvent,
    ChangeFeed,
    ChangeHandler,
    Filter,
    StatusHandler,
    Subscription,
)


class RedisSubscription(Subscription):
    """Одна подписка: свой PubSub и своя задача чтения."""

    def __init__(
        self,
        channel: str,
        table: str,
        row_filter: Filter,
        on_event: ChangeHandler,
        on_status: Optional[StatusHandler],
    ) -> None:
        self.channel = channel
        self.table = table
        self.row_filter = row_filter
        self.status = SubscriptionStatus.CLOSED
        self._on_event = on_event
        self._on_status = on_status
        self._pubsub: PubSub | None = None
        self._task: asyncio.Task | None = None
        self._running = False

    async def open(self, pubsub: PubSub, timeout: float) -> None:
        """Подписывается на канал и запускает чтение сообщений."""
        self._pubsub = pubsub
        try:
            await asyncio.wait_for(pubsub.subscribe(self.channel), timeout=timeout)
        except asyncio.TimeoutError:
            await self._fail(SubscriptionStatus.TIMED_OUT, "таймаут подписки")
            return
        except (RedisError, OSError) as e:
            await self._fail(SubscriptionStatus.CHANNEL_ERROR, str(e))
            return

        self._running = True
        self.status = SubscriptionStatus.SUBSCRIBED
        self._task = asyncio.create_task(self._listen(), name=f"feed:{self.channel}")
        await log_info(f"Подписка на {self.channel} активна", type_msg=TypeMsg.DEBUG)
        await self._notify(SubscriptionStatus.SUBSCRIBED)

    async def unsubscribe(self) -> None:
        if self.status == SubscriptionStatus.CLOSED and self._pubsub is None:
            return
        self._running = False
        self.status = SubscriptionStatus.CLOSED

        task, self._task = self._task, None
        # Отписка может прийти из обработчика события, то есть из самой задачи чтения
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        await self._close_pubsub()

    async def _fail(self, status: SubscriptionStatus, reason: str) -> None:
        self._running = False
        self.status = status
        await log_info(f"Подписка на {self.channel}: {status.value} ({reason})", type_msg=TypeMsg.WARNING)
        await self._close_pubsub()
        await self._notify(status)

    async def _close_pubsub(self) -> None:
        pubsub, self._pubsub = self._pubsub, None
        if pubsub is None:
            return
        try:
            await pubsub.unsubscribe()
            await pubsub.aclose()
        except (RedisError, OSError) as e:
            await log_info(f"Ошибка закрытия {self.channel}: {e}", type_msg=TypeMsg.DEBUG)

    async def _notify(self, status: SubscriptionStatus) -> None:
        if self._on_status is not None:
            await self._on_status(status)

    async def _listen(self) -> None:
        """Читает сообщения до отписки или обрыва канала."""
        while self._running and self._pubsub is not None:
            try:
                message = await self._pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
            except asyncio.CancelledError:
                raise
            except (RedisError, OSError) as e:
                # Задача чтения завершается; владелец переподпишется по статусу
                self._task = None
                await self._fail(SubscriptionStatus.CHANNEL_ERROR, str(e))
                return

            if message is None:
                continue
            event = await self._parse(message)
            if event is None or not self._running:
                continue

            try:
                await self._on_event(event)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                await log_error(f"Ошибка обработчика {self.channel}: {e}", exc_info=True)

    async def _parse(self, message: dict[str, Any]) -> Optional[ChangeEvent]:
        if message.get("type") != "message":
            return None

        data = message.get("data")
        if isinstance(data, bytes):
            data = data.decode("utf-8")
        try:
            payload = json.loads(data)
            event_type = ChangeEventType(payload["type"])
            record = payload["record"]
        except (TypeError, ValueError, KeyError) as e:
            await log_info(f"Некорректное сообщение в {self.channel}: {e}", type_msg=TypeMsg.WARNING)
            return None

        if not isinstance(record, dict) or not self.row_filter.matches(record):
            return None

        return ChangeEvent(
            event=event_type,
            table=payload.get("table", self.table),
            row=record,
            old=payload.get("old_record"),
        )


class RedisChangeFeed(ChangeFeed):
    """Фабрика подписок на Redis Pub/Sub."""

    def __init__(
        self,
        pubsub_factory: Callable[[], PubSub] | None = None,
        prefix: str | None = None,
        subscribe_timeout: float | None = None,
    ) -> None:
        """
        Args:
            pubsub_factory: Создаёт PubSub (по умолчанию из глобального RedisClient)
            prefix: Префикс каналов
            subscribe_timeout: Таймаут подписки, секунды
        """
        if prefix is None or subscribe_timeout is None:
            from rider_app.config import settings
            prefix = prefix or settings.redis.CHANGE_FEED_PREFIX
            subscribe_timeout = subscribe_timeout or settings.timeouts.SUBSCRIBE_TIMEOUT

        self._pubsub_factory = pubsub_factory or (lambda: get_redis().pubsub())
        self._prefix = prefix
        self._subscribe_timeout = subscribe_timeout

    def channel_name(self, table: str, row_filter: Filter) -> str:
        column, expression = row_filter.to_param()
        return f"{self._prefix}:{table}:{column}={expression}"

    async def subscribe(
        self,
        table: str,
        row_filter: Filter,
        on_event: ChangeHandler,
        on_status: Optional[StatusHandler] = None,
    ) -> Subscription:
        subscription = RedisSubscription(
            channel=self.channel_name(table, row_filter),
            table=table,
            row_filter=row_filter,
            on_event=on_event,
            on_status=on_status,
        )
        try:
            pubsub = self._pubsub_factory()
        except RuntimeError as e:
            # Redis не подключён
            await subscription._fail(SubscriptionStatus.CHANNEL_ERROR, str(e))
            return subscription

        await subscription.open(pubsub, self._subscribe_timeout)
        return subscription
