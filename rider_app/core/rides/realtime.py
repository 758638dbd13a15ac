# rider_app/core/rides/realtime.py
"""
Согласование локального состояния с change feed.

RideRealtimeReconciler следит за одной строкой заказа и за координатами
одного водителя. Каждое изменение строки сравнивается с последним снимком
{provider_id, status}; разница превращается в сигналы для контроллера:

    ProviderChanged -> сменился водитель (первое назначение или переназначение)
    StatusChanged   -> сменился статус
    RideCancelled   -> заказ отменён
    LocationUpdated -> новые координаты текущего водителя

Порядок: сначала подписка, затем чтение строки. Прочитанная строка
сравнивается со снимком так же, как событие, поэтому изменение между
созданием заказа и подпиской не теряется.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Union

from rider_app.common.constants import RideStatus, SubscriptionStatus, TypeMsg
from rider_app.common.exceptions import RideError
from rider_app.common.logger import log_debug, log_error, log_info
from rider_app.common.tasks import DelayedTask
from rider_app.core.rides.models import RideRequest, RideSnapshot
from rider_app.core.rides.repository import RideRepository, location_from_row
from rider_app.infra.remote_store import ChangeEvent, Subscription


# =============================================================================
# СИГНАЛЫ
# =============================================================================

@dataclass(frozen=True)
class ProviderChanged:
    ride: RideRequest
    old_provider_id: Optional[str]
    new_provider_id: Optional[str]


@dataclass(frozen=True)
class StatusChanged:
    ride: RideRequest
    old_status: RideStatus
    new_status: RideStatus


@dataclass(frozen=True)
class RideCancelled:
    ride: RideRequest
    reason: Optional[str] = None


@dataclass(frozen=True)
class LocationUpdated:
    provider_id: str
    lat: float
    lng: float


RideSignal = Union[ProviderChanged, StatusChanged, RideCancelled, LocationUpdated]
SignalHandler = Callable[[RideSignal], Awaitable[None]]


class RideRealtimeReconciler:
    """Подписки на заказ и водителя с вычислением сигналов."""

    def __init__(
        self,
        repository: RideRepository,
        on_signal: SignalHandler,
        retry_delay: float | None = None,
    ) -> None:
        if retry_delay is None:
            from rider_app.config import settings
            retry_delay = settings.timeouts.REALTIME_RETRY_DELAY

        self._repository = repository
        self._on_signal = on_signal
        self._retry_delay = retry_delay

        self._ride_id: Optional[str] = None
        self._provider_id: Optional[str] = None
        self._ride_sub: Optional[Subscription] = None
        self._provider_sub: Optional[Subscription] = None
        self._previous: Optional[RideSnapshot] = None
        self._lock = asyncio.Lock()

        self._ride_retry = DelayedTask(retry_delay, self._resubscribe_ride, name="ride-feed-retry")
        self._provider_retry = DelayedTask(retry_delay, self._resubscribe_provider, name="provider-feed-retry")

        self.connection_status: SubscriptionStatus = SubscriptionStatus.CLOSED

    # =========================================================================
    # СОСТОЯНИЕ
    # =========================================================================

    @property
    def ride_id(self) -> Optional[str]:
        return self._ride_id

    @property
    def provider_id(self) -> Optional[str]:
        return self._provider_id

    @property
    def is_connected(self) -> bool:
        return self.connection_status == SubscriptionStatus.SUBSCRIBED

    @property
    def previous_snapshot(self) -> Optional[RideSnapshot]:
        return self._previous

    def acknowledge(self, ride: RideRequest) -> None:
        """
        Запоминает состояние, уже применённое локально (например, после
        собственного назначения водителя), чтобы такое же событие от сервера
        не породило повторный сигнал.
        """
        if ride.id == self._ride_id:
            self._previous = RideSnapshot.of(ride)

    # =========================================================================
    # ПОДПИСКА НА ЗАКАЗ
    # =========================================================================

    async def watch(self, ride: RideRequest) -> None:
        """
        Начинает следить за заказом. Повторный вызов для того же заказа
        ничего не делает, другой заказ заменяет предыдущий.
        """
        if self._ride_id == ride.id and self._ride_sub is not None:
            return

        await self.stop()
        self._ride_id = ride.id
        self._previous = RideSnapshot.of(ride)
        await self._subscribe_ride(ride.id)

    async def _subscribe_ride(self, ride_id: str) -> None:
        subscription = await self._repository.subscribe_ride(
            ride_id,
            on_event=self._on_ride_event,
            on_status=self._ride_status_handler(ride_id),
        )
        if self._ride_id != ride_id:
            # Пока подписывались, слежение остановили или переключили
            await subscription.unsubscribe()
            return

        self._ride_sub = subscription
        if subscription.is_active:
            await self._load_initial_state(ride_id)

    async def _resubscribe_ride(self) -> None:
        ride_id = self._ride_id
        if ride_id is None:
            return
        if self._ride_sub is not None:
            await self._ride_sub.unsubscribe()
            self._ride_sub = None
        await log_info(f"Переподписка на заказ {ride_id}", type_msg=TypeMsg.DEBUG)
        await self._subscribe_ride(ride_id)

    def _ride_status_handler(self, ride_id: str) -> Callable[[SubscriptionStatus], Awaitable[None]]:
        async def _on_status(status: SubscriptionStatus) -> None:
            if self._ride_id != ride_id:
                return
            self.connection_status = status
            if status in (SubscriptionStatus.CHANNEL_ERROR, SubscriptionStatus.TIMED_OUT):
                await log_info(
                    f"Канал заказа {ride_id}: {status.value}, повтор через {self._retry_delay} с",
                    type_msg=TypeMsg.WARNING,
                )
                self._ride_retry.start()

        return _on_status

    async def _load_initial_state(self, ride_id: str) -> None:
        try:
            ride = await self._repository.get_ride(ride_id)
        except RideError as e:
            await log_error(f"Не удалось прочитать заказ {ride_id} после подписки: {e}")
            return
        if ride is not None:
            await self._process(ride, from_pull=True)

    async def _on_ride_event(self, event: ChangeEvent) -> None:
        try:
            ride = self._repository.row_to_ride(event.row)
        except RideError as e:
            await log_error(f"Некорректное событие заказа: {e}")
            return
        await self._process(ride)

    async def _process(self, ride: RideRequest, from_pull: bool = False) -> None:
        """Сравнивает строку со снимком и выдаёт сигналы."""
        signals: list[RideSignal] = []
        async with self._lock:
            if ride.id != self._ride_id:
                return

            previous = self._previous
            if (
                from_pull
                and previous is not None
                and previous.updated_at is not None
                and ride.updated_at is not None
                and ride.updated_at < previous.updated_at
            ):
                await log_debug(f"Прочитанная строка {ride.id} старее снимка, пропускаем")
                return

            current = RideSnapshot.of(ride)
            self._previous = current
            if previous is None:
                return

            if current.provider_id != previous.provider_id:
                signals.append(ProviderChanged(ride, previous.provider_id, current.provider_id))

            if current.status != previous.status:
                if current.status == RideStatus.CANCELLED:
                    signals.append(RideCancelled(ride))
                else:
                    signals.append(StatusChanged(ride, previous.status, current.status))

        for signal in signals:
            if self._ride_id != ride.id:
                break
            await self._on_signal(signal)

    # =========================================================================
    # ПОДПИСКА НА КООРДИНАТЫ ВОДИТЕЛЯ
    # =========================================================================

    async def watch_provider(self, provider_id: Optional[str]) -> None:
        """
        Переключает поток координат на provider_id (None выключает поток).
        Старая подписка закрывается до открытия новой.
        """
        if provider_id == self._provider_id and (provider_id is None or self._provider_sub is not None):
            return

        await self.stop_provider()
        if provider_id is None:
            return
        self._provider_id = provider_id
        await self._subscribe_provider(provider_id)

    async def _subscribe_provider(self, provider_id: str) -> None:
        subscription = await self._repository.subscribe_provider(
            provider_id,
            on_event=self._provider_event_handler(provider_id),
            on_status=self._provider_status_handler(provider_id),
        )
        if self._provider_id != provider_id:
            await subscription.unsubscribe()
            return
        self._provider_sub = subscription

    async def _resubscribe_provider(self) -> None:
        provider_id = self._provider_id
        if provider_id is None:
            return
        if self._provider_sub is not None:
            await self._provider_sub.unsubscribe()
            self._provider_sub = None
        await self._subscribe_provider(provider_id)

    def _provider_event_handler(self, provider_id: str) -> Callable[[ChangeEvent], Awaitable[None]]:
        async def _on_event(event: ChangeEvent) -> None:
            # Координаты предыдущего водителя отбрасываются
            if self._provider_id != provider_id:
                return
            position = location_from_row(event.row)
            if position is None:
                return
            await self._on_signal(LocationUpdated(provider_id, position[0], position[1]))

        return _on_event

    def _provider_status_handler(self, provider_id: str) -> Callable[[SubscriptionStatus], Awaitable[None]]:
        async def _on_status(status: SubscriptionStatus) -> None:
            if self._provider_id != provider_id:
                return
            if status in (SubscriptionStatus.CHANNEL_ERROR, SubscriptionStatus.TIMED_OUT):
                self._provider_retry.start()

        return _on_status

    async def stop_provider(self) -> None:
        """Закрывает поток координат водителя."""
        self._provider_retry.cancel()
        self._provider_id = None
        subscription, self._provider_sub = self._provider_sub, None
        if subscription is not None:
            await subscription.unsubscribe()

    # =========================================================================
    # ОСТАНОВКА
    # =========================================================================

    async def stop_ride(self) -> None:
        """Закрывает подписку на заказ, поток координат не трогает."""
        self._ride_retry.cancel()
        self._ride_id = None
        self._previous = None
        self.connection_status = SubscriptionStatus.CLOSED
        subscription, self._ride_sub = self._ride_sub, None
        if subscription is not None:
            await subscription.unsubscribe()

    async def stop(self) -> None:
        """Закрывает все подписки. После возврата сигналы не выдаются."""
        await self.stop_ride()
        await self.stop_provider()
