# rider_app/core/rides/controller.py
"""
Контроллер экрана заказа поездки.

Ведёт пассажира по шагам select -> searching -> tracking -> rating,
держит предварительный расчёт маршрута и тарифа, запускает фоновый
подбор водителя и реагирует на сигналы RideRealtimeReconciler.

Любой await может завершиться уже после того, как заказ отменили или
заменили, поэтому после каждого await состояние перепроверяется по ride_id
(store.is_current) и по текущему шагу.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional, Sequence

from rider_app.common.constants import (
    PaymentMethod,
    PlaceSource,
    RideStatus,
    RideStep,
    TypeMsg,
)
from rider_app.common.exceptions import (
    ActiveRideExistsError,
    InsufficientBalanceError,
    NotAuthenticatedError,
    RideError,
    RideValidationError,
    TransportError,
)
from rider_app.common.localization import get_text
from rider_app.common.logger import log_debug, log_error, log_info
from rider_app.common.tasks import DelayedTask, RepeatingTask
from rider_app.core.geo.geocoder import ReverseGeocoder
from rider_app.core.geo.location import LocationProvider
from rider_app.core.geo.utils import (
    calculate_distance,
    estimate_travel_time,
    format_coordinates,
    quote_fare,
)
from rider_app.core.rides.models import (
    BookingOptions,
    GeoLocation,
    MatchedDriver,
    Place,
    RideRequest,
    SearchSession,
    VehicleOption,
)
from rider_app.core.rides.realtime import (
    LocationUpdated,
    ProviderChanged,
    RideCancelled,
    RideRealtimeReconciler,
    RideSignal,
    StatusChanged,
)
from rider_app.core.rides.store import RideStore

BalanceProvider = Callable[[], Awaitable[Optional[float]]]
ControllerListener = Callable[[], None]

# Смещение меньше ~10 м не считается новой позицией
_LOCATION_EPSILON_KM = 0.01

_MIN_PLACE_QUERY_LENGTH = 2

_STATUS_STEPS: dict[RideStatus, RideStep] = {
    RideStatus.PENDING: RideStep.SEARCHING,
    RideStatus.MATCHED: RideStep.TRACKING,
    RideStatus.ARRIVING: RideStep.TRACKING,
    RideStatus.ARRIVED: RideStep.TRACKING,
    RideStatus.PICKUP: RideStep.TRACKING,
    RideStatus.PICKED_UP: RideStep.TRACKING,
    RideStatus.IN_PROGRESS: RideStep.TRACKING,
    RideStatus.COMPLETED: RideStep.RATING,
}

_STATUS_TEXT_KEYS: dict[RideStatus, str] = {
    RideStatus.PENDING: "STATUS_PENDING",
    RideStatus.MATCHED: "STATUS_MATCHED",
    RideStatus.ARRIVING: "STATUS_ARRIVING",
    RideStatus.ARRIVED: "STATUS_ARRIVED",
    RideStatus.PICKUP: "STATUS_ARRIVED",
    RideStatus.PICKED_UP: "STATUS_IN_PROGRESS",
    RideStatus.IN_PROGRESS: "STATUS_IN_PROGRESS",
    RideStatus.COMPLETED: "STATUS_COMPLETED",
    RideStatus.CANCELLED: "STATUS_CANCELLED",
}


def step_for_status(status: RideStatus) -> RideStep:
    """Шаг экрана для статуса заказа."""
    return _STATUS_STEPS.get(status, RideStep.SELECT)


def format_elapsed(seconds: int) -> str:
    """Секунды в формате MM:SS."""
    minutes, secs = divmod(max(0, int(seconds)), 60)
    return f"{minutes:02d}:{secs:02d}"


def _as_utc(value: Optional[datetime]) -> datetime:
    if value is None:
        return datetime.now(timezone.utc)
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class RideRequestController:
    """Сценарий заказа поездки для одного пассажира (одного экрана)."""

    def __init__(
        self,
        store: RideStore,
        location_provider: LocationProvider,
        user_id: Optional[str],
        balance_provider: BalanceProvider | None = None,
        geocoder: ReverseGeocoder | None = None,
        lang: str | None = None,
        vehicles: Sequence[VehicleOption] | None = None,
        reconciler: RideRealtimeReconciler | None = None,
        search_tick_interval: float | None = None,
        search_timeout: float | None = None,
        completion_grace: float | None = None,
        location_poll_interval: float | None = None,
        retry_delay: float | None = None,
        place_suggestions_limit: int | None = None,
    ) -> None:
        """
        Args:
            store: Состояние активной поездки (общий экземпляр оболочки)
            location_provider: Позиция пассажира
            user_id: ID пассажира, None для неавторизованного
            balance_provider: Асинхронный запрос баланса кошелька
            geocoder: Поиск мест и адресов, None отключает поиск
            vehicles: Фиксированный набор транспорта вместо таблицы vehicle_types
            reconciler: Подписки на изменения, по умолчанию создаётся свой
        """
        from rider_app.config import settings

        self.store = store
        self.location_provider = location_provider
        self.user_id = user_id
        self.lang = lang or settings.domain.DEFAULT_LANGUAGE
        self._fixed_vehicles = vehicles is not None
        self.vehicles: tuple[VehicleOption, ...] = tuple(vehicles) if vehicles is not None else store.vehicles

        self._balance_provider = balance_provider
        self._geocoder = geocoder
        self._search_timeout = (
            search_timeout if search_timeout is not None else settings.search.SEARCH_TIMEOUT_SECONDS
        )
        self._location_poll_interval = location_poll_interval
        self._place_suggestions_limit = (
            place_suggestions_limit if place_suggestions_limit is not None else settings.search.PLACE_SUGGESTIONS_LIMIT
        )

        self.reconciler = reconciler or RideRealtimeReconciler(
            store.repository, on_signal=self._handle_signal, retry_delay=retry_delay
        )

        # Шаг экрана и форма
        self.current_step: RideStep = RideStep.SELECT
        self.pickup: Optional[GeoLocation] = None
        self.destination: Optional[GeoLocation] = None
        self.selected_vehicle: VehicleOption = self._default_vehicle()
        self.booking_options = BookingOptions()

        # Предварительный расчёт
        self.estimated_distance: float = 0.0
        self.estimated_time: int = 0
        self.estimated_fare: int = 0

        # Флаги операций и сообщения
        self.is_booking = False
        self.is_cancelling = False
        self.is_reassigning = False
        self.is_getting_location = False
        self.search_session: Optional[SearchSession] = None
        self.balance: Optional[float] = None
        self.error: Optional[str] = None
        self.notice: Optional[str] = None

        self._pickup_from_device = False
        self._booking_aborted = False
        self._torn_down = False
        self._initialized = False
        self._mounted = False
        self._init_lock = asyncio.Lock()
        self._listeners: list[ControllerListener] = []

        self._search_timer = RepeatingTask(
            search_tick_interval if search_tick_interval is not None else settings.timeouts.SEARCH_TICK_INTERVAL,
            self._on_search_tick,
            name="search-timer",
        )
        self._completion_grace = DelayedTask(
            completion_grace if completion_grace is not None else settings.timeouts.COMPLETION_GRACE_SECONDS,
            self.reconciler.stop_provider,
            name="completion-grace",
        )
        self._location_watch: Optional[RepeatingTask] = None
        self._match_task: Optional[asyncio.Task] = None
        self._pickup_address_task: Optional[asyncio.Task] = None
        self._destination_address_task: Optional[asyncio.Task] = None

        self._remove_store_listener = store.add_listener(self._notify)

    def _default_vehicle(self) -> VehicleOption:
        for vehicle in self.vehicles:
            if vehicle.multiplier == 1.0:
                return vehicle
        return self.vehicles[0]

    # =========================================================================
    # ПОДПИСЧИКИ (UI)
    # =========================================================================

    def add_listener(self, listener: ControllerListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    def _notify(self) -> None:
        for listener in list(self._listeners):
            listener()

    def _t(self, key: str, **kwargs: object) -> str:
        return get_text(key, self.lang, **kwargs)

    def _set_error(self, error: RideError) -> None:
        self.error = self._t(error.message_key, **error.params)

    # =========================================================================
    # ПРОИЗВОДНОЕ СОСТОЯНИЕ
    # =========================================================================

    @property
    def active_ride(self) -> Optional[RideRequest]:
        return self.store.current_ride

    @property
    def matched_driver(self) -> Optional[MatchedDriver]:
        return self.store.matched_driver

    @property
    def places(self) -> list[Place]:
        """Сохранённые, затем недавние места для быстрого выбора."""
        return [*self.store.saved_places, *self.store.recent_places]

    @property
    def ride_history(self) -> list[RideRequest]:
        return self.store.ride_history

    def vehicle_label(self, vehicle: VehicleOption) -> str:
        if vehicle.name_key:
            return self._t(vehicle.name_key)
        return vehicle.name or vehicle.id

    @property
    def final_fare(self) -> float:
        """Стоимость к показу: серверная для заказа, иначе предварительная."""
        ride = self.store.current_ride
        if ride is not None:
            return ride.fare
        return self.booking_options.final_amount if self.booking_options.final_amount is not None else self.estimated_fare

    @property
    def can_book(self) -> bool:
        return (
            self.current_step == RideStep.SELECT
            and self.pickup is not None
            and self.destination is not None
            and not self.is_booking
            and not self.is_cancelling
            and not self.store.has_active_ride
        )

    @property
    def can_cancel(self) -> bool:
        return (
            (self.store.current_ride is not None or self.is_booking)
            and not self.is_cancelling
            and self.current_step != RideStep.RATING
        )

    @property
    def search_elapsed_text(self) -> str:
        return format_elapsed(self.search_session.elapsed_seconds if self.search_session else 0)

    @property
    def status_text(self) -> str:
        """Строка статуса для текущего шага."""
        if self.is_reassigning:
            return self._t("STATUS_DRIVER_CHANGED")
        if self.current_step == RideStep.SEARCHING:
            if self.search_session is not None and self.search_session.timed_out:
                return self._t("SEARCH_TIMED_OUT")
            return self._t("STATUS_PENDING")
        if self.current_step == RideStep.RATING:
            return self._t("STATUS_COMPLETED")

        ride = self.store.current_ride
        if ride is None or self.current_step != RideStep.TRACKING:
            return ""
        key = _STATUS_TEXT_KEYS.get(ride.status, "STATUS_PENDING")
        driver = self.store.matched_driver
        eta = driver.eta_minutes if driver is not None and driver.eta_minutes is not None else "…"
        return self._t(key, eta=eta)

    # =========================================================================
    # ИНИЦИАЛИЗАЦИЯ И ВОССТАНОВЛЕНИЕ
    # =========================================================================

    async def initialize(self) -> None:
        """
        Подключает экран: восстанавливает активную поездку и определяет позицию.
        Повторный вызов (переподключение клиента) безопасен.
        """
        async with self._init_lock:
            self._mounted = True
            await self.refresh_balance()
            await self.load_catalog()

            if self.user_id:
                ride = await self.store.initialize(self.user_id)
                if ride is not None:
                    await self._resume(ride)
                elif self.current_step in (RideStep.SEARCHING, RideStep.TRACKING):
                    # Заказ закрылся, пока экран был отключён
                    await self._reset_all()

            if self.current_step == RideStep.SELECT:
                pending = self.store.consume_pending_destination()
                if pending is not None:
                    self.select_destination(pending)
                if self.pickup is None:
                    await self.locate_pickup()
                elif self._pickup_from_device:
                    self._start_location_watch()

            self._initialized = True
            self._notify()

    async def _resume(self, ride: RideRequest) -> None:
        """Переводит экран в шаг, соответствующий статусу заказа."""
        self.pickup = ride.pickup
        self.destination = ride.destination
        self._pickup_from_device = False
        self._stop_location_watch()
        self._recalculate()

        step = step_for_status(ride.status)
        await log_info(
            f"Восстановление заказа {ride.id}: {ride.status.value} -> {step.value}",
            type_msg=TypeMsg.DEBUG,
        )

        if step == RideStep.RATING:
            if self.current_step != RideStep.RATING:
                await self._enter_rating()
            return

        self.current_step = step
        if step == RideStep.SEARCHING:
            self._start_search(ride.id, ride.created_at)
        else:
            self.cleanup_searching()
        self._notify()

        await self.reconciler.watch(ride)
        # Начальное чтение строки могло изменить или закрыть заказ
        ride = self.store.current_ride
        if ride is None or not ride.is_active:
            return

        if ride.provider_id:
            if self.store.matched_driver is None:
                # Карточка водителя не загрузилась, заказ ведём дальше без неё
                self.error = self._t("ERROR_DRIVER_UNAVAILABLE")
                self._notify()
            await self.reconciler.watch_provider(ride.provider_id)
        elif self.current_step == RideStep.SEARCHING:
            self._start_background_match(ride.id)

    async def load_catalog(self) -> None:
        """Варианты транспорта, места пассажира и история поездок."""
        if not self._fixed_vehicles:
            self._apply_vehicles(await self.store.fetch_vehicle_types())
        if self.user_id:
            await self.store.fetch_places(self.user_id)
            await self.store.fetch_ride_history(self.user_id)

    def _apply_vehicles(self, vehicles: Sequence[VehicleOption]) -> None:
        self.vehicles = tuple(vehicles)
        selected = next((v for v in self.vehicles if v.id == self.selected_vehicle.id), None)
        self.selected_vehicle = selected or self._default_vehicle()
        self._recalculate()
        self._notify()

    # =========================================================================
    # БАЛАНС
    # =========================================================================

    async def refresh_balance(self) -> Optional[float]:
        """Запрашивает баланс кошелька. Ошибка оставляет прежнее значение."""
        if self._balance_provider is None:
            return self.balance
        try:
            self.balance = await self._balance_provider()
        except RideError as e:
            await log_error(f"Не удалось получить баланс пассажира {self.user_id}: {e}")
        return self.balance

    # =========================================================================
    # ТОЧКИ МАРШРУТА И ТАРИФ
    # =========================================================================

    async def locate_pickup(self) -> GeoLocation:
        """Определяет позицию устройства и ставит её точкой посадки."""
        self.is_getting_location = True
        self._notify()
        try:
            location = await self.location_provider.get_current_location()
        finally:
            self.is_getting_location = False

        # Пока ждали позицию, пассажир мог заказать поездку или выбрать точку вручную
        if self.current_step != RideStep.SELECT or (self.pickup is not None and not self._pickup_from_device):
            self._notify()
            return location

        self._apply_device_pickup(location)
        if not location.is_approximate:
            self._start_location_watch()
        return location

    def _apply_device_pickup(self, location: GeoLocation) -> None:
        self.pickup = location
        self._pickup_from_device = True
        self._recalculate()
        self._notify()
        self._resolve_pickup_address(location)

    def set_pickup(self, location: GeoLocation) -> None:
        """Точка посадки, выбранная вручную. Отключает слежение за позицией."""
        if self.current_step != RideStep.SELECT:
            return
        self._stop_location_watch()
        self._pickup_from_device = False
        self.pickup = location
        self._recalculate()
        self._notify()

    def select_destination(self, location: GeoLocation) -> None:
        if self.current_step != RideStep.SELECT:
            return
        self.destination = location
        self.error = None
        self._recalculate()
        self._notify()

    def set_destination_from_map(self, lat: float, lng: float) -> GeoLocation:
        """Точка назначения по клику на карте. Адрес подставляется позже."""
        location = GeoLocation(lat=lat, lng=lng, address=format_coordinates(lat, lng))
        self.select_destination(location)
        if self._destination_address_task is not None and not self._destination_address_task.done():
            self._destination_address_task.cancel()
        self._destination_address_task = asyncio.create_task(
            self._resolve_destination_address(location), name="destination-address"
        )
        return location

    def select_place(self, place: Place) -> None:
        """Точка назначения из сохранённых, недавних мест или результатов поиска."""
        self.select_destination(place.to_location())

    def select_vehicle(self, vehicle_id: str) -> None:
        for vehicle in self.vehicles:
            if vehicle.id == vehicle_id:
                self.selected_vehicle = vehicle
                self._recalculate()
                self._notify()
                return
        raise ValueError(f"Неизвестный вариант транспорта: {vehicle_id}")

    def set_booking_options(self, options: BookingOptions) -> None:
        self.booking_options = options
        self._notify()

    def quote_vehicle(self, vehicle: VehicleOption) -> int:
        """Цена маршрута для варианта транспорта (карточки выбора)."""
        if self.pickup is None or self.destination is None:
            return 0
        distance = calculate_distance(self.pickup.lat, self.pickup.lng, self.destination.lat, self.destination.lng)
        return quote_fare(distance, vehicle.ride_type, vehicle.multiplier)

    def _recalculate(self) -> None:
        if self.pickup is None or self.destination is None:
            self.estimated_distance = 0.0
            self.estimated_time = 0
            self.estimated_fare = 0
            return

        distance = calculate_distance(self.pickup.lat, self.pickup.lng, self.destination.lat, self.destination.lng)
        self.estimated_distance = round(distance, 1)
        self.estimated_time = estimate_travel_time(distance)
        self.estimated_fare = quote_fare(distance, self.selected_vehicle.ride_type, self.selected_vehicle.multiplier)

    async def search_places(self, query: str) -> list[Place]:
        """
        Подсказки точки назначения: сначала совпадения среди сохранённых
        и недавних мест, затем результаты геокодера.
        """
        query = query.strip()
        if len(query) < _MIN_PLACE_QUERY_LENGTH:
            return []

        results = [place for place in self.places if place.matches(query)][: self._place_suggestions_limit]
        if self._geocoder is None:
            return results

        known = {(round(p.lat, 5), round(p.lng, 5)) for p in results}
        for found in await self._geocoder.search(query, limit=self._place_suggestions_limit):
            if (round(found.lat, 5), round(found.lng, 5)) in known:
                continue
            results.append(Place(
                id=f"search_{found.lat:.5f}_{found.lng:.5f}",
                name=found.name,
                address=found.address,
                lat=found.lat,
                lng=found.lng,
                source=PlaceSource.SEARCH,
            ))
        return results

    # =========================================================================
    # СЛЕЖЕНИЕ ЗА ПОЗИЦИЕЙ И АДРЕСА
    # =========================================================================

    def _start_location_watch(self) -> None:
        if self._location_watch is not None and self._location_watch.is_running:
            return
        self._location_watch = self.location_provider.watch(
            self._on_watched_location, interval=self._location_poll_interval
        )

    def _stop_location_watch(self) -> None:
        watch, self._location_watch = self._location_watch, None
        if watch is not None:
            watch.cancel()

    async def _on_watched_location(self, location: GeoLocation) -> None:
        if self.current_step != RideStep.SELECT or not self._pickup_from_device:
            return
        if location.is_approximate:
            return
        if self.pickup is not None and calculate_distance(
            self.pickup.lat, self.pickup.lng, location.lat, location.lng
        ) < _LOCATION_EPSILON_KM:
            return
        self._apply_device_pickup(location)

    def _resolve_pickup_address(self, location: GeoLocation) -> None:
        if self._pickup_address_task is not None and not self._pickup_address_task.done():
            self._pickup_address_task.cancel()
        self._pickup_address_task = asyncio.create_task(
            self._resolve_pickup(location), name="pickup-address"
        )

    async def _resolve_pickup(self, location: GeoLocation) -> None:
        resolved = await self.location_provider.resolve_address(location)
        current = self.pickup
        if current is None or (current.lat, current.lng) != (location.lat, location.lng):
            return
        self.pickup = resolved
        self._notify()

    async def _resolve_destination_address(self, location: GeoLocation) -> None:
        resolved = await self.location_provider.resolve_address(location)
        current = self.destination
        if current is None or (current.lat, current.lng) != (location.lat, location.lng):
            return
        if self.current_step == RideStep.SELECT:
            self.destination = resolved
            self._notify()

    # =========================================================================
    # БРОНИРОВАНИЕ
    # =========================================================================

    async def _validate_booking(self, options: BookingOptions) -> None:
        if not self.user_id:
            raise NotAuthenticatedError()
        if self.pickup is None or self.destination is None:
            raise RideValidationError("pickup и destination обязательны")
        if self.current_step != RideStep.SELECT or self.store.has_active_ride:
            raise ActiveRideExistsError()

        if options.payment_method == PaymentMethod.WALLET and self._balance_provider is not None:
            balance = await self._balance_provider()
            if balance is None:
                raise TransportError("баланс недоступен")
            self.balance = balance
            amount = options.final_amount if options.final_amount is not None else self.estimated_fare
            if balance < amount:
                raise InsufficientBalanceError(fare=amount, balance=balance)

    async def book_ride(self, options: BookingOptions | None = None) -> bool:
        """
        Создаёт заказ и запускает поиск водителя.

        Returns:
            True, если заказ создан (в том числе запланированный)
        """
        if self.is_booking or self.is_cancelling:
            return False
        options = options or self.booking_options
        self.error = None
        self.notice = None

        self.is_booking = True
        self._booking_aborted = False
        try:
            await self._validate_booking(options)
        except RideError as e:
            self.is_booking = False
            self._set_error(e)
            self._notify()
            return False
        if self._booking_aborted or self._torn_down:
            self.is_booking = False
            return False

        self.current_step = RideStep.SEARCHING
        self._stop_location_watch()
        self._notify()

        try:
            ride = await self.store.create_ride_request(
                user_id=self.user_id,
                pickup=self.pickup,
                destination=self.destination,
                ride_type=self.selected_vehicle.ride_type,
                multiplier=self.selected_vehicle.multiplier,
                payment_method=options.payment_method,
                passenger_count=options.passenger_count,
                special_requests=options.special_requests,
                scheduled_time=options.scheduled_time,
            )
        except RideError as e:
            await log_error(f"Не удалось создать заказ для {self.user_id}: {e}")
            self.is_booking = False
            self.cleanup_searching()
            self.current_step = RideStep.SELECT
            if isinstance(e, RideValidationError):
                self._set_error(e)
            else:
                self.error = self._t("ERROR_CREATE_RIDE")
            self._notify()
            return False

        self.is_booking = False

        if self._booking_aborted:
            # Пассажир нажал «Отмена», пока заказ создавался
            await log_info(f"Заказ {ride.id} отменён во время создания", type_msg=TypeMsg.INFO)
            if not await self.store.cancel_ride(ride.id):
                self.error = self._t("ERROR_CANCEL_RIDE")
                self._notify()
            return False

        if self._torn_down:
            await log_info(
                f"Экран закрыт во время создания заказа {ride.id}, заказ остаётся для восстановления",
                type_msg=TypeMsg.INFO,
            )
            return True

        if ride.status == RideStatus.SCHEDULED:
            when = _as_utc(ride.scheduled_time).strftime("%d.%m %H:%M")
            await self._reset_all()
            self.notice = self._t("RIDE_SCHEDULED", time=when)
            self._notify()
            return True

        # Пока шёл запрос, экран могли закрыть или отменить
        if not self.store.is_current(ride.id) or self.current_step != RideStep.SEARCHING:
            return True

        self._start_search(ride.id, ride.created_at)
        self._notify()

        await self.reconciler.watch(ride)

        current = self.store.current_ride
        if (
            current is not None
            and current.id == ride.id
            and current.status == RideStatus.PENDING
            and self.current_step == RideStep.SEARCHING
        ):
            self._start_background_match(ride.id)
        return True

    # =========================================================================
    # ПОИСК ВОДИТЕЛЯ
    # =========================================================================

    def _start_search(self, ride_id: str, started_at: Optional[datetime] = None) -> None:
        if self.search_session is None or self.search_session.ride_id != ride_id:
            self.search_session = SearchSession(ride_id=ride_id, started_at=_as_utc(started_at))
            self._update_elapsed()
        self._search_timer.start()

    def _update_elapsed(self) -> None:
        session = self.search_session
        if session is None:
            return
        elapsed = (datetime.now(timezone.utc) - _as_utc(session.started_at)).total_seconds()
        session.elapsed_seconds = max(0, int(elapsed))
        if session.elapsed_seconds >= self._search_timeout:
            session.timed_out = True

    async def _on_search_tick(self) -> None:
        session = self.search_session
        if session is None or self.current_step != RideStep.SEARCHING:
            self._search_timer.cancel()
            return
        was_timed_out = session.timed_out
        self._update_elapsed()
        if session.timed_out and not was_timed_out:
            # Заказ не отменяется автоматически
            await log_info(f"Поиск водителя для {session.ride_id} превысил лимит", type_msg=TypeMsg.WARNING)
        self._notify()

    def cleanup_searching(self) -> None:
        """Останавливает таймер поиска. Единая точка выхода из шага searching."""
        self._search_timer.cancel()
        self.search_session = None

    def _start_background_match(self, ride_id: str) -> None:
        if self._match_task is not None and not self._match_task.done():
            return
        self._match_task = asyncio.create_task(self._run_matching(ride_id), name=f"match-{ride_id}")

    def _cancel_match_task(self) -> None:
        task, self._match_task = self._match_task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _run_matching(self, ride_id: str) -> None:
        """Однократная попытка назначить водителя. Итог может прийти и из change feed."""
        try:
            driver = await self.store.find_and_match_driver(ride_id)
        except RideError as e:
            await log_info(f"Подбор водителя для {ride_id} не удался: {e}", type_msg=TypeMsg.WARNING)
            return

        if driver is None:
            await log_debug(f"Подбор для {ride_id}: водитель не назначен, ждём change feed")
            return
        if not self.store.is_current(ride_id) or self.is_cancelling:
            return

        await self._on_driver_assigned(ride_id, driver)

    async def _on_driver_assigned(self, ride_id: str, driver: MatchedDriver) -> None:
        """Переход в tracking. Повторный вызов для того же водителя безопасен."""
        ride = self.store.current_ride
        if ride is None or ride.id != ride_id or ride.provider_id != driver.id:
            return

        self.reconciler.acknowledge(ride)
        self.is_reassigning = False
        self._enter_tracking()
        self._notify()
        await self.reconciler.watch_provider(driver.id)

    def _enter_tracking(self) -> None:
        if self.current_step not in (RideStep.SEARCHING, RideStep.TRACKING):
            return
        self.cleanup_searching()
        self.current_step = RideStep.TRACKING

    # =========================================================================
    # ОТМЕНА
    # =========================================================================

    async def cancel_ride(self) -> bool:
        """
        Отмена в две фазы: сначала локальная (таймеры, подписки, экран выбора),
        затем запрос к серверу. Пока запрос идёт, новое бронирование запрещено.
        При сбое запроса экран не откатывается, отмену можно повторить.
        """
        if self.is_cancelling:
            return False
        ride = self.store.current_ride
        ride_id = ride.id if ride is not None else None

        if self.is_booking:
            self._booking_aborted = True
        self.is_cancelling = True
        self.cleanup_searching()
        self._cancel_match_task()
        self._completion_grace.cancel()
        self.is_reassigning = False
        self.current_step = RideStep.SELECT
        self.error = None
        self._notify()

        try:
            await self.reconciler.stop()
            cancelled = await self.store.cancel_ride(ride_id) if ride_id else True
        finally:
            self.is_cancelling = False

        if not cancelled:
            self.error = self._t("ERROR_CANCEL_RIDE")
            self._notify()
            return False

        await log_info(f"Пассажир {self.user_id} отменил заказ {ride_id}", type_msg=TypeMsg.INFO)
        await self._reset_all()
        return True

    # =========================================================================
    # ЗАВЕРШЕНИЕ И ОЦЕНКА
    # =========================================================================

    async def _enter_rating(self) -> None:
        self.cleanup_searching()
        self._cancel_match_task()
        self.is_reassigning = False
        self.current_step = RideStep.RATING
        self._notify()
        await self.reconciler.stop_ride()
        # Координаты водителя нужны ещё несколько секунд для карты
        self._completion_grace.start()

    async def submit_rating(self, stars: int, tip_amount: float = 0.0, comment: Optional[str] = None) -> bool:
        """
        Отправляет оценку и возвращает экран к выбору.

        Returns:
            True, если оценка сохранена на сервере
        """
        if self.current_step != RideStep.RATING:
            return False
        try:
            saved = await self.store.submit_rating(self.user_id, stars, tip_amount, comment)
        except RideError as e:
            self._set_error(e)
            self._notify()
            return False

        self.error = None if saved else self._t("ERROR_RATING")
        await self._reset_all()
        return saved

    async def skip_rating(self) -> None:
        if self.current_step != RideStep.RATING:
            return
        self.store.complete_ride()
        await self._reset_all()

    # =========================================================================
    # СИГНАЛЫ CHANGE FEED
    # =========================================================================

    async def _handle_signal(self, signal: RideSignal) -> None:
        match signal:
            case LocationUpdated(provider_id=provider_id, lat=lat, lng=lng):
                self.store.update_driver_location(provider_id, lat, lng)

            case RideCancelled(ride=ride):
                if not self.store.is_current(ride.id) or self.is_cancelling:
                    return
                await log_info(f"Заказ {ride.id} отменён на сервере", type_msg=TypeMsg.INFO)
                self.store.apply_ride_update(ride)
                await self._reset_all()
                self.store.clear()
                self.notice = self._t("RIDE_CANCELLED_REMOTE")
                self._notify()

            case ProviderChanged(ride=ride, new_provider_id=new_provider_id):
                if not self.store.is_current(ride.id):
                    return
                self.store.apply_ride_update(ride)
                await self._on_provider_changed(ride.id, new_provider_id)

            case StatusChanged(ride=ride, new_status=new_status):
                if not self.store.is_current(ride.id):
                    return
                self.store.apply_ride_update(ride)
                await self._on_status_changed(ride.id, new_status)

    async def _on_provider_changed(self, ride_id: str, provider_id: Optional[str]) -> None:
        driver = self.store.matched_driver

        if provider_id is None:
            # Водителя сняли с заказа
            self.is_reassigning = False
            self.store.drop_matched_driver()
            await self.reconciler.stop_provider()
            ride = self.store.current_ride
            if ride is not None and ride.status == RideStatus.PENDING and self.current_step == RideStep.TRACKING:
                self.current_step = RideStep.SEARCHING
                self._start_search(ride.id, ride.updated_at)
                self._start_background_match(ride.id)
            self._notify()
            return

        if driver is not None and driver.id == provider_id:
            # Уже применено локально собственным назначением
            await self._on_driver_assigned(ride_id, driver)
            return

        await log_info(
            f"Заказ {ride_id}: водитель {driver.id if driver else None} -> {provider_id}",
            type_msg=TypeMsg.INFO,
        )
        self.is_reassigning = driver is not None
        self._cancel_match_task()
        self.store.drop_matched_driver()
        await self.reconciler.stop_provider()
        self._enter_tracking()
        self._notify()

        loaded = None
        try:
            loaded = await self.store.load_driver(ride_id, provider_id)
        except RideError as e:
            await log_error(f"Не удалось загрузить водителя {provider_id}: {e}")

        ride = self.store.current_ride
        if ride is None or ride.id != ride_id or ride.provider_id != provider_id:
            # Пока грузили, заказ отменили или водитель снова сменился
            return

        self.is_reassigning = False
        if loaded is None:
            self.error = self._t("ERROR_DRIVER_UNAVAILABLE")
        else:
            self.reconciler.acknowledge(ride)
        self._notify()
        await self.reconciler.watch_provider(provider_id)

    async def _on_status_changed(self, ride_id: str, status: RideStatus) -> None:
        if status == RideStatus.COMPLETED:
            await log_info(f"Поездка {ride_id} завершена", type_msg=TypeMsg.INFO)
            await self._enter_rating()
            return

        step = step_for_status(status)
        if step == RideStep.TRACKING:
            self._enter_tracking()
        elif step == RideStep.SEARCHING and self.current_step == RideStep.TRACKING:
            ride = self.store.current_ride
            self.current_step = RideStep.SEARCHING
            self._start_search(ride_id, ride.updated_at if ride else None)
        self._notify()

    # =========================================================================
    # СБРОС И ОСТАНОВКА
    # =========================================================================

    async def _reset_all(self) -> None:
        """Возвращает экран к выбору маршрута. Ошибку и уведомление не трогает."""
        self.cleanup_searching()
        self._cancel_match_task()
        self._completion_grace.cancel()
        await self.reconciler.stop()

        self.current_step = RideStep.SELECT
        self.destination = None
        self.is_reassigning = False
        self.booking_options = BookingOptions()
        self._recalculate()

        if self._mounted and self._pickup_from_device:
            self._start_location_watch()
        self._notify()

    async def teardown(self) -> None:
        """Освобождает таймеры и подписки при закрытии экрана."""
        self._mounted = False
        # Заказ в процессе создания не отменяется: его найдёт initialize() следующего экрана
        self._torn_down = True
        self.cleanup_searching()
        self._cancel_match_task()
        self._stop_location_watch()
        self._completion_grace.cancel()
        for task in (self._pickup_address_task, self._destination_address_task):
            if task is not None and not task.done():
                task.cancel()
        self._pickup_address_task = None
        self._destination_address_task = None
        await self.reconciler.stop()
        self._remove_store_listener()
        self._listeners.clear()
        await log_debug(f"Экран заказа пассажира {self.user_id} закрыт")
