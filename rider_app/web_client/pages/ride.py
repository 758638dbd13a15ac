from __future__ import annotations

from typing import Optional

from nicegui import ui

from rider_app.common.constants import PaymentMethod, RideStep
from rider_app.common.localization import get_text
from rider_app.common.logger import log_error
from rider_app.core.rides.controller import RideRequestController
from rider_app.core.rides.models import BookingOptions, Place


class RidePage:
    """Экран заказа: выбор маршрута, поиск, поездка, оценка."""

    def __init__(self, controller: RideRequestController, user_lang: str):
        self.controller = controller
        self.lang = user_lang
        self.search_input: Optional[ui.input] = None
        self._search_results: list[Place] = []
        self._stars = 5
        self._tip = 0.0
        self._comment = ""
        self._remove_listener = None

    def _t(self, key: str, **kwargs) -> str:
        return get_text(key, self.lang, **kwargs)

    async def mount(self):
        with ui.column().classes('w-full max-w-md mx-auto p-4 gap-3'):
            ui.label(self._t("PAGE_TITLE")).classes('text-2xl font-bold')
            self.render()

        self._remove_listener = self.controller.add_listener(self.render.refresh)
        try:
            await self.controller.initialize()
        except Exception as e:
            await log_error(f"Error initializing RidePage: {e}", exc_info=True)
            ui.notify(self._t("ERROR_GENERIC"), type="negative")

    async def shutdown(self):
        if self._remove_listener:
            self._remove_listener()
        await self.controller.teardown()

    # =========================================================================
    # RENDER
    # =========================================================================

    @ui.refreshable
    def render(self) -> None:
        c = self.controller

        if c.notice:
            ui.label(c.notice).classes('text-blue-600')
        if c.error:
            ui.label(c.error).classes('text-red-600')

        if c.current_step == RideStep.SELECT:
            self._render_select()
        elif c.current_step == RideStep.SEARCHING:
            self._render_searching()
        elif c.current_step == RideStep.TRACKING:
            self._render_tracking()
        elif c.current_step == RideStep.RATING:
            self._render_rating()

    def _render_select(self) -> None:
        c = self.controller

        with ui.card().classes('w-full'):
            pickup = c.pickup.address if c.pickup else "…"
            ui.label(f"{self._t('LABEL_PICKUP')}: {pickup}")
            if c.pickup is not None and c.pickup.is_approximate:
                ui.label(self._t("LABEL_LOCATION_APPROXIMATE")).classes('text-xs text-orange-600')

            destination = c.destination.address if c.destination else "-"
            ui.label(f"{self._t('LABEL_DESTINATION')}: {destination}")

            self.search_input = ui.input(self._t("LABEL_SEARCH_PLACE")).classes('w-full')
            self.search_input.on('keydown.enter', self._on_search)

            for place in self._search_results:
                ui.item(place.label, on_click=lambda p=place: self._on_place(p)).classes('w-full')

        if c.places and not self._search_results:
            ui.label(self._t("LABEL_SAVED_PLACES")).classes('text-sm text-gray-600')
            with ui.row().classes('w-full gap-1'):
                for place in c.places:
                    ui.chip(place.label, on_click=lambda p=place: self._on_place(p)).props('outline')

        if c.pickup and c.destination:
            with ui.row().classes('w-full gap-2'):
                for vehicle in c.vehicles:
                    selected = vehicle.id == c.selected_vehicle.id
                    ui.button(
                        f"{c.vehicle_label(vehicle)} · ฿{c.quote_vehicle(vehicle)}",
                        icon=vehicle.icon,
                        on_click=lambda v=vehicle: c.select_vehicle(v.id),
                    ).props('outline' if not selected else '')

            ui.label(self._t("LABEL_ROUTE", distance=c.estimated_distance, duration=c.estimated_time))
            ui.label(self._t("LABEL_FARE", fare=c.final_fare)).classes('text-lg font-bold')

        ui.button(self._t("BTN_BOOK"), on_click=self._on_book).classes('w-full').set_enabled(c.can_book)

        if c.can_cancel:
            ui.button(self._t("BTN_CANCEL"), on_click=c.cancel_ride).props('flat color=negative')

        if c.ride_history:
            ui.label(self._t("LABEL_RIDE_HISTORY")).classes('text-sm text-gray-600 mt-2')
            for ride in c.ride_history[:5]:
                ui.label(f"{ride.destination.address} · ฿{ride.fare:.0f}").classes('text-xs')

    def _render_searching(self) -> None:
        c = self.controller
        with ui.card().classes('w-full items-center'):
            ui.spinner(size='lg')
            ui.label(c.status_text).classes('text-lg')
            ui.label(self._t("LABEL_SEARCHING_ELAPSED", elapsed=c.search_elapsed_text))
            ui.label(self._t("LABEL_FARE", fare=c.final_fare))
        ui.button(self._t("BTN_CANCEL"), on_click=c.cancel_ride).classes('w-full').props('color=negative')

    def _render_tracking(self) -> None:
        c = self.controller
        driver = c.matched_driver

        with ui.card().classes('w-full'):
            ui.label(c.status_text).classes('text-lg font-bold')
            if driver is not None and not c.is_reassigning:
                ui.label(self._t(
                    "LABEL_DRIVER", name=driver.name, rating=f"{driver.rating:.1f}", trips=driver.total_trips
                ))
                ui.label(self._t(
                    "LABEL_VEHICLE",
                    color=driver.vehicle.color,
                    type=driver.vehicle.type,
                    plate=driver.vehicle.plate,
                ))
            else:
                ui.spinner()
            ui.label(self._t("LABEL_FARE", fare=c.final_fare))

        if c.can_cancel:
            ui.button(self._t("BTN_CANCEL"), on_click=c.cancel_ride).classes('w-full').props('color=negative')

    def _render_rating(self) -> None:
        c = self.controller
        with ui.card().classes('w-full'):
            ui.label(c.status_text).classes('text-lg font-bold')
            ui.label(self._t("LABEL_TOTAL", fare=c.final_fare))
            ui.label(self._t("LABEL_RATE_DRIVER"))
            ui.toggle([1, 2, 3, 4, 5], value=self._stars, on_change=lambda e: setattr(self, '_stars', e.value))
            ui.number(self._t("LABEL_TIP"), value=self._tip, min=0,
                      on_change=lambda e: setattr(self, '_tip', float(e.value or 0)))
            ui.input(self._t("LABEL_COMMENT"), value=self._comment,
                     on_change=lambda e: setattr(self, '_comment', e.value))
        with ui.row().classes('w-full'):
            ui.button(self._t("BTN_SUBMIT_RATING"), on_click=self._on_rate)
            ui.button(self._t("BTN_SKIP"), on_click=c.skip_rating).props('flat')

    # =========================================================================
    # HANDLERS
    # =========================================================================

    async def _on_search(self) -> None:
        if self.search_input is None:
            return
        self._search_results = await self.controller.search_places(self.search_input.value or "")
        if not self._search_results:
            ui.notify(self._t("LABEL_NO_PLACES_FOUND"), type="warning")
        self.render.refresh()

    def _on_place(self, place: Place) -> None:
        self._search_results = []
        self.controller.select_place(place)

    async def _on_book(self) -> None:
        options = self.controller.booking_options or BookingOptions(payment_method=PaymentMethod.WALLET)
        await self.controller.book_ride(options)

    async def _on_rate(self) -> None:
        await self.controller.submit_rating(self._stars, self._tip, self._comment or None)
        self._stars, self._tip, self._comment = 5, 0.0, ""
