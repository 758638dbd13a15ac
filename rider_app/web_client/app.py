import os

# Настройка пути хранения локальных данных NiceGUI (чтобы не создавать папку .nicegui в корне)
os.environ.setdefault('NICEGUI_STORAGE_PATH', '/tmp/rider_app_nicegui')

from nicegui import Client, app, ui
from redis.exceptions import RedisError

from rider_app.config import settings
from rider_app.common.constants import TypeMsg
from rider_app.common.logger import log_error, log_info
from rider_app.core.geo.geocoder import ReverseGeocoder
from rider_app.core.geo.location import LocationProvider
from rider_app.core.rides.controller import RideRequestController
from rider_app.core.rides.repository import RideRepository
from rider_app.core.rides.store import RideStore
from rider_app.infra.change_feed import RedisChangeFeed
from rider_app.infra.redis_client import close_redis, init_redis
from rider_app.infra.rest_store import HttpRemoteStore
from rider_app.web_client.browser_location import BrowserPositionSource
from rider_app.web_client.pages.ride import RidePage


def get_user_info() -> tuple[str | None, str]:
    """Пассажир из сессии. В режиме разработки подставляется тестовый пользователь."""
    if not app.storage.user.get('id') and settings.system.RUN_DEV_MODE:
        app.storage.user.update({'id': 'dev-rider', 'language': settings.domain.DEFAULT_LANGUAGE})
    return (
        app.storage.user.get('id'),
        app.storage.user.get('language', settings.domain.DEFAULT_LANGUAGE),
    )


def build_controller(client: Client, user_id: str | None, lang: str) -> tuple[RideRequestController, list]:
    """Собирает зависимости экрана заказа для одного клиента."""
    remote = HttpRemoteStore(RedisChangeFeed())
    repository = RideRepository(remote)
    store = RideStore(repository)
    geocoder = ReverseGeocoder()
    location = LocationProvider(
        BrowserPositionSource(client, timeout=settings.timeouts.GEOLOCATION_TIMEOUT),
        geocoder=geocoder,
    )

    async def balance() -> float | None:
        if not user_id:
            return None
        return await repository.get_wallet_balance(user_id)

    controller = RideRequestController(
        store,
        location,
        user_id,
        balance_provider=balance,
        geocoder=geocoder,
        lang=lang,
    )
    return controller, [remote, geocoder]


def create_app() -> None:

    @ui.page('/')
    async def index(client: Client):
        user_id, lang = get_user_info()
        controller, closeables = build_controller(client, user_id, lang)
        page = RidePage(controller, lang)

        async def on_disconnect() -> None:
            await page.shutdown()
            for resource in closeables:
                await resource.close()

        client.on_disconnect(on_disconnect)
        await client.connected()
        await page.mount()

    @app.on_startup
    async def startup() -> None:
        try:
            await init_redis()
        except (RedisError, OSError) as e:
            # Подписки будут переподключаться сами
            await log_error(f"Redis недоступен при старте: {e}")
        await log_info("Web Client started", type_msg=TypeMsg.INFO)

    @app.on_shutdown
    async def shutdown() -> None:
        await close_redis()
        await log_info("Web Client stopped", type_msg=TypeMsg.INFO)


def run_web_client(host: str | None = None, port: int | None = None, reload: bool = False) -> None:
    create_app()
    ui.run(
        host=host or settings.deployment.WEB_CLIENT_HOST,
        port=port or settings.deployment.WEB_CLIENT_PORT,
        reload=reload,
        title=settings.deployment.WEB_CLIENT_TITLE,
        storage_secret=settings.deployment.STORAGE_SECRET,
    )
