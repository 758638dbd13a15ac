# rider_app/config/loader.py
"""
Загрузчик конфигурации проекта.
Единственный источник истины: config/config.json.
Секретные данные переопределяются из переменных окружения и .env.
"""

from __future__ import annotations

import json
import os
from functools import lru_cache
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings


# =============================================================================
# ОПРЕДЕЛЕНИЕ ПУТЕЙ
# =============================================================================

def get_project_root() -> Path:
    """Возвращает корневую директорию проекта."""
    return Path(__file__).parent.parent.parent


def get_config_path() -> Path:
    """Возвращает путь к файлу конфигурации."""
    return get_project_root() / "config" / "config.json"


def load_config_json() -> dict[str, Any]:
    """Загружает config.json и возвращает словарь."""
    config_path = get_config_path()
    if not config_path.exists():
        raise FileNotFoundError(f"Файл конфигурации не найден: {config_path}")

    with open(config_path, "r", encoding="utf-8") as f:
        return json.load(f)


# =============================================================================
# PYDANTIC МОДЕЛИ КОНФИГУРАЦИИ
# =============================================================================

class SystemSettings(BaseModel):
    """Системные настройки."""
    PROJECT_NAME: str = "rider_app"
    VERSION: str = "0.1.0"
    DEBUG: bool = True
    ENVIRONMENT: str = "development"
    RUN_DEV_MODE: bool = True


class DeploymentSettings(BaseModel):
    """Настройки веб-клиента."""
    WEB_CLIENT_HOST: str = "0.0.0.0"
    WEB_CLIENT_PORT: int = 8082
    WEB_CLIENT_TITLE: str = "Rider"
    STORAGE_SECRET: str = "change-me"


class LoggingSettings(BaseModel):
    """Настройки логирования."""
    LOG_LEVEL: str = "DEBUG"
    LOG_TO_FILE: bool = False
    LOG_FILE_PATH: str = "logs/rider_app.log"
    LOG_FORMAT: str = "colored"
    LOG_MAX_BYTES: int = 10485760
    LOG_BACKUP_COUNT: int = 5


class BackendSettings(BaseModel):
    """Удалённое хранилище: REST-эндпоинт и имена таблиц."""
    BACKEND_URL: str = "http://localhost:54321"
    BACKEND_API_KEY: str = ""
    BACKEND_REQUEST_TIMEOUT: float = 10.0
    RIDES_TABLE: str = "ride_requests"
    PROVIDERS_TABLE: str = "service_providers"
    RATINGS_TABLE: str = "ride_ratings"
    NEARBY_PROVIDERS_RPC: str = "find_nearby_providers"
    WALLET_RPC: str = "get_customer_wallet"
    VEHICLE_TYPES_TABLE: str = "vehicle_types"
    SAVED_PLACES_TABLE: str = "saved_places"
    RECENT_PLACES_TABLE: str = "recent_places"

    @field_validator("BACKEND_API_KEY", mode="before")
    @classmethod
    def get_from_env(cls, v: str) -> str:
        """Получает ключ API из переменных окружения, если не задан."""
        if not v:
            return os.getenv("BACKEND_API_KEY", "")
        return v

    @property
    def rest_url(self) -> str:
        return f"{self.BACKEND_URL.rstrip('/')}/rest/v1"


class RedisSettings(BaseModel):
    """Настройки Redis (транспорт change feed)."""
    REDIS_HOST: str = "localhost"
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0
    REDIS_PASSWORD: str = ""
    REDIS_MAX_CONNECTIONS: int = 20
    CHANGE_FEED_PREFIX: str = "realtime"

    @field_validator("REDIS_PASSWORD", mode="before")
    @classmethod
    def get_from_env(cls, v: str) -> str:
        """Получает пароль из переменных окружения."""
        if not v:
            return os.getenv("REDIS_PASSWORD", "")
        return v

    @property
    def url(self) -> str:
        """Возвращает URL для подключения к Redis."""
        auth = f":{self.REDIS_PASSWORD}@" if self.REDIS_PASSWORD else ""
        return f"redis://{auth}{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"


class GoogleMapsSettings(BaseModel):
    """Настройки Google Geocoding API."""
    GOOGLE_MAPS_API_KEY: str = ""
    GEOCODING_LANGUAGE: str = "th"

    @field_validator("GOOGLE_MAPS_API_KEY", mode="before")
    @classmethod
    def get_from_env(cls, v: str) -> str:
        """Получает API ключ из переменных окружения."""
        if not v:
            return os.getenv("GOOGLE_MAPS_API_KEY", "")
        return v


class GeocodingSettings(BaseModel):
    """Цепочка открытых геокодеров и кэш."""
    PHOTON_URL: str = "https://photon.komoot.io"
    NOMINATIM_URL: str = "https://nominatim.openstreetmap.org"
    GEOCODING_TIMEOUT: float = 5.0
    GEOCODE_CACHE_TTL: int = 600
    GEOCODING_USER_AGENT: str = "rider_app/0.1"
    SEARCH_COUNTRY_CODES: str = "th"


class DomainSettings(BaseModel):
    """Настройки домена и локализации."""
    DEFAULT_LANGUAGE: str = "th"
    SUPPORTED_LANGUAGES: list[str] = Field(default_factory=lambda: ["th", "en", "ru"])
    DEFAULT_CITY: str = "กรุงเทพมหานคร"
    DEFAULT_LATITUDE: float = 13.7563
    DEFAULT_LONGITUDE: float = 100.5018
    CURRENCY: str = "THB"


class SearchSettings(BaseModel):
    """Настройки поиска водителей."""
    DRIVER_SEARCH_RADIUS_KM: float = 5.0
    PROVIDER_TYPE: str = "driver"
    NEARBY_CACHE_TTL: int = 30
    SEARCH_TIMEOUT_SECONDS: int = 300
    RIDE_HISTORY_LIMIT: int = 20
    RECENT_PLACES_LIMIT: int = 5
    PLACE_SUGGESTIONS_LIMIT: int = 5


class TimeoutSettings(BaseModel):
    """Таймауты и интервалы, в секундах."""
    GEOLOCATION_TIMEOUT: float = 15.0
    LOCATION_POLL_INTERVAL: float = 30.0
    SEARCH_TICK_INTERVAL: float = 1.0
    REALTIME_RETRY_DELAY: float = 3.0
    SUBSCRIBE_TIMEOUT: float = 10.0
    COMPLETION_GRACE_SECONDS: float = 3.0


# =============================================================================
# ГЛАВНЫЙ КЛАСС НАСТРОЕК
# =============================================================================

def _section(model: type[BaseModel], data: dict[str, Any], env_keys: tuple[str, ...] = ()) -> BaseModel:
    """
    Собирает секцию из плоского config.json.
    Ключи из env_keys переопределяются одноимёнными переменными окружения.
    """
    values = {name: data[name] for name in model.model_fields if name in data}
    for key in env_keys:
        env_value = os.getenv(key)
        if env_value:
            values[key] = env_value
    return model(**values)


class Settings(BaseSettings):
    """
    Главный класс настроек приложения.
    Агрегирует все секции конфигурации.
    """
    system: SystemSettings = Field(default_factory=SystemSettings)
    deployment: DeploymentSettings = Field(default_factory=DeploymentSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    backend: BackendSettings = Field(default_factory=BackendSettings)
    redis: RedisSettings = Field(default_factory=RedisSettings)
    google_maps: GoogleMapsSettings = Field(default_factory=GoogleMapsSettings)
    geocoding: GeocodingSettings = Field(default_factory=GeocodingSettings)
    domain: DomainSettings = Field(default_factory=DomainSettings)
    search: SearchSettings = Field(default_factory=SearchSettings)
    timeouts: TimeoutSettings = Field(default_factory=TimeoutSettings)

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"

    @classmethod
    def from_config_json(cls) -> "Settings":
        """
        Создаёт объект Settings из config.json.
        Секреты и адреса переопределяются из переменных окружения.
        """
        config_data = load_config_json()

        # Ключи _comment_* служат заголовками секций в JSON
        data = {k: v for k, v in config_data.items() if not k.startswith("_comment_")}

        return cls(
            system=_section(SystemSettings, data, ("ENVIRONMENT",)),
            deployment=_section(DeploymentSettings, data, ("WEB_CLIENT_PORT", "STORAGE_SECRET")),
            logging=_section(LoggingSettings, data, ("LOG_LEVEL",)),
            backend=_section(BackendSettings, data, ("BACKEND_URL", "BACKEND_API_KEY")),
            redis=_section(RedisSettings, data, ("REDIS_HOST", "REDIS_PORT", "REDIS_PASSWORD")),
            google_maps=_section(GoogleMapsSettings, data, ("GOOGLE_MAPS_API_KEY",)),
            geocoding=_section(GeocodingSettings, data),
            domain=_section(DomainSettings, data),
            search=_section(SearchSettings, data),
            timeouts=_section(TimeoutSettings, data),
        )


@lru_cache()
def get_settings() -> Settings:
    """
    Возвращает синглтон настроек приложения.
    Перед чтением config.json подгружает .env из корня проекта.
    """
    from dotenv import load_dotenv

    env_path = get_project_root() / ".env"
    if env_path.exists():
        load_dotenv(env_path)

    return Settings.from_config_json()


settings = get_settings()
