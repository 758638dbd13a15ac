# tests/config/test_loader.py
"""
Тесты для модуля загрузки конфигурации.
"""

from __future__ import annotations

import json
from pathlib import Path
from unittest.mock import patch

import pytest

from rider_app.config.loader import (
    BackendSettings,
    DomainSettings,
    GoogleMapsSettings,
    RedisSettings,
    SearchSettings,
    Settings,
    TimeoutSettings,
    get_config_path,
    get_project_root,
    load_config_json,
)


class TestPaths:
    """Тесты для функций путей."""

    def test_root_contains_package_and_config(self) -> None:
        root = get_project_root()
        assert (root / "rider_app").is_dir()
        assert (root / "config").is_dir()

    def test_config_path(self, config_path: Path) -> None:
        assert get_config_path().resolve() == config_path.resolve()


class TestLoadConfigJson:
    """Тесты для функции load_config_json."""

    def test_contains_required_keys(self) -> None:
        """Проверяет наличие обязательных ключей."""
        config = load_config_json()
        for key in (
            "BACKEND_URL",
            "RIDES_TABLE",
            "NEARBY_PROVIDERS_RPC",
            "REDIS_HOST",
            "DEFAULT_LATITUDE",
            "DRIVER_SEARCH_RADIUS_KM",
            "SEARCH_TIMEOUT_SECONDS",
        ):
            assert key in config

    def test_raises_file_not_found(self, tmp_path: Path) -> None:
        """Проверяет исключение при отсутствии файла."""
        with patch("rider_app.config.loader.get_config_path", return_value=tmp_path / "missing.json"):
            with pytest.raises(FileNotFoundError):
                load_config_json()


class TestSections:
    """Тесты значений по умолчанию и вычисляемых свойств секций."""

    def test_backend_rest_url(self) -> None:
        backend = BackendSettings(BACKEND_URL="https://db.example.com/", BACKEND_API_KEY="k")
        assert backend.rest_url == "https://db.example.com/rest/v1"

    def test_backend_key_from_env(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("BACKEND_API_KEY", "from-env")
        assert BackendSettings(BACKEND_API_KEY="").BACKEND_API_KEY == "from-env"

    def test_redis_url_without_password(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("REDIS_PASSWORD", raising=False)
        redis = RedisSettings(REDIS_HOST="cache", REDIS_PORT=6380, REDIS_DB=2)
        assert redis.url == "redis://cache:6380/2"

    def test_redis_url_with_password(self) -> None:
        redis = RedisSettings(REDIS_PASSWORD="secret")
        assert redis.url == "redis://:secret@localhost:6379/0"

    def test_google_key_from_env(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("GOOGLE_MAPS_API_KEY", "gkey")
        assert GoogleMapsSettings(GOOGLE_MAPS_API_KEY="").GOOGLE_MAPS_API_KEY == "gkey"

    def test_domain_defaults_bangkok(self) -> None:
        domain = DomainSettings()
        assert (domain.DEFAULT_LATITUDE, domain.DEFAULT_LONGITUDE) == (13.7563, 100.5018)
        assert domain.DEFAULT_LANGUAGE == "th"

    def test_search_and_timeout_defaults(self) -> None:
        search = SearchSettings()
        timeouts = TimeoutSettings()
        assert search.DRIVER_SEARCH_RADIUS_KM == 5.0
        assert search.NEARBY_CACHE_TTL == 30
        assert search.RIDE_HISTORY_LIMIT == 20
        assert timeouts.COMPLETION_GRACE_SECONDS == 3.0
        assert timeouts.REALTIME_RETRY_DELAY == 3.0


class TestSettings:
    """Тесты для главного класса Settings."""

    def test_from_config_json(self) -> None:
        """Проверяет создание настроек из config.json."""
        settings = Settings.from_config_json()

        assert settings.backend.RIDES_TABLE == "ride_requests"
        assert settings.backend.WALLET_RPC == "get_customer_wallet"
        assert settings.redis.CHANGE_FEED_PREFIX == "realtime"
        assert settings.geocoding.GEOCODE_CACHE_TTL == 600

    def test_env_overrides(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("BACKEND_URL", "https://prod.example.com")
        monkeypatch.setenv("REDIS_PORT", "6390")

        settings = Settings.from_config_json()

        assert settings.backend.BACKEND_URL == "https://prod.example.com"
        assert settings.redis.REDIS_PORT == 6390

    def test_filters_comment_keys(self, tmp_path: Path) -> None:
        """Проверяет фильтрацию комментариев в config.json."""
        config_file = tmp_path / "config.json"
        config_file.write_text(json.dumps({
            "_comment_search": "Поиск водителей",
            "DRIVER_SEARCH_RADIUS_KM": 3.0,
            "UNKNOWN_KEY": 1,
        }), encoding="utf-8")

        with patch("rider_app.config.loader.get_config_path", return_value=config_file):
            settings = Settings.from_config_json()

        assert settings.search.DRIVER_SEARCH_RADIUS_KM == 3.0
        assert settings.search.SEARCH_TIMEOUT_SECONDS == 300
