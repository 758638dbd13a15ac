# rider_app/config/__init__.py
"""
Модуль конфигурации.
Экспортирует настройки приложения.
"""

from rider_app.config.loader import Settings, get_settings, settings

__all__ = ["Settings", "get_settings", "settings"]
