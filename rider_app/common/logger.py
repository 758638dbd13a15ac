# rider_app/common/logger.py
"""
Модуль структурированного логирования.
Поддерживает JSON и цветной текстовый формат, ротацию файлов и отдельный error.log.
"""

from __future__ import annotations

import inspect
import json
import logging
import sys
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

from rider_app.common.constants import TypeMsg


DEFAULT_LOGGER_NAME = "rider_app"

# Файловые хендлеры общие для всех логгеров
_GLOBAL_FILE_HANDLER: logging.Handler | None = None
_GLOBAL_ERROR_HANDLER: logging.Handler | None = None

_LOGGING_INITIALIZED: bool = False


# =============================================================================
# ФОРМАТТЕРЫ
# =============================================================================

class JsonFormatter(logging.Formatter):
    """Форматтер для JSON логов."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if hasattr(record, "extra_data"):
            log_data["extra"] = record.extra_data

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, ensure_ascii=False, default=str)


class ColoredFormatter(logging.Formatter):
    """Цветной форматтер для консоли."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"
    GRAY = "\033[90m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, self.GRAY)
        timestamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")

        caller_info = ""
        extra_data = getattr(record, "extra_data", None)
        if extra_data and extra_data.get("caller_function"):
            caller_info = (
                f" {self.GRAY}[{extra_data.get('caller_module')}."
                f"{extra_data.get('caller_function')}() "
                f"{extra_data.get('caller_file')}:{extra_data.get('caller_line')}]{self.RESET}"
            )

        message = f"{timestamp} {color}[{record.levelname}]{self.RESET}{caller_info} {record.getMessage()}"

        if record.exc_info:
            message += "\n" + self.formatException(record.exc_info)

        return message


def _make_formatter(log_format: str) -> logging.Formatter:
    return JsonFormatter() if log_format == "json" else ColoredFormatter()


# =============================================================================
# ЛОГГЕР
# =============================================================================

_loggers: dict[str, logging.Logger] = {}


def setup_logging() -> None:
    """
    Инициализирует систему логирования.
    Может безопасно вызываться многократно.
    """
    global _LOGGING_INITIALIZED

    if _LOGGING_INITIALIZED:
        return

    _LOGGING_INITIALIZED = True

    get_logger(DEFAULT_LOGGER_NAME)

    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("redis").setLevel(logging.WARNING)
    logging.getLogger("nicegui").setLevel(logging.INFO)


def _read_logging_settings() -> dict[str, Any]:
    """Читает секцию logging из настроек, подставляя значения по умолчанию."""
    defaults: dict[str, Any] = {
        "level": "DEBUG",
        "format": "colored",
        "to_file": False,
        "file_path": "logs/rider_app.log",
        "max_bytes": 10485760,
        "backup_count": 5,
    }
    try:
        # Ленивый импорт: конфиг сам может логировать при загрузке
        from rider_app.config import settings
    except Exception:
        return defaults

    section = getattr(settings, "logging", None)
    if section is None:
        return defaults

    values = {
        "level": section.LOG_LEVEL,
        "format": section.LOG_FORMAT,
        "to_file": section.LOG_TO_FILE,
        "file_path": section.LOG_FILE_PATH,
        "max_bytes": section.LOG_MAX_BYTES,
        "backup_count": section.LOG_BACKUP_COUNT,
    }
    # В тестах settings бывает MagicMock
    for key, value in values.items():
        if not isinstance(value, type(defaults[key])):
            values[key] = defaults[key]
    return values


def get_logger(name: str = DEFAULT_LOGGER_NAME) -> logging.Logger:
    """
    Возвращает настроенный логгер.
    Использует кэширование для избежания дублирования хендлеров.
    """
    if name in _loggers:
        return _loggers[name]

    config = _read_logging_settings()

    logger = logging.getLogger(name)
    logger.setLevel(getattr(logging, str(config["level"]).upper(), logging.DEBUG))

    if logger.handlers:
        _loggers[name] = logger
        return logger

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(_make_formatter(config["format"]))
    logger.addHandler(console_handler)

    if config["to_file"]:
        global _GLOBAL_FILE_HANDLER, _GLOBAL_ERROR_HANDLER
        log_path = Path(config["file_path"])
        log_path.parent.mkdir(parents=True, exist_ok=True)

        if _GLOBAL_FILE_HANDLER is None:
            _GLOBAL_FILE_HANDLER = RotatingFileHandler(
                log_path,
                maxBytes=config["max_bytes"],
                backupCount=config["backup_count"],
                encoding="utf-8",
            )
            _GLOBAL_FILE_HANDLER.setFormatter(_make_formatter(config["format"]))

        if _GLOBAL_ERROR_HANDLER is None:
            _GLOBAL_ERROR_HANDLER = RotatingFileHandler(
                log_path.parent / "error.log",
                maxBytes=config["max_bytes"],
                backupCount=config["backup_count"],
                encoding="utf-8",
            )
            _GLOBAL_ERROR_HANDLER.setLevel(logging.ERROR)
            _GLOBAL_ERROR_HANDLER.setFormatter(_make_formatter(config["format"]))

        logger.addHandler(_GLOBAL_FILE_HANDLER)
        logger.addHandler(_GLOBAL_ERROR_HANDLER)

    logger.propagate = False

    _loggers[name] = logger
    return logger


# =============================================================================
# ВСПОМОГАТЕЛЬНЫЕ ФУНКЦИИ ЛОГИРОВАНИЯ
# =============================================================================

def _get_caller_info() -> dict[str, Any]:
    """
    Возвращает функцию, модуль, файл и строку кода, вызвавшего log_*.

    Стек: [0] _get_caller_info, [1] log_*, [2] вызывающий код.
    """
    frame = inspect.currentframe()
    caller_frame = None
    try:
        if frame is None or frame.f_back is None:
            return {}
        caller_frame = frame.f_back.f_back
        if caller_frame is None:
            return {}

        module = inspect.getmodule(caller_frame)
        return {
            "caller_function": caller_frame.f_code.co_name,
            "caller_module": module.__name__ if module else "unknown",
            "caller_file": Path(caller_frame.f_code.co_filename).name,
            "caller_line": caller_frame.f_lineno,
        }
    finally:
        # Разрываем ссылочный цикл на фреймы
        del frame
        del caller_frame


def _emit(
    level: int,
    message: str,
    logger_name: str,
    caller_info: dict[str, Any],
    extra: dict[str, Any] | None,
    exc_info: bool = False,
) -> None:
    logger = get_logger(logger_name)
    logger.log(level, message, extra={"extra_data": {**caller_info, **(extra or {})}}, exc_info=exc_info)


_LEVELS: dict[TypeMsg, int] = {
    TypeMsg.DEBUG: logging.DEBUG,
    TypeMsg.INFO: logging.INFO,
    TypeMsg.WARNING: logging.WARNING,
    TypeMsg.ERROR: logging.ERROR,
    TypeMsg.CRITICAL: logging.CRITICAL,
}


async def log_info(
    message: str,
    *,
    type_msg: TypeMsg = TypeMsg.INFO,
    logger_name: str = DEFAULT_LOGGER_NAME,
    extra: dict[str, Any] | None = None,
) -> None:
    """
    Асинхронное логирование с уровнем, заданным type_msg.

    Args:
        message: Сообщение для логирования
        type_msg: Уровень сообщения
        logger_name: Имя логгера
        extra: Дополнительные данные (попадают в поле extra JSON-записи)
    """
    _emit(_LEVELS.get(type_msg, logging.INFO), message, logger_name, _get_caller_info(), extra)


async def log_debug(
    message: str,
    logger_name: str = DEFAULT_LOGGER_NAME,
    extra: dict[str, Any] | None = None,
) -> None:
    """Логирование DEBUG уровня."""
    _emit(logging.DEBUG, message, logger_name, _get_caller_info(), extra)


async def log_warning(
    message: str,
    logger_name: str = DEFAULT_LOGGER_NAME,
    extra: dict[str, Any] | None = None,
) -> None:
    """Логирование WARNING уровня."""
    _emit(logging.WARNING, message, logger_name, _get_caller_info(), extra)


async def log_error(
    message: str,
    logger_name: str = DEFAULT_LOGGER_NAME,
    extra: dict[str, Any] | None = None,
    exc_info: bool = False,
) -> None:
    """
    Логирование ERROR уровня.

    Args:
        message: Сообщение об ошибке
        logger_name: Имя логгера
        extra: Дополнительные данные
        exc_info: Включать ли трейсбек текущего исключения
    """
    _emit(logging.ERROR, message, logger_name, _get_caller_info(), extra, exc_info=exc_info)
