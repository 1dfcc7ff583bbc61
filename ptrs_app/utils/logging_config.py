"""
Logging setup driven by ``config/monitoring.py``.

Records still go through stdlib ``logging``; the handlers render them with
``structlog.stdlib.ProcessorFormatter``. ``LOG_FORMAT=json`` emits one JSON
object per line including every ``extra={...}`` field passed by the pipeline
(``importer_*`` keys); ``text`` uses structlog's console renderer.
"""

from __future__ import annotations

import logging
import os
from logging.handlers import RotatingFileHandler
from typing import Any

import structlog
from flask import Flask
from flask.logging import default_handler

PACKAGE_LOGGER_NAME = "ptrs_app"


def _app_fields(app: Flask):
    name = app.config.get("APP_NAME")
    version = app.config.get("APP_VERSION")

    def add_app_fields(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
        if name:
            event_dict.setdefault("app", name)
        if version:
            event_dict.setdefault("version", version)
        return event_dict

    return add_app_fields


def _build_formatter(app: Flask) -> logging.Formatter:
    json_output = str(app.config.get("LOG_FORMAT", "json")).lower() == "json"
    pre_chain = [
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.ExtraAdder(),
        structlog.processors.TimeStamper(fmt="iso", utc=True, key="timestamp"),
        _app_fields(app),
    ]
    if json_output:
        renderers = [
            structlog.processors.format_exc_info,
            structlog.processors.EventRenamer("message"),
            structlog.processors.JSONRenderer(default=str),
        ]
    else:
        renderers = [structlog.dev.ConsoleRenderer(colors=False)]
    return structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=pre_chain,
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, *renderers],
    )


def _install(logger: logging.Logger, handlers: list[logging.Handler], level: int) -> None:
    for handler in list(logger.handlers):
        if getattr(handler, "_ptrs_managed", False):
            logger.removeHandler(handler)
            handler.close()
    for handler in handlers:
        logger.addHandler(handler)
    logger.setLevel(level)


def setup_logging(app: Flask) -> None:
    """Attach console and rotating-file handlers to the app and package loggers."""

    level = logging.getLevelName(str(app.config.get("LOG_LEVEL", "INFO")).upper())
    if not isinstance(level, int):
        level = logging.INFO
    formatter = _build_formatter(app)

    handlers: list[logging.Handler] = []
    if app.config.get("ENABLE_CONSOLE_LOGGING", True):
        handlers.append(logging.StreamHandler())
    if app.config.get("ENABLE_FILE_LOGGING", False):
        log_dir = app.config.get("LOG_DIR", "logs")
        os.makedirs(log_dir, exist_ok=True)
        handlers.append(
            RotatingFileHandler(
                os.path.join(log_dir, "ptrs.log"),
                maxBytes=int(app.config.get("LOG_FILE_MAX_BYTES", 10485760)),
                backupCount=int(app.config.get("LOG_FILE_BACKUP_COUNT", 10)),
                encoding="utf-8",
            )
        )
    for handler in handlers:
        handler.setFormatter(formatter)
        handler.setLevel(level)
        handler._ptrs_managed = True  # type: ignore[attr-defined]

    app.logger.removeHandler(default_handler)
    _install(app.logger, handlers, level)
    _install(logging.getLogger(PACKAGE_LOGGER_NAME), handlers, level)
    app.logger.debug(
        "Logging configured",
        extra={"log_format": app.config.get("LOG_FORMAT"), "log_handlers": len(handlers)},
    )
