"""
Celery wiring for the payment-times worker.

Queue name and task time limits come from the pipeline settings in
``config/base.py``. Without ``CELERY_BROKER_URL``/``CELERY_RESULT_BACKEND``
the worker falls back to a SQLite transport in the Flask instance folder.
``CELERY_CONFIG`` (a mapping or a JSON string) is applied last.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from celery import Celery
from flask import Flask
from kombu import Queue

from ptrs_app.utils.importer import get_pipeline_setting

TASK_MODULES = ("ptrs_app.importer.tasks",)


def _transport_urls(app: Flask) -> tuple[str, str]:
    broker_url = app.config.get("CELERY_BROKER_URL")
    result_backend = app.config.get("CELERY_RESULT_BACKEND")
    if broker_url and result_backend:
        return broker_url, result_backend

    # An absolute CELERY_SQLITE_PATH replaces the instance folder when joined.
    location = Path(app.instance_path) / (app.config.get("CELERY_SQLITE_PATH") or "celery.sqlite")
    location.parent.mkdir(parents=True, exist_ok=True)
    posix = location.as_posix()
    return broker_url or f"sqla+sqlite:///{posix}", result_backend or f"db+sqlite:///{posix}"


def _overrides(app: Flask) -> dict[str, Any]:
    raw = app.config.get("CELERY_CONFIG")
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError:
            app.logger.warning("CELERY_CONFIG is not valid JSON; ignoring value.", exc_info=True)
            return {}
    return dict(raw or {})


def worker_settings(app: Flask) -> dict[str, Any]:
    queue = str(get_pipeline_setting("IMPORTER_QUEUE_NAME", app))
    settings: dict[str, Any] = {
        "task_default_queue": queue,
        "task_queues": [Queue(queue)],
        "task_acks_late": True,
        "worker_prefetch_multiplier": 1,
        "task_track_started": True,
        "result_extended": True,
        "broker_connection_retry_on_startup": True,
        "task_time_limit": int(get_pipeline_setting("IMPORTER_TASK_TIME_LIMIT", app)),
        "task_soft_time_limit": int(get_pipeline_setting("IMPORTER_TASK_SOFT_TIME_LIMIT", app)),
        "worker_hijack_root_logger": False,
    }
    settings.update(_overrides(app))
    return settings


def create_celery_app(app: Flask) -> Celery:
    """Create a Celery instance whose tasks run inside ``app``'s application context."""

    broker_url, result_backend = _transport_urls(app)
    celery_app = Celery(app.import_name, broker=broker_url, backend=result_backend, include=TASK_MODULES)
    celery_app.conf.update(worker_settings(app))
    app.logger.info(
        "Importer Celery configuration resolved",
        extra={
            "importer_celery_broker_url": broker_url,
            "importer_celery_result_backend": result_backend,
            "importer_celery_queue": celery_app.conf.task_default_queue,
            "importer_celery_time_limit": celery_app.conf.task_time_limit,
        },
    )
    if not app.config.get("SQLALCHEMY_ECHO", False):
        logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

    class AppContextTask(celery_app.Task):  # type: ignore[misc]
        def __call__(self, *args, **kwargs):
            with app.app_context():
                return super().__call__(*args, **kwargs)

    celery_app.Task = AppContextTask  # type: ignore[assignment]
    celery_app.loader.import_default_modules()
    return celery_app


def get_celery_app(app: Flask, *, rebuild: bool = False) -> Celery | None:
    """
    Return the Celery app cached in ``app.extensions['importer']``.

    It is built on first use (or when ``rebuild`` is set) while the importer
    is enabled; a disabled importer has no Celery app.
    """

    state: dict[str, Any] | None = app.extensions.get("importer")  # type: ignore[arg-type]
    if not state or not state.get("enabled"):
        return None
    if rebuild or state.get("celery_app") is None:
        state["celery_app"] = create_celery_app(app)
    return state["celery_app"]
