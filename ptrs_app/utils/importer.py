"""
Utility helpers for importer feature flag and pipeline setting lookups.
"""

from __future__ import annotations

from typing import Any, Tuple

from flask import current_app, has_app_context

PIPELINE_DEFAULTS: dict[str, Any] = {
    "IMPORTER_ROW_CAP": 500_000,
    "IMPORTER_INGEST_BATCH_SIZE": 1000,
    "IMPORTER_STAGE_BATCH_SIZE": 1000,
    "IMPORTER_SAMPLE_HEADER_SCAN": 500,
    "IMPORTER_STAGE_LOCK_TTL_SECONDS": 900,
    "IMPORTER_ERROR_MESSAGE_MAX_LENGTH": 2000,
    "IMPORTER_EXCLUSION_PREDICATES": ("government_entity",),
    "IMPORTER_QUEUE_NAME": "imports",
    "IMPORTER_TASK_TIME_LIMIT": 30 * 60,
    "IMPORTER_TASK_SOFT_TIME_LIMIT": 25 * 60,
}


def _get_config(app=None):
    if app is not None:
        return app.config
    if has_app_context():
        return current_app.config
    return {}


def is_importer_enabled(app=None) -> bool:
    """Return True when the importer feature flag is enabled."""
    config = _get_config(app)
    return bool(config.get("IMPORTER_ENABLED", False))


def get_pipeline_setting(name: str, app=None) -> Any:
    """Return a pipeline setting from Flask config, falling back to built-in defaults."""
    config = _get_config(app)
    value = config.get(name)
    if value is None:
        return PIPELINE_DEFAULTS[name]
    return value


def get_exclusion_predicate_names(app=None) -> Tuple[str, ...]:
    names = get_pipeline_setting("IMPORTER_EXCLUSION_PREDICATES", app)
    if isinstance(names, str):
        names = [item.strip().lower() for item in names.split(",") if item.strip()]
    return tuple(names)
