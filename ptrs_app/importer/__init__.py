"""
Importer feature package.

``init_importer`` registers the ``flask importer`` CLI and the Celery worker
when ``IMPORTER_ENABLED`` is set, and records its state in
``app.extensions['importer']``.
"""

from __future__ import annotations

from typing import Any

from flask import Flask

from ptrs_app.utils.importer import get_exclusion_predicate_names, is_importer_enabled

from .celery_app import get_celery_app
from .cli import get_disabled_importer_group, importer_cli

IMPORTER_EXTENSION_KEY = "importer"

__all__ = [
    "IMPORTER_EXTENSION_KEY",
    "get_celery_app",
    "init_importer",
]


def _ensure_extension_state(app: Flask) -> dict[str, Any]:
    return app.extensions.setdefault(
        IMPORTER_EXTENSION_KEY,
        {
            "enabled": False,
            "worker_enabled": False,
            "exclusion_predicates": (),
            "celery_app": None,
        },
    )


def _set_cli(app: Flask, enabled: bool) -> None:
    # Tests call init_importer repeatedly on the same app.
    command_name = importer_cli.name
    if command_name in app.cli.commands:
        app.cli.commands.pop(command_name)

    if enabled:
        app.cli.add_command(importer_cli)
    else:
        app.cli.add_command(get_disabled_importer_group())


def init_importer(app: Flask) -> None:
    """Mount the importer CLI and worker based on configuration."""

    enabled = is_importer_enabled(app)
    state = _ensure_extension_state(app)
    state.update(
        {
            "enabled": enabled,
            "worker_enabled": bool(app.config.get("IMPORTER_WORKER_ENABLED", False)),
            "exclusion_predicates": get_exclusion_predicate_names(app),
        }
    )

    if not enabled:
        state["celery_app"] = None
        _set_cli(app, enabled=False)
        app.logger.info("Importer disabled via IMPORTER_ENABLED flag; skipping registration.")
        return

    # Config may change between calls (tests toggle CELERY_CONFIG).
    get_celery_app(app, rebuild=True)
    _set_cli(app, enabled=True)
    app.logger.info(
        "Importer enabled with exclusion predicates: %s",
        ", ".join(state["exclusion_predicates"]) or "none",
    )
