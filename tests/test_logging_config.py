import json
import logging
import sys

from flask import Flask

from ptrs_app.utils.logging_config import PACKAGE_LOGGER_NAME, _build_formatter, setup_logging


def _record(message, exc_info=None, **extra):
    record = logging.LogRecord(
        "ptrs_app.importer", logging.WARNING, __file__, 12, message, None, exc_info
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def _app(**config):
    app = Flask(__name__)
    app.config.update(APP_NAME="ptrs-pipeline", APP_VERSION="0.1.0", **config)
    return app


def test_json_formatter_includes_extras_and_app_fields():
    formatter = _build_formatter(_app(LOG_FORMAT="json"))

    payload = json.loads(formatter.format(_record("Stage completed", importer_run_id=7, importer_rows_out=3)))

    assert payload["message"] == "Stage completed"
    assert payload["level"] == "warning"
    assert payload["logger"] == "ptrs_app.importer"
    assert payload["importer_run_id"] == 7
    assert payload["importer_rows_out"] == 3
    assert payload["app"] == "ptrs-pipeline"
    assert payload["version"] == "0.1.0"
    assert "timestamp" in payload


def test_json_formatter_renders_exceptions():
    formatter = _build_formatter(_app(LOG_FORMAT="json"))
    try:
        raise RuntimeError("boom")
    except RuntimeError:
        record = _record("Stage failed", exc_info=sys.exc_info(), importer_error="RuntimeError")

    payload = json.loads(formatter.format(record))

    assert "RuntimeError: boom" in payload["exception"]
    assert payload["importer_error"] == "RuntimeError"


def test_text_formatter_keeps_extras_readable():
    formatter = _build_formatter(_app(LOG_FORMAT="text"))

    rendered = formatter.format(_record("Stage skipped", importer_run_id=9))

    assert "Stage skipped" in rendered
    assert "importer_run_id=9" in rendered


def test_setup_logging_replaces_default_handler(tmp_path):
    app = _app(LOG_FORMAT="json", ENABLE_FILE_LOGGING=True, LOG_DIR=str(tmp_path), LOG_LEVEL="INFO")

    setup_logging(app)
    setup_logging(app)

    managed = [handler for handler in app.logger.handlers if getattr(handler, "_ptrs_managed", False)]
    assert len(managed) == 2
    assert len(app.logger.handlers) == 2
    assert logging.getLogger(PACKAGE_LOGGER_NAME).level == logging.INFO

    logging.getLogger(PACKAGE_LOGGER_NAME).info("Rows ingested", extra={"importer_rows_inserted": 4})
    for handler in managed:
        handler.flush()
    lines = (tmp_path / "ptrs.log").read_text(encoding="utf-8").splitlines()
    assert json.loads(lines[-1])["importer_rows_inserted"] == 4
