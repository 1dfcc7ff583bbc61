"""Prometheus metrics helpers for the importer pipeline."""

from __future__ import annotations

from typing import Literal

from prometheus_client import Counter, Histogram

_rows_ingested_counter = Counter(
    "importer_rows_ingested_total",
    "Rows written to raw import storage, by dataset role.",
    ["role"],
)
_stage_runs_counter = Counter(
    "importer_stage_runs_total",
    "Stage executions by outcome.",
    ["status"],
)
_stage_duration = Histogram(
    "importer_stage_duration_seconds",
    "Duration of stage executions in seconds.",
    buckets=(0.1, 0.5, 1, 2, 5, 10, 30, 60, 120, 300, 600),
)
_rows_staged_counter = Counter(
    "importer_rows_staged_total",
    "Canonical rows persisted by stage executions.",
)
_rows_excluded_counter = Counter(
    "importer_rows_excluded_total",
    "Rows excluded during stage, by source (rules or predicate code).",
    ["source"],
)


def record_rows_ingested(role: str, count: int) -> None:
    """Increment the ingested-rows counter for ``role``."""

    if count > 0:
        _rows_ingested_counter.labels(role=role).inc(count)


def record_stage_run(
    *,
    status: Literal["success", "failed", "skipped"],
    duration_seconds: float,
    rows_out: int = 0,
) -> None:
    """Capture metrics for a stage execution."""

    _stage_runs_counter.labels(status=status).inc()
    _stage_duration.observe(duration_seconds)
    if rows_out > 0:
        _rows_staged_counter.inc(rows_out)


def record_rows_excluded(source: str, count: int) -> None:
    if count > 0:
        _rows_excluded_counter.labels(source=source).inc(count)
