"""
``flask importer`` commands.

Every pipeline command takes ``--tenant-id`` and runs inside one tenant
transaction; pipeline errors surface as ``click.ClickException``.
"""

from __future__ import annotations

import json
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Optional

import click
import yaml
from celery import Celery
from celery.exceptions import TimeoutError as CeleryTimeoutError
from flask.cli import ScriptInfo

from ptrs_app.errors import PipelineError
from ptrs_app.importer.celery_app import get_celery_app
from ptrs_app.importer.mapping import MAIN_ROLE, load_column_map_file
from ptrs_app.importer.pipeline import (
    ColumnMapService,
    ExecutionRunTracker,
    ImportRunService,
    IngestSummary,
    MetricsEngine,
    RawImportStore,
    RulesetService,
    RunDetails,
    StageSummary,
    StagingStore,
    ValidationService,
    load_gov_entities,
    stage_run,
)
from ptrs_app.importer.pipeline.column_map import field_map_payload, map_payload
from ptrs_app.importer.pipeline.report_metrics import DRAFT_KEYS
from ptrs_app.importer.pipeline.validation import SAMPLE_LIMIT, STATUS_BLOCKED
from ptrs_app.models import Tenant, db
from ptrs_app.tenancy import TenantContext
from ptrs_app.utils.importer import is_importer_enabled

_tenant_option = click.option(
    "--tenant-id", required=True, type=int, envvar="IMPORTER_TENANT_ID", help="Tenant that owns the run."
)
_run_option = click.option("--run-id", required=True, type=int, help="Reporting run identifier.")
_csv_file_option = click.option(
    "--file",
    "file_path",
    required=True,
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    help="Path to a delimited text file.",
)


def _load_app(ctx: click.Context):
    info = ctx.ensure_object(ScriptInfo)
    return info.load_app()


def _echo_json(payload: Any) -> None:
    click.echo(json.dumps(payload, indent=2, sort_keys=True, default=str))


@contextmanager
def _pipeline_errors() -> Iterator[None]:
    try:
        yield
    except PipelineError as exc:
        raise click.ClickException(exc.message) from exc


@contextmanager
def _tenant_tx(tenant_id: int):
    with _pipeline_errors():
        with TenantContext().begin_tenant_transaction(tenant_id) as tx:
            yield tx


@click.group(name="importer", invoke_without_command=True)
@click.pass_context
def importer_cli(ctx):
    """Payment-times import, staging and reporting commands."""
    app = _load_app(ctx)
    if not is_importer_enabled(app):
        raise click.ClickException(
            "Importer is disabled via IMPORTER_ENABLED=false. Enable it to run importer CLI commands."
        )
    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


def get_disabled_importer_group() -> click.Group:
    """Return a stand-in group that tells the operator the importer is disabled."""

    @click.group(name="importer", invoke_without_command=True)
    def disabled_group():
        raise click.ClickException("Importer commands are unavailable because IMPORTER_ENABLED=false.")

    return disabled_group


def _resolve_celery(app) -> Optional[Celery]:
    celery_app = get_celery_app(app)
    if celery_app is None:
        raise click.ClickException(
            "Importer Celery app is unavailable. Ensure IMPORTER_ENABLED=true and the "
            "importer package initialises before running worker commands."
        )
    return celery_app


def _load_yaml_list(path: Path, key: str) -> list[Any]:
    """Read a YAML file holding either a bare list or a mapping with ``key``."""
    try:
        document = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise click.ClickException(f"Failed to parse {path}: {exc}") from exc
    if isinstance(document, dict):
        document = document.get(key)
    if document is None:
        return []
    if not isinstance(document, list):
        raise click.ClickException(f"{path} must contain a list of {key}.")
    return document


def _parse_draft_value(raw: str) -> Any:
    lowered = raw.strip().lower()
    if lowered in {"true", "yes"}:
        return True
    if lowered in {"false", "no"}:
        return False
    return raw


def _run_payload(run) -> dict[str, Any]:
    return {
        "run_id": run.id,
        "tenant_id": run.tenant_id,
        "label": run.label,
        "status": run.status.value,
        "period_start": run.period_start,
        "period_end": run.period_end,
        "error_summary": run.error_summary,
    }


def _format_ingest_summary(run_id: int, summary: IngestSummary) -> str:
    headers = ", ".join(summary.headers) if summary.headers else "n/a"
    return (
        f"Run {run_id} ingested into role '{summary.role}'.\n"
        f"  rows_processed : {summary.rows_processed}\n"
        f"  rows_inserted  : {summary.rows_inserted}\n"
        f"  rows_skipped   : {summary.rows_skipped_blank}\n"
        f"  batches        : {summary.batches}\n"
        f"  headers        : {headers}"
    )


def _format_stage_summary(summary: StageSummary) -> str:
    if summary.skipped:
        state = "skipped (inputs unchanged)"
    elif summary.persisted:
        state = "staged"
    else:
        state = "previewed"
    excluded = summary.exclusions.get("excluded", 0)
    return (
        f"Run {summary.run_id} {state}.\n"
        f"  input_hash     : {summary.input_hash}\n"
        f"  rows_in        : {summary.rows_in}\n"
        f"  rows_out       : {summary.rows_out}\n"
        f"  rules_affected : {summary.rules.get('rowsAffected', 0)}\n"
        f"  excluded       : {excluded}\n"
        f"  execution_id   : {summary.execution_id if summary.execution_id is not None else 'n/a'}"
    )


# ----------------------------------------------------------------------
# Tenants and runs
# ----------------------------------------------------------------------
@importer_cli.group(name="tenant")
def tenant_group():
    """Manage tenants."""


@tenant_group.command("create")
@click.option("--name", required=True)
@click.option("--slug", required=True)
def tenant_create(name: str, slug: str):
    """Create a tenant and print its id."""
    if db.session.query(Tenant.id).filter(Tenant.slug == slug).first() is not None:
        raise click.ClickException(f"Tenant '{slug}' already exists.")
    tenant = Tenant(name=name.strip(), slug=slug.strip().lower(), is_active=True)
    db.session.add(tenant)
    db.session.commit()
    _echo_json({"tenant_id": tenant.id, "slug": tenant.slug})


@importer_cli.group(name="run")
def run_group():
    """Create and inspect reporting runs."""


@run_group.command("create")
@_tenant_option
@click.option("--label", required=True)
@click.option("--entity-name")
@click.option("--abn")
@click.option("--acn")
@click.option("--arbn")
@click.option("--period-start", help="YYYY-MM-DD")
@click.option("--period-end", help="YYYY-MM-DD")
def run_create(tenant_id: int, label: str, entity_name, abn, acn, arbn, period_start, period_end):
    """Create a reporting run in status ``created``."""
    with _tenant_tx(tenant_id) as tx:
        details = RunDetails.coerce(
            label=label,
            entity_name=entity_name,
            abn=abn,
            acn=acn,
            arbn=arbn,
            period_start=period_start,
            period_end=period_end,
        )
        run = ImportRunService(tx).create_run(details)
        payload = _run_payload(run)
    _echo_json(payload)


@run_group.command("list")
@_tenant_option
@click.option("--status", "statuses", multiple=True, help="Filter by status; repeatable.")
def run_list(tenant_id: int, statuses: tuple[str, ...]):
    """List the tenant's runs, newest first."""
    with _tenant_tx(tenant_id) as tx:
        payload = [_run_payload(run) for run in ImportRunService(tx).list_runs(statuses=statuses)]
    _echo_json(payload)


# ----------------------------------------------------------------------
# Ingest and datasets
# ----------------------------------------------------------------------
@importer_cli.command("ingest")
@_tenant_option
@_run_option
@_csv_file_option
@click.option("--replace", is_flag=True, help="Overwrite raw rows already stored for the run.")
@click.option("--delimiter", default=",", show_default=True)
@click.option(
    "--inline/--no-inline",
    default=False,
    help="Run inline within the CLI process instead of queueing via Celery.",
)
@click.option("--summary-json", is_flag=True, help="Emit a machine-readable summary (inline runs only).")
@click.pass_context
def importer_ingest(
    ctx, tenant_id: int, run_id: int, file_path: Path, replace: bool, delimiter: str, inline: bool, summary_json: bool
):
    """Import the main payments file for a run."""
    app = _load_app(ctx)
    if summary_json and not inline:
        raise click.ClickException("--summary-json is only available for --inline runs.")
    csv_path = file_path.resolve()

    if not inline:
        with _tenant_tx(tenant_id) as tx:
            ImportRunService(tx).get_run(run_id)
        celery_app = _resolve_celery(app)
        async_result = celery_app.send_task(
            "importer.pipeline.ingest_csv",
            kwargs={
                "tenant_id": tenant_id,
                "run_id": run_id,
                "file_path": str(csv_path),
                "role": MAIN_ROLE,
                "replace": replace,
                "delimiter": delimiter,
            },
        )
        app.logger.info(
            "Importer ingest queued via CLI",
            extra={"importer_tenant_id": tenant_id, "importer_run_id": run_id, "importer_task_id": async_result.id},
        )
        click.echo(json.dumps({"run_id": run_id, "task_id": async_result.id, "status": "queued"}))
        return

    with _tenant_tx(tenant_id) as tx:
        with csv_path.open("r", encoding="utf-8-sig", newline="") as handle:
            summary = RawImportStore(tx).ingest(run_id, handle, replace=replace, delimiter=delimiter)
    click.echo(_format_ingest_summary(run_id, summary))
    if summary_json:
        _echo_json({"run_id": run_id, **summary.as_dict()})


@importer_cli.command("sample")
@_tenant_option
@_run_option
@click.option("--limit", default=10, show_default=True, type=int)
@click.option("--offset", default=0, show_default=True, type=int)
def importer_sample(tenant_id: int, run_id: int, limit: int, offset: int):
    """Show raw rows and the header catalogue used for mapping."""
    with _tenant_tx(tenant_id) as tx:
        payload = RawImportStore(tx).sample(run_id, limit=limit, offset=offset).as_dict()
    _echo_json(payload)


@importer_cli.group(name="dataset")
def dataset_group():
    """Manage supporting datasets joined onto the main import."""


@dataset_group.command("add")
@_tenant_option
@_run_option
@click.option("--role", required=True, help="Dataset role referenced by join conditions.")
@_csv_file_option
@click.option("--delimiter", default=",", show_default=True)
def dataset_add(tenant_id: int, run_id: int, role: str, file_path: Path, delimiter: str):
    """Ingest (or replace) a supporting dataset."""
    with _tenant_tx(tenant_id) as tx:
        with file_path.open("r", encoding="utf-8-sig", newline="") as handle:
            summary = RawImportStore(tx).ingest_dataset(
                run_id, role, handle, file_name=file_path.name, delimiter=delimiter
            )
    click.echo(_format_ingest_summary(run_id, summary))


@dataset_group.command("list")
@_tenant_option
@_run_option
def dataset_list(tenant_id: int, run_id: int):
    with _tenant_tx(tenant_id) as tx:
        payload = [
            {
                "id": dataset.id,
                "role": dataset.role,
                "file_name": dataset.file_name,
                "rows_count": dataset.rows_count,
                "headers": list(dataset.headers_json or []),
            }
            for dataset in RawImportStore(tx).list_datasets(run_id)
        ]
    _echo_json(payload)


@dataset_group.command("remove")
@_tenant_option
@_run_option
@click.option("--role", required=True)
def dataset_remove(tenant_id: int, run_id: int, role: str):
    with _tenant_tx(tenant_id) as tx:
        removed = RawImportStore(tx).remove_dataset(run_id, role)
    if not removed:
        raise click.ClickException(f"Run {run_id} has no dataset with role '{role}'.")
    click.echo(f"Removed dataset '{role}' from run {run_id}.")


# ----------------------------------------------------------------------
# Column map and rules
# ----------------------------------------------------------------------
@importer_cli.group(name="map")
def map_group():
    """Load and inspect column maps."""


@map_group.command("load")
@_tenant_option
@_run_option
@click.option(
    "--file",
    "file_path",
    required=True,
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    help="YAML column map.",
)
@click.option(
    "--field-map",
    "field_map_path",
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    help="Optional YAML list of canonical field map entries.",
)
def map_load(tenant_id: int, run_id: int, file_path: Path, field_map_path: Optional[Path]):
    """Replace the run's column map from a YAML file."""
    with _pipeline_errors():
        spec = load_column_map_file(file_path)
    entries = _load_yaml_list(field_map_path, "field_map") if field_map_path else None
    with _tenant_tx(tenant_id) as tx:
        service = ColumnMapService(tx)
        service.save_spec(run_id, spec)
        if entries is not None:
            service.save_field_map(run_id, entries)
        status = ImportRunService(tx).get_run(run_id).status.value
    click.echo(
        f"Column map loaded for run {run_id} ({len(spec.mappings)} mappings, "
        f"{len(spec.joins)} joins, checksum {spec.checksum()[:12]}); run status {status}."
    )


@map_group.command("show")
@_tenant_option
@_run_option
def map_show(tenant_id: int, run_id: int):
    with _tenant_tx(tenant_id) as tx:
        service = ColumnMapService(tx)
        ImportRunService(tx).get_run(run_id)
        column_map = service.get_map(run_id)
        if column_map is None:
            raise click.ClickException(f"Run {run_id} has no column map.")
        payload = map_payload(column_map)
        payload["field_map"] = [field_map_payload(entry) for entry in service.get_field_map(run_id)]
    _echo_json(payload)


@importer_cli.group(name="rules")
def rules_group():
    """Manage the run's rule set."""


@rules_group.command("load")
@_tenant_option
@_run_option
@click.option(
    "--file",
    "file_path",
    required=True,
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    help="YAML list of rules (or a mapping with a 'rules' key).",
)
def rules_load(tenant_id: int, run_id: int, file_path: Path):
    """Validate and replace the run's rules."""
    rules = _load_yaml_list(file_path, "rules")
    with _tenant_tx(tenant_id) as tx:
        records = RulesetService(tx).save_rules(run_id, rules)
        keys = [record.rule_key for record in records]
    click.echo(f"Loaded {len(keys)} rule(s) for run {run_id}: {', '.join(keys) or 'none'}")


# ----------------------------------------------------------------------
# Stage, preview and executions
# ----------------------------------------------------------------------
@importer_cli.command("stage")
@_tenant_option
@_run_option
@click.option("--preview", is_flag=True, help="Run the pipeline without persisting staged rows.")
@click.option("--limit", default=20, show_default=True, type=int, help="Rows returned by --preview.")
@click.option("--skip-if-unchanged", is_flag=True, help="Skip when the last successful stage used identical inputs.")
@click.option(
    "--inline/--no-inline",
    default=False,
    help="Run inline within the CLI process instead of queueing via Celery.",
)
@click.option("--summary-json", is_flag=True, help="Emit a machine-readable summary (inline runs only).")
@click.pass_context
def importer_stage(
    ctx,
    tenant_id: int,
    run_id: int,
    preview: bool,
    limit: int,
    skip_if_unchanged: bool,
    inline: bool,
    summary_json: bool,
):
    """Compose, transform and persist canonical rows for a run."""
    app = _load_app(ctx)
    if preview:
        inline = True
    if summary_json and not inline:
        raise click.ClickException("--summary-json is only available for --inline runs.")

    if not inline:
        with _tenant_tx(tenant_id) as tx:
            ImportRunService(tx).get_run(run_id)
        celery_app = _resolve_celery(app)
        async_result = celery_app.send_task(
            "importer.pipeline.stage_run",
            kwargs={"tenant_id": tenant_id, "run_id": run_id, "skip_if_unchanged": skip_if_unchanged},
        )
        app.logger.info(
            "Importer stage queued via CLI",
            extra={"importer_tenant_id": tenant_id, "importer_run_id": run_id, "importer_task_id": async_result.id},
        )
        click.echo(json.dumps({"run_id": run_id, "task_id": async_result.id, "status": "queued"}))
        return

    with _pipeline_errors():
        summary = stage_run(
            tenant_id,
            run_id,
            persist=not preview,
            skip_if_unchanged=skip_if_unchanged,
            preview_limit=limit,
        )
    click.echo(_format_stage_summary(summary))
    if summary_json:
        _echo_json(summary.as_dict())


@importer_cli.command("preview")
@_tenant_option
@_run_option
@click.option("--limit", default=50, show_default=True, type=int)
@click.option("--offset", default=0, show_default=True, type=int)
def importer_preview(tenant_id: int, run_id: int, limit: int, offset: int):
    """Show staged rows with their headers."""
    with _tenant_tx(tenant_id) as tx:
        ImportRunService(tx).get_run(run_id)
        payload = StagingStore(tx).get_preview(run_id, limit=limit, offset=offset).as_dict()
    _echo_json(payload)


@importer_cli.command("executions")
@_tenant_option
@_run_option
@click.option("--step", default=None, help="Filter by step name (e.g. stage).")
def importer_executions(tenant_id: int, run_id: int, step: Optional[str]):
    """List execution runs for a reporting run, newest first."""
    with _tenant_tx(tenant_id) as tx:
        ImportRunService(tx).get_run(run_id)
        payload = [execution.as_dict() for execution in ExecutionRunTracker(tx).list_execution_runs(run_id, step=step)]
    _echo_json(payload)


# ----------------------------------------------------------------------
# Metrics and report
# ----------------------------------------------------------------------
@importer_cli.command("metrics")
@_tenant_option
@_run_option
def importer_metrics(tenant_id: int, run_id: int):
    """Compute the report preview from staged rows."""
    with _tenant_tx(tenant_id) as tx:
        payload = MetricsEngine(tx).compute(run_id)
    _echo_json(payload)


@importer_cli.command("metrics-draft")
@_tenant_option
@_run_option
@click.option(
    "--set",
    "assignments",
    multiple=True,
    metavar="KEY=VALUE",
    help=f"Declaration to store; repeatable. Keys: {', '.join(DRAFT_KEYS)}.",
)
@click.option("--actor", default=None, help="Recorded as updatedBy.")
def importer_metrics_draft(tenant_id: int, run_id: int, assignments: tuple[str, ...], actor: Optional[str]):
    """Update the run's report declarations and print the refreshed preview."""
    patch: dict[str, Any] = {}
    for assignment in assignments:
        key, separator, value = assignment.partition("=")
        if not separator or not key.strip():
            raise click.ClickException(f"Invalid assignment '{assignment}'; expected KEY=VALUE.")
        patch[key.strip()] = _parse_draft_value(value)
    with _tenant_tx(tenant_id) as tx:
        payload = MetricsEngine(tx).update_draft(run_id, patch, actor=actor)
    _echo_json(payload)


@importer_cli.command("validate")
@_tenant_option
@_run_option
@click.option("--record", is_flag=True, help="Store the outcome on the run under counts_json.validate.")
@click.option("--limit", default=SAMPLE_LIMIT, show_default=True, type=int, help="Issue samples kept per severity.")
def importer_validate(tenant_id: int, run_id: int, record: bool, limit: int):
    """Check staged rows for blockers and warnings; exits non-zero when blocked."""
    with _tenant_tx(tenant_id) as tx:
        report = ValidationService(tx).validate(run_id, mode="run" if record else "read", sample_limit=limit)
    _echo_json(report.as_dict())
    if report.status == STATUS_BLOCKED:
        raise click.ClickException(f"Run {run_id} has {report.blocker_count} validation blocker(s).")


@importer_cli.command("finalise")
@_tenant_option
@_run_option
@click.option("--actor", default=None)
def importer_finalise(tenant_id: int, run_id: int, actor: Optional[str]):
    """Finalise the report and move the run to ``reported``."""
    with _tenant_tx(tenant_id) as tx:
        preview = MetricsEngine(tx).finalise_report(run_id, actor=actor)
    click.echo(f"Run {run_id} reported ({preview['quality']['basedOnRowCount']} rows in the population).")


# ----------------------------------------------------------------------
# Reference data
# ----------------------------------------------------------------------
@importer_cli.group(name="gov-entities")
def gov_entities_group():
    """Maintain the government-entity exclusion list."""


@gov_entities_group.command("load")
@_csv_file_option
@click.option("--replace", is_flag=True, help="Drop existing references before loading.")
def gov_entities_load(file_path: Path, replace: bool):
    with _pipeline_errors():
        try:
            with file_path.open("r", encoding="utf-8-sig", newline="") as handle:
                counts = load_gov_entities(db.session, handle, replace=replace)
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise
    click.echo(
        f"Government entities loaded: created={counts['created']} "
        f"updated={counts['updated']} skipped={counts['skipped']}"
    )


# ----------------------------------------------------------------------
# Worker
# ----------------------------------------------------------------------
@importer_cli.group(name="worker")
@click.pass_context
def worker_group(ctx):
    """Manage the importer background worker."""
    app = _load_app(ctx)
    state = app.extensions.get("importer", {})
    if not state.get("worker_enabled") and not app.config.get("IMPORTER_WORKER_ENABLED"):
        click.echo(
            "Warning: IMPORTER_WORKER_ENABLED is false. Commands will still run, "
            "but enable the flag to surface accurate health status.",
            err=True,
        )


@worker_group.command("run")
@click.option("--loglevel", default="info", show_default=True)
@click.option("--concurrency", type=int, help="Number of worker processes/threads.")
@click.option("--pool", type=str, help="Celery pool implementation (e.g., 'prefork', 'solo', 'threads').")
@click.option("--queues", help="Comma-separated queue list to consume. Defaults to IMPORTER_QUEUE_NAME.")
@click.pass_context
def worker_run(ctx, loglevel: str, concurrency: Optional[int], pool: Optional[str], queues: Optional[str]):
    """Start the Celery worker in the current process."""
    app = _load_app(ctx)
    celery_app = _resolve_celery(app)
    queues = queues or celery_app.conf.task_default_queue
    app.extensions.setdefault("importer", {})["worker_enabled"] = True

    argv = ["worker", "--loglevel", loglevel, "-Q", queues]
    if concurrency:
        argv.extend(["--concurrency", str(concurrency)])
    if pool:
        argv.extend(["--pool", pool])

    pool_msg = f", pool: {pool}" if pool else ""
    click.echo(f"Starting importer worker (queues: {queues}, loglevel: {loglevel}{pool_msg})")
    try:
        celery_app.worker_main(argv=argv)
    except KeyboardInterrupt:
        click.echo("Worker shutdown requested. Exiting...")


@worker_group.command("ping")
@click.option("--timeout", default=10.0, show_default=True, help="Seconds to wait for a response.")
@click.pass_context
def worker_ping(ctx, timeout: float):
    """Run the heartbeat task and print its payload."""
    app = _load_app(ctx)
    celery_app = _resolve_celery(app)
    task = celery_app.tasks.get("importer.healthcheck")
    if task is None:
        raise click.ClickException("Heartbeat task 'importer.healthcheck' is not registered.")

    result = task.apply_async()
    try:
        payload = result.get(timeout=timeout)
    except CeleryTimeoutError as exc:
        raise click.ClickException(f"Worker did not respond within {timeout}s") from exc

    click.echo(json.dumps(payload, indent=2))
