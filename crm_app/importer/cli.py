"""
``flask importer`` commands.

Operators can analyze a CSV, run an import inline or through the worker,
inspect and cancel jobs, prune stale uploads, and manage the Celery worker.
"""

from __future__ import annotations

import json
from datetime import timedelta
from pathlib import Path
from typing import Optional

import click
from celery import Celery
from celery.exceptions import TimeoutError as CeleryTimeoutError
from flask.cli import ScriptInfo, with_appcontext
from sqlalchemy.exc import NoResultFound

from crm_app.importer.celery_app import DEFAULT_QUEUE_NAME, get_celery_app
from crm_app.importer.pipeline import (
    HEARTBEAT_TASK_NAME,
    BatchOutcome,
    ImportJobService,
    ImportSummary,
    InvalidImportOptionsError,
    ProgressSnapshot,
    analyze_csv,
    serialize_job,
)
from crm_app.importer.utils import cleanup_upload, resolve_upload_directory, stale_uploads
from crm_app.models.importer.schema import ImportJobStateError
from crm_app.utils.importer import is_importer_enabled


def _current_app(ctx: click.Context):
    return ctx.ensure_object(ScriptInfo).load_app()


@click.group(name="importer", invoke_without_command=True)
@click.pass_context
def importer_cli(ctx):
    """Contact import commands."""
    app = _current_app(ctx)
    if not is_importer_enabled(app):
        raise click.ClickException("Importer is disabled (IMPORTER_ENABLED is off).")
    if ctx.invoked_subcommand is None:
        mode = app.extensions.get("importer", {}).get("execution_mode") or "unknown"
        click.echo(f"Contact importer ready (execution mode: {mode}).")
        click.echo(ctx.get_help())


def get_disabled_importer_group() -> click.Group:
    """Placeholder ``importer`` group installed while the feature flag is off."""

    @click.group(name="importer", invoke_without_command=True, help="Contact import commands (disabled).")
    def importer_disabled():
        raise click.ClickException("Set IMPORTER_ENABLED=true to use the importer commands.")

    return importer_disabled


def _worker_celery(app) -> Celery:
    celery_app = get_celery_app(app)
    if celery_app is None:
        raise click.ClickException("No Celery app is configured for the importer; check IMPORTER_ENABLED.")
    return celery_app


def _load_mapping(mapping_path: Optional[Path]) -> dict[str, str] | None:
    if mapping_path is None:
        return None
    try:
        payload = json.loads(mapping_path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise click.ClickException(f"Unable to read mapping file {mapping_path}: {exc}") from exc
    if not isinstance(payload, dict) or not all(
        isinstance(key, str) and isinstance(value, str) for key, value in payload.items()
    ):
        raise click.ClickException("Mapping file must contain a JSON object of column name to contact field.")
    return payload


def _echo_progress(outcome: BatchOutcome, snapshot: ProgressSnapshot) -> None:
    click.echo(
        f"  batch {outcome.batch_number}: {outcome.status} "
        f"(processed={snapshot.processed_rows} ok={snapshot.successful_rows} "
        f"errors={snapshot.error_rows} duplicates={snapshot.duplicate_rows})"
    )


def _format_summary(summary: ImportSummary) -> str:
    lines = [
        f"Job {summary.job_id} finished with status {summary.status}.",
        f"  total_rows      : {summary.total_rows if summary.total_rows is not None else 'n/a'}",
        f"  processed_rows  : {summary.processed_rows}",
        f"  successful_rows : {summary.successful_rows}",
        f"  error_rows      : {summary.error_rows}",
        f"  duplicate_rows  : {summary.duplicate_rows}",
        f"  batches_written : {summary.batches_written}",
        f"  duration        : {summary.duration_seconds:.2f}s",
    ]
    if summary.failure_reason:
        lines.append(f"  failure_reason  : {summary.failure_reason}")
    return "\n".join(lines)


@importer_cli.command("analyze")
@click.option(
    "--file",
    "file_path",
    required=True,
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    help="CSV file to inspect.",
)
@click.option("--delimiter", help="Field delimiter; detected from the first lines when omitted.")
@click.option("--no-header", is_flag=True, help="Treat the first line as data.")
@click.option("--encoding", default="utf-8", show_default=True)
@with_appcontext
def importer_analyze(file_path: Path, delimiter: Optional[str], no_header: bool, encoding: str):
    """Report headers, preview rows, and a suggested field mapping for a CSV file."""
    with file_path.open("rb") as handle:
        analysis = analyze_csv(handle, delimiter=delimiter, has_header=not no_header, encoding=encoding)
    click.echo(json.dumps(analysis.as_dict(), indent=2, sort_keys=True))


@importer_cli.command("run")
@click.option(
    "--file",
    "file_path",
    required=True,
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    help="CSV file to import.",
)
@click.option(
    "--mapping",
    "mapping_path",
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    help="JSON file mapping CSV columns to contact fields.",
)
@click.option("--auto-map", is_flag=True, help="Map headers to contact fields automatically.")
@click.option("--delimiter", help="Field delimiter; detected from the first lines when omitted.")
@click.option("--no-header", is_flag=True, help="Treat the first line as data.")
@click.option("--encoding", help="Source text encoding (default from IMPORTER config).")
@click.option("--batch-size", type=int, help="Rows per database transaction.")
@click.option("--max-errors", type=int, help="Row errors retained on the job for review.")
@click.option(
    "--inline/--queue",
    default=False,
    help="Run inline within the CLI process instead of queueing via Celery.",
)
@click.option(
    "--summary-json",
    is_flag=True,
    help="Emit a machine-readable summary payload after completion (inline runs only).",
)
@click.pass_context
@with_appcontext
def importer_run(
    ctx,
    file_path: Path,
    mapping_path: Optional[Path],
    auto_map: bool,
    delimiter: Optional[str],
    no_header: bool,
    encoding: Optional[str],
    batch_size: Optional[int],
    max_errors: Optional[int],
    inline: bool,
    summary_json: bool,
):
    """Import contacts from a CSV file."""
    app = _current_app(ctx)
    if summary_json and not inline:
        raise click.ClickException("--summary-json is only available for --inline runs.")
    if (mapping_path is None) == (not auto_map):
        raise click.ClickException("Provide exactly one of --mapping or --auto-map.")

    csv_path = file_path.resolve()
    service = ImportJobService(app=app)
    try:
        job = service.create_job(
            csv_path.name,
            field_mapping=_load_mapping(mapping_path),
            overrides={
                "delimiter": delimiter,
                "has_header": False if no_header else None,
                "encoding": encoding,
                "batch_size": batch_size,
                "max_retained_errors": max_errors,
            },
        )
    except InvalidImportOptionsError as exc:
        raise click.ClickException(str(exc)) from exc

    if not inline:
        payload = service.start(job, csv_path, keep_file=True, mode="celery")
        payload["status"] = "queued"
        click.echo(json.dumps(payload))
        return

    click.echo(f"Importing {csv_path.name} as job {job.id}...")
    summary = service.execute(job.id, csv_path, keep_file=True, batch_listener=_echo_progress)
    click.echo(_format_summary(summary))
    if summary_json:
        click.echo(json.dumps(summary.as_dict(), indent=2, sort_keys=True))
    if not summary.succeeded:
        raise click.ClickException(f"Import job {summary.job_id} failed: {summary.failure_reason}")


@importer_cli.command("status")
@click.option("--job-id", required=True, type=int, help="ID of the import job.")
@click.option("--with-errors", is_flag=True, help="Include retained row errors.")
@with_appcontext
def importer_status(job_id: int, with_errors: bool):
    """Show the persisted state of an import job."""
    try:
        job = ImportJobService().get_job(job_id)
    except NoResultFound as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(json.dumps(serialize_job(job, include_errors=with_errors), indent=2, sort_keys=True))


@importer_cli.command("cancel")
@click.option("--job-id", required=True, type=int, help="ID of the import job to cancel.")
@with_appcontext
def importer_cancel(job_id: int):
    """Request cancellation of a pending or running import job."""
    try:
        job = ImportJobService().request_cancel(job_id)
    except NoResultFound as exc:
        raise click.ClickException(str(exc)) from exc
    except ImportJobStateError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(json.dumps({"job_id": job.id, "status": job.status.value, "cancel_requested": True}))


@importer_cli.command("cleanup-uploads")
@click.option(
    "--max-age-hours",
    default=72,
    show_default=True,
    type=int,
    help="Remove importer uploads older than the specified number of hours.",
)
@click.pass_context
def importer_cleanup_uploads(ctx, max_age_hours: int):
    """Delete stale importer upload files from the configured storage directory."""

    uploads_dir = resolve_upload_directory(_current_app(ctx))
    removed = 0
    for path in list(stale_uploads(uploads_dir, timedelta(hours=max_age_hours))):
        cleanup_upload(path)
        removed += 1
    click.echo(f"Removed {removed} upload file(s) older than {max_age_hours} hours from {uploads_dir}.")


@importer_cli.group(name="worker")
@click.pass_context
def worker_group(ctx):
    """Run or probe the Celery worker that executes queued imports."""
    app = _current_app(ctx)
    if not app.config.get("IMPORTER_WORKER_ENABLED"):
        click.echo(
            "Note: IMPORTER_WORKER_ENABLED is off, so the web app will not queue jobs to this worker.",
            err=True,
        )


@worker_group.command("run")
@click.option("--loglevel", default="info", show_default=True, help="Celery log level.")
@click.option("--concurrency", type=int, help="Parallel job slots (processes or threads).")
@click.option("--pool", help="Celery pool implementation, e.g. prefork, threads or solo.")
@click.option("--queues", default=DEFAULT_QUEUE_NAME, show_default=True, help="Comma-separated queues to consume.")
@click.pass_context
def worker_run(ctx, loglevel: str, concurrency: Optional[int], pool: Optional[str], queues: str):
    """Start an importer worker in this process."""
    app = _current_app(ctx)
    celery_app = _worker_celery(app)
    app.extensions.setdefault("importer", {})["worker_enabled"] = True

    argv = ["worker", f"--loglevel={loglevel}", f"--queues={queues}"]
    if concurrency:
        argv.append(f"--concurrency={concurrency}")
    if pool:
        argv.append(f"--pool={pool}")
    click.echo(f"Importer worker consuming {queues} ({' '.join(argv[1:])})")
    try:
        celery_app.worker_main(argv=argv)
    except KeyboardInterrupt:
        click.echo("Importer worker stopped.")


@worker_group.command("ping")
@click.option("--timeout", default=10.0, show_default=True, help="Seconds to wait for the heartbeat.")
@click.pass_context
def worker_ping(ctx, timeout: float):
    """Round-trip the heartbeat task through the broker."""
    celery_app = _worker_celery(_current_app(ctx))
    heartbeat = celery_app.tasks.get(HEARTBEAT_TASK_NAME)
    if heartbeat is None:
        raise click.ClickException(f"Task {HEARTBEAT_TASK_NAME!r} is not registered with the worker app.")
    try:
        reply = heartbeat.apply_async().get(timeout=timeout)
    except CeleryTimeoutError as exc:
        raise click.ClickException(f"No heartbeat from the importer worker after {timeout}s.") from exc
    click.echo(json.dumps(reply, indent=2))
