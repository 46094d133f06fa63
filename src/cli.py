#!/usr/bin/env python3
"""Command Line Interface for the violation leads pipeline.

Usage:
    cd src
    python cli.py server                    # Start API server
    python cli.py detect violations.csv     # Preview locations in a CSV
    python cli.py upload violations.csv     # Accept and process a CSV inline
    python cli.py geocode                   # Geocode the pending pool inline
    python cli.py monitor                   # Run one job-health sweep
    python cli.py info                      # Show configuration
"""
from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, Optional

import typer
import uvicorn

from core.config import get_settings
from core.db import get_session
from core.logging_config import get_logger, setup_logging

LOGGER = get_logger(__name__)
SETTINGS = get_settings()

app = typer.Typer(help="Violation leads pipeline CLI")
geocode_app = typer.Typer(help="Geocoding commands")
app.add_typer(geocode_app, name="geocode")


@app.callback()
def main_callback(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose output"),
) -> None:
    """Code-enforcement lead ingestion, geocoding and job health."""
    log_level = "DEBUG" if verbose else SETTINGS.log_level
    setup_logging(level=log_level, json_format=SETTINGS.log_format == "json")


def _echo_json(data: Dict[str, Any]) -> None:
    typer.echo(json.dumps(data, indent=2, default=str))


def _read_csv(file_path: str) -> str:
    path = Path(file_path)
    if not path.is_file():
        typer.secho(f"✗ File not found: {file_path}", fg="red")
        raise typer.Exit(1)
    return path.read_text(encoding="utf-8-sig")


def _report_inline(dispatcher) -> None:
    for name, result in dispatcher.results:
        typer.echo(f"  ✓ {name}: {json.dumps(result, default=str)}")
    for name, error in dispatcher.failures:
        typer.secho(f"  ✗ {name}: {error}", fg="red")


# =============================================================================
# Upload Commands
# =============================================================================


@app.command("detect")
def detect(
    file_path: str = typer.Argument(..., help="Path to violations CSV"),
    city: Optional[str] = typer.Option(None, help="Fallback city for rows without one"),
    state: Optional[str] = typer.Option(None, help="Fallback state for rows without one"),
) -> None:
    """Show the locations present in a CSV without storing it."""
    from ingestion.location_splitter import detect_locations
    from ingestion.normalizer import normalize_state

    detection = detect_locations(_read_csv(file_path), city, normalize_state(state))
    typer.echo(f"Rows: {detection.total_rows}  Missing location: {detection.missing_location_rows}")
    for location in detection.locations:
        typer.echo(f"  {location.city}, {location.state}: {location.count}")
    if detection.is_multi_location:
        typer.secho("Multi-location file: uploads will be split per city", fg="yellow")


@app.command("upload")
def upload(
    file_path: str = typer.Argument(..., help="Path to violations CSV"),
    city: Optional[str] = typer.Option(None, help="City for rows without one"),
    state: Optional[str] = typer.Option(None, help="State for rows without one"),
    county: Optional[str] = typer.Option(None, help="County recorded on the job"),
) -> None:
    """Accept a CSV and run its ingestion (and follow-on work) in this process."""
    from core.exceptions import ViolationLeadsError
    from domain.uploads import UploadService
    from services.task_dispatch import InlineDispatcher

    dispatcher = InlineDispatcher()
    try:
        with get_session() as session:
            result = UploadService(session, dispatcher=dispatcher).create_upload(
                Path(file_path).name, _read_csv(file_path), city=city, state=state, county=county
            )
    except ViolationLeadsError as e:
        typer.secho(f"✗ Upload rejected: {e}", fg="red")
        raise typer.Exit(1)

    typer.secho(f"✓ Upload job {result['jobId']} ({result['status']})", fg="green")
    if result["split"]:
        typer.echo(f"  Split into {result['split']['jobsCreated']} city jobs")
    _report_inline(dispatcher)
    if dispatcher.failures:
        raise typer.Exit(1)


@app.command("process")
def process(
    job_id: int = typer.Argument(..., help="Upload job ID"),
) -> None:
    """Run the pipeline for an existing upload job in this process."""
    from services.task_dispatch import PROCESS_UPLOAD, InlineDispatcher

    dispatcher = InlineDispatcher()
    dispatcher.submit(PROCESS_UPLOAD, {"jobId": job_id})
    _report_inline(dispatcher)
    if dispatcher.failures:
        raise typer.Exit(1)


@app.command("reprocess")
def reprocess(
    job_id: int = typer.Argument(..., help="Upload job ID"),
) -> None:
    """Reset a finished or failed upload job and run it again in this process."""
    from core.exceptions import ViolationLeadsError
    from domain.uploads import UploadService
    from services.task_dispatch import InlineDispatcher

    dispatcher = InlineDispatcher()
    try:
        with get_session() as session:
            UploadService(session, dispatcher=dispatcher).reprocess_job(job_id)
    except ViolationLeadsError as e:
        typer.secho(f"✗ Cannot reprocess job {job_id}: {e}", fg="red")
        raise typer.Exit(1)
    _report_inline(dispatcher)


@app.command("status")
def status(
    job_id: int = typer.Argument(..., help="Upload job ID"),
) -> None:
    """Show an upload job and its split children."""
    from core.exceptions import JobNotFoundError
    from domain.uploads import UploadService

    try:
        with get_session() as session:
            _echo_json(UploadService(session).get_progress(job_id))
    except JobNotFoundError as e:
        typer.secho(f"✗ {e}", fg="red")
        raise typer.Exit(1)


# =============================================================================
# Geocoding Commands
# =============================================================================


@geocode_app.command("run")
def geocode_run(
    max_batches: Optional[int] = typer.Option(
        None, help="Stop after this many batches (the job stays open)"
    ),
) -> None:
    """Start (or resume) a geocoding job and run its batches in this process."""
    from services.geocoding_job import GeocodingJobService
    from services.task_dispatch import InlineDispatcher

    dispatcher = InlineDispatcher(max_tasks=max_batches)
    with get_session() as session:
        job = GeocodingJobService(session, dispatcher=dispatcher).start_job()
        job_id = job.id

    batches = len(dispatcher.results)
    typer.echo(f"Geocoding job {job_id}: {batches} batch(es) run")
    if dispatcher.results:
        typer.echo(f"  Last batch: {dispatcher.results[-1][1]}")
    for name, error in dispatcher.failures:
        typer.secho(f"  ✗ {name}: {error}", fg="red")
    if dispatcher.queue:
        typer.secho(f"  {len(dispatcher.queue)} batch(es) left queued; run again to continue", fg="yellow")


@geocode_app.command("batch")
def geocode_batch(
    job_id: int = typer.Argument(..., help="Geocoding job ID"),
) -> None:
    """Run a single batch of an existing geocoding job without continuing."""
    from services.task_dispatch import GEOCODE_BATCH, InlineDispatcher

    dispatcher = InlineDispatcher(max_tasks=1)
    dispatcher.submit(GEOCODE_BATCH, {"jobId": job_id})
    _report_inline(dispatcher)
    if dispatcher.failures:
        raise typer.Exit(1)


@geocode_app.command("reset-failed")
def geocode_reset_failed() -> None:
    """Return sentinel (failed) properties to the pending pool."""
    from services.geocoding_job import GeocodingJobService

    with get_session() as session:
        count = GeocodingJobService(session).reset_failed()
    typer.secho(f"✓ Reset {count} failed properties", fg="green")


# =============================================================================
# Job Health Commands
# =============================================================================


@app.command("monitor")
def monitor() -> None:
    """Run one job-health sweep; recovered uploads are re-run in this process."""
    from scheduler.jobs import run_job_monitor_job
    from services.task_dispatch import InlineDispatcher

    dispatcher = InlineDispatcher()
    result = run_job_monitor_job(dispatcher=dispatcher)
    _echo_json(result)
    _report_inline(dispatcher)
    if not result["success"]:
        raise typer.Exit(1)


@app.command("skip-trace")
def skip_trace(
    property_id: int = typer.Argument(..., help="Property ID"),
    phone: Optional[str] = typer.Option(None, help="Known phone number hint"),
) -> None:
    """Look up owner contact data for a property."""
    from core.exceptions import ViolationLeadsError
    from services.skip_trace import get_skip_trace_service

    try:
        with get_session() as session:
            result = get_skip_trace_service().skip_trace_property(session, property_id, phone)
    except ViolationLeadsError as e:
        typer.secho(f"✗ Skip trace failed: {e}", fg="red")
        raise typer.Exit(1)
    _echo_json(result.to_dict())


# =============================================================================
# Server Commands
# =============================================================================


@app.command("server")
def run_server(
    host: str = typer.Option("0.0.0.0", help="Host to bind to"),
    port: int = typer.Option(8000, help="Port to bind to"),
    reload: bool = typer.Option(False, help="Enable auto-reload for development"),
) -> None:
    """Start the API server."""
    typer.echo(f"Starting API server on {host}:{port}...")
    uvicorn.run("api.app:app", host=host, port=port, reload=reload)


@app.command("scheduler")
def run_scheduler_cmd() -> None:
    """Start the background job monitor scheduler."""
    from scheduler.runner import run_scheduler_blocking

    typer.echo("Starting scheduler...")
    run_scheduler_blocking()


# =============================================================================
# Utility Commands
# =============================================================================


@app.command("init-db")
def init_db_cmd() -> None:
    """Create any missing database tables."""
    from core.db import init_db

    try:
        result = init_db()
    except Exception as e:
        typer.secho(f"✗ Database initialization failed: {e}", fg="red")
        raise typer.Exit(1)
    typer.secho(f"✓ Tables created: {result['tables_created'] or 'none'}", fg="green")


@app.command("info")
def show_info() -> None:
    """Show application configuration info."""
    typer.echo("Violation Leads Pipeline Configuration:")
    typer.echo(f"  Environment: {SETTINGS.environment}")
    typer.echo(f"  Log Level: {SETTINGS.log_level}")
    typer.echo(f"  Upload Dir: {SETTINGS.upload_dir}")
    typer.echo(f"  Task Dispatch: {SETTINGS.task_dispatch_mode}")
    typer.echo(f"  Geocoders: {', '.join(SETTINGS.geocoder_order())}")
    typer.echo(f"  Geocode Batch Size: {SETTINGS.geocode_batch_size}")
    typer.echo(f"  Monitor Interval: {SETTINGS.monitor_interval_seconds}s")
    typer.echo(f"  Google Configured: {SETTINGS.is_google_enabled()}")
    typer.echo(f"  Skip Trace Configured: {SETTINGS.is_skip_trace_enabled()}")


if __name__ == "__main__":
    app()
