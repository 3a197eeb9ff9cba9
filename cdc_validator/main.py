from __future__ import annotations

import asyncio
import sys
from datetime import datetime
from pathlib import Path
from typing import List, Optional

import typer
from pydantic import ValidationError

from cdc_validator.config import JobConfiguration, LoadMode, get_settings
from cdc_validator.infrastructure.db_factory import redact_url
from cdc_validator.infrastructure.object_store import LocalObjectStore
from cdc_validator.orchestrator import run_job
from cdc_validator.reporter import print_results
from cdc_validator.utils.logging import configure_logging

app = typer.Typer(help="CDC snapshot replay and validation CLI.")


@app.command()
def info() -> None:
    """
    Show effective configuration values.
    """
    settings = get_settings()
    typer.echo(
        f"source={redact_url(settings.source_db_url)} target={redact_url(settings.target_db_url)} | "
        f"chunk={settings.chunk_size} max_connections={settings.max_connections} "
        f"tables_in_flight={settings.table_concurrency} retries={settings.retry_attempts}"
    )


@app.command()
def validate(
    bucket_name: str = typer.Option("", "--bucket-name", "-b", help="Bucket holding the CDC export."),
    s3_prefix: str = typer.Option("", "--s3-prefix", help="Key prefix above the database folder."),
    source_db_url: Optional[str] = typer.Option(
        None, "--source-postgres-url", help="Source database URL (default from settings)."
    ),
    target_db_url: Optional[str] = typer.Option(
        None, "--target-postgres-url", help="Target database URL (default from settings)."
    ),
    database_name: Optional[str] = typer.Option(
        None, "--database-name", help="Database folder in the export (default: source URL path)."
    ),
    schema_name: str = typer.Option("public", "--schema-name", "-s", help="Schema to validate."),
    included_tables: List[str] = typer.Option(
        [], "--included-tables", "-i", help="Only these tables (repeat or comma-separate)."
    ),
    excluded_tables: List[str] = typer.Option(
        [], "--excluded-tables", "-x", help="Skip these tables (repeat or comma-separate)."
    ),
    extensions: List[str] = typer.Option([], "--extension", help="Extension to create in the target."),
    mode: LoadMode = typer.Option(LoadMode.DATE_AWARE, "--mode", help="File selection mode."),
    absolute_paths: List[str] = typer.Option(
        [], "--absolute-path", help="Exact object key to replay (absolute-path mode)."
    ),
    start_date: Optional[str] = typer.Option(
        None, "--start-date", help="First partition date, e.g. 2024-02-14T00:00:00Z."
    ),
    stop_date: Optional[str] = typer.Option(None, "--stop-date", help="Last partition date (inclusive)."),
    chunk_size: Optional[int] = typer.Option(None, "--chunk-size", "-c", help="Rows per batch and window."),
    max_connections: Optional[int] = typer.Option(
        None, "--max-connections", help="Upper bound of each connection pool."
    ),
    start_position: int = typer.Option(0, "--start-position", help="Offset to resume replay and diff from."),
    only_snapshot: bool = typer.Option(False, "--only-snapshot", help="Replay only, skip the comparison."),
    only_datadiff: bool = typer.Option(False, "--only-datadiff", help="Compare only, skip the replay."),
    accept_invalid_certs_first_db: bool = typer.Option(
        False, "--accept-invalid-certs-first-db", help="Trust any certificate from the source database."
    ),
    accept_invalid_certs_second_db: bool = typer.Option(
        False, "--accept-invalid-certs-second-db", help="Trust any certificate from the target database."
    ),
    local_root: Optional[Path] = typer.Option(
        None, "--local-root", help="Read the export from this directory instead of S3."
    ),
    fail_on_unverified: bool = typer.Option(
        False, "--fail-on-unverified", help="Exit non-zero when a window could not be verified."
    ),
    json_logs: Optional[bool] = typer.Option(None, "--json-logs/--text-logs", help="Log format override."),
    persist: bool = typer.Option(True, "--persist/--no-persist", help="Write results JSON."),
) -> None:
    """
    Replay the CDC export into the target and compare it with the source.
    """
    settings = get_settings()
    configure_logging(
        level=settings.log_level, json_logs=settings.log_json if json_logs is None else json_logs
    )

    try:
        job = JobConfiguration(
            bucket_name=bucket_name,
            s3_prefix=s3_prefix,
            source_db_url=source_db_url or settings.source_db_url,
            target_db_url=target_db_url or settings.target_db_url,
            database_name=database_name,
            schema_name=schema_name,
            included_tables=_flatten(included_tables),
            excluded_tables=_flatten(excluded_tables),
            extensions=_flatten(extensions),
            mode=mode,
            absolute_paths=absolute_paths,
            start_date=start_date,
            stop_date=stop_date,
            chunk_size=chunk_size or settings.chunk_size,
            max_connections=max_connections or settings.max_connections,
            start_position=start_position,
            snapshot_only=only_snapshot,
            diff_only=only_datadiff,
            accept_invalid_certs_source=accept_invalid_certs_first_db,
            accept_invalid_certs_target=accept_invalid_certs_second_db,
        )
    except ValidationError as exc:
        typer.echo(f"Invalid configuration:\n{exc}", err=True)
        raise typer.Exit(code=2)

    if job.runs_snapshot and not job.bucket_name and local_root is None:
        typer.echo("Either --bucket-name or --local-root is required to replay.", err=True)
        raise typer.Exit(code=2)

    object_store = LocalObjectStore(local_root) if local_root is not None else None
    typer.echo(
        f"Validating schema='{job.schema_name}' mode={job.mode.value} "
        f"(chunk={job.chunk_size}, max_connections={job.max_connections}, "
        f"start_position={job.start_position}) at {datetime.now().isoformat(timespec='seconds')}."
    )
    result = asyncio.run(run_job(job, settings=settings, object_store=object_store, persist=persist))
    print_results(result.as_dict())
    raise typer.Exit(code=result.exit_code(fail_on_unverified=fail_on_unverified))


def _flatten(values: List[str]) -> List[str]:
    return [item for value in values for item in value.split(",")]


def main() -> None:
    try:
        app()
    except KeyboardInterrupt:
        typer.echo("Cancelled by user.", err=True)
        sys.exit(130)


if __name__ == "__main__":
    main()
