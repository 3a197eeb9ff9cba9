"""
Run driver: select tables, replay their exports, compare them and persist
the outcome.

Usage (example from CLI):
    from cdc_validator.orchestrator import run_job

    result = asyncio.run(run_job(job))
    print(result.exit_code())

Per table the stages are: introspect -> prepare target -> locate -> replay ->
diff. A failure in any stage is recorded as a TableFailure and the other
tables carry on. Pool exhaustion and connection failures abort the run; the
failing table and any table cancelled with it are still listed with their
last replay offset.

Outputs are saved to ``results/`` by default:
- ``results/latest.json`` (last run)
- ``results/run-<timestamp>.json`` (timestamped archive)
"""

from __future__ import annotations

import asyncio
import json
from contextlib import AsyncExitStack
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from cdc_validator.config import JobConfiguration, Settings, get_settings
from cdc_validator.domain.models import ValidationReport
from cdc_validator.engine.abstract import ObjectStore, TableDiffer
from cdc_validator.engine.differ import ChunkedDiffOrchestrator
from cdc_validator.engine.locator import PartitionLocator
from cdc_validator.engine.reader import CdcReader, ParquetChangeDecoder
from cdc_validator.engine.replay import SnapshotReplayEngine
from cdc_validator.errors import CdcValidatorError, ReplayAbortedError, StructuralError
from cdc_validator.infrastructure.db_factory import PoolManager
from cdc_validator.infrastructure.object_store import S3ObjectStore
from cdc_validator.infrastructure.postgres import PostgresOperator
from cdc_validator.infrastructure.retry import RetryPolicy
from cdc_validator.utils.logging import get_logger
from cdc_validator.utils.profiler import profile_block

log = get_logger(__name__)

EXIT_OK = 0
EXIT_MISMATCH = 1
EXIT_FATAL = 2


@dataclass
class TableFailure:
    """A table that could not be processed, with what a resumed run needs."""

    table: str
    stage: str
    message: str
    error_code: Optional[str] = None
    last_offset: Optional[int] = None
    file_key: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "table": self.table,
            "stage": self.stage,
            "message": self.message,
            "error_code": self.error_code,
            "last_offset": self.last_offset,
            "file_key": self.file_key,
        }


@dataclass
class JobResult:
    started_at: datetime
    finished_at: Optional[datetime] = None
    tables: List[str] = field(default_factory=list)
    reports: List[ValidationReport] = field(default_factory=list)
    failures: List[TableFailure] = field(default_factory=list)
    fatal_error: Optional[str] = None

    @property
    def has_fatal(self) -> bool:
        return bool(self.failures or self.fatal_error)

    def exit_code(self, fail_on_unverified: bool = False) -> int:
        """
        ``EXIT_FATAL`` if any table or the run failed, ``EXIT_MISMATCH`` if a
        report has discrepancies (or unverified windows when asked to), else
        ``EXIT_OK``.
        """
        if self.has_fatal:
            return EXIT_FATAL
        for report in self.reports:
            if report.status == "mismatch":
                return EXIT_MISMATCH
            if fail_on_unverified and report.status == "partial":
                return EXIT_MISMATCH
        return EXIT_OK

    def as_dict(self) -> Dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "tables": list(self.tables),
            "reports": [
                {**report.model_dump(mode="json"), "status": report.status}
                for report in self.reports
            ],
            "failures": [failure.as_dict() for failure in self.failures],
            "fatal_error": self.fatal_error,
        }


def _persist_results(payload: dict, results_dir: Path) -> None:
    results_dir.mkdir(parents=True, exist_ok=True)
    latest_path = results_dir / "latest.json"
    timestamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
    archive_path = results_dir / f"run-{timestamp}.json"

    with latest_path.open("w", encoding="utf-8") as f:
        json.dump(payload, f, indent=2, sort_keys=True, default=str)
    with archive_path.open("w", encoding="utf-8") as f:
        json.dump(payload, f, indent=2, sort_keys=True, default=str)

    log.info("Results persisted", extra={"latest": str(latest_path), "archive": str(archive_path)})


def _failure_from(table: str, stage: str, exc: Exception) -> TableFailure:
    failure = TableFailure(table=table, stage=stage, message=str(exc))
    if isinstance(exc, CdcValidatorError):
        failure.error_code = exc.error_code
    if isinstance(exc, ReplayAbortedError):
        failure.last_offset = exc.last_offset
    if isinstance(exc, StructuralError):
        failure.file_key = exc.file_key
    return failure


class JobRunner:
    """
    Processes the tables of one job against already-built collaborators.

    ``source`` and ``target`` are database operators (catalog, replay and
    fetch operations); tests hand in in-memory variants.
    """

    def __init__(
        self,
        job: JobConfiguration,
        source: Any,
        target: Any,
        object_store: Optional[ObjectStore] = None,
        differ: Optional[TableDiffer] = None,
        settings: Optional[Settings] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ) -> None:
        self.job = job
        self.source = source
        self.target = target
        self.object_store = object_store
        self.differ = differ
        self.settings = settings or get_settings()
        self.retry_policy = retry_policy or RetryPolicy.from_settings(self.settings)
        self.diff_limiter = asyncio.Semaphore(job.max_connections)

    async def discover_tables(self) -> List[str]:
        tables = await self.source.get_tables_in_schema(
            self.job.schema_name, self.job.included_tables, self.job.excluded_tables
        )
        log.info(
            f"Tables to validate: {len(tables)}",
            extra={"schema": self.job.schema_name, "tables": tables},
        )
        return tables

    async def prepare_target(self) -> None:
        await self.target.create_schema(self.job.schema_name)
        if self.job.extensions:
            await self.target.create_extensions(self.job.extensions)

    async def process_table(self, table: str, result: JobResult) -> None:
        stage = "introspect"
        engine: Optional[SnapshotReplayEngine] = None
        log.info(f"[TABLE START] {table}", extra={"table": table})
        with profile_block(table) as stats:
            try:
                descriptor = await self.source.get_table_descriptor(self.job.schema_name, table)
                replayed = None
                replay_summary = None
                if self.job.runs_snapshot:
                    stage = "prepare"
                    await self.target.create_table(descriptor)
                    stage = "locate"
                    listing = await PartitionLocator(self.object_store, self.job).locate(table)
                    stage = "replay"
                    engine = SnapshotReplayEngine(
                        reader=CdcReader(
                            self.object_store,
                            ParquetChangeDecoder(self.settings.op_column, self.settings.timestamp_column),
                        ),
                        target=self.target,
                        chunk_size=self.job.chunk_size,
                        start_position=self.job.start_position,
                    )
                    outcome = await engine.replay(listing, descriptor)
                    replayed = outcome.mutations
                    replay_summary = outcome.as_dict()
                if self.job.runs_diff:
                    stage = "diff"
                    report = await ChunkedDiffOrchestrator(
                        source=self.source,
                        target=self.target,
                        chunk_size=self.job.chunk_size,
                        start_position=self.job.start_position,
                        max_concurrency=self.job.max_connections,
                        differ=self.differ,
                        retry_policy=self.retry_policy,
                        limiter=self.diff_limiter,
                    ).run(descriptor, replayed_mutations=replayed)
                else:
                    report = ValidationReport(
                        schema_name=descriptor.schema_name,
                        table_name=descriptor.table_name,
                        start_position=self.job.start_position,
                        chunk_size=self.job.chunk_size,
                        replayed_mutations=replayed,
                    )
            except asyncio.CancelledError:
                # Another table aborted the run; keep how far this one got.
                failure = TableFailure(table=table, stage=stage, message="Cancelled after the run was aborted")
                if engine is not None and engine.cursor is not None:
                    failure.last_offset = engine.cursor.offset
                    failure.file_key = engine.cursor.last_file
                result.failures.append(failure)
                log.warning(
                    f"[TABLE CANCELLED] {table}",
                    extra={"table": table, "stage": stage, "last_offset": failure.last_offset},
                )
                raise
            except CdcValidatorError as exc:
                log.error(f"[TABLE FAILED] {table}", extra={"table": table, "stage": stage, "error": str(exc)})
                result.failures.append(_failure_from(table, stage, exc))
                if exc.run_fatal:
                    raise
                return
            except Exception as exc:  # noqa: BLE001 - one table must not abort the others
                log.exception(f"[TABLE FAILED] {table}", extra={"table": table, "stage": stage})
                result.failures.append(_failure_from(table, stage, exc))
                return

        if replay_summary is not None:
            report.extra["replay"] = replay_summary
        report.extra["profile"] = stats.as_dict()
        result.reports.append(report)
        log.info(f"[TABLE DONE] {table}", extra={"table": table, "status": report.status})

    async def run(self) -> JobResult:
        result = JobResult(started_at=datetime.now(timezone.utc))
        try:
            tables = await self.discover_tables()
            result.tables = tables
            if self.job.runs_snapshot:
                await self.prepare_target()
            gate = asyncio.Semaphore(max(self.settings.table_concurrency, 1))

            async def _guarded(table: str) -> None:
                async with gate:
                    await self.process_table(table, result)

            async with asyncio.TaskGroup() as group:
                for table in tables:
                    group.create_task(_guarded(table))
        except ExceptionGroup as errors:
            first = errors.exceptions[0]
            result.fatal_error = str(first)
            log.error("[RUN ABORTED]", extra={"error": str(first)})
        except CdcValidatorError as exc:
            result.fatal_error = str(exc)
            log.error("[RUN ABORTED]", extra={"error": str(exc)})
        except Exception as exc:  # noqa: BLE001 - the run still ends with a report
            result.fatal_error = f"{type(exc).__name__}: {exc}"
            log.exception("[RUN ABORTED]", extra={"error": str(exc)})

        # Tables finish in any order; reports follow the discovery order.
        order = {name: index for index, name in enumerate(result.tables)}
        result.reports.sort(key=lambda report: order.get(report.table_name, len(order)))
        result.failures.sort(key=lambda failure: order.get(failure.table, len(order)))
        result.finished_at = datetime.now(timezone.utc)
        return result


async def run_job(
    job: JobConfiguration,
    settings: Optional[Settings] = None,
    object_store: Optional[ObjectStore] = None,
    differ: Optional[TableDiffer] = None,
    pools: Optional[PoolManager] = None,
    results_dir: Path | str | None = None,
    persist: bool = True,
) -> JobResult:
    """
    Run one validation job end to end.

    Parameters
    ----------
    job : JobConfiguration
        Validated run parameters.
    settings : Settings | None
        Process settings; defaults to ``get_settings()``.
    object_store : ObjectStore | None
        Export storage; defaults to an S3 store for ``job.bucket_name``.
    differ : TableDiffer | None
        Row-set comparison collaborator; defaults to ``RowSliceDiffer``.
    pools : PoolManager | None
        Source/target pools; built from the job when omitted.
    results_dir : Path | str | None
        Directory for JSON artifacts; defaults to ``settings.results_dir``.
    persist : bool
        Whether to write results to disk.
    """
    settings = settings or get_settings()
    retry_policy = RetryPolicy.from_settings(settings)
    if object_store is None and job.runs_snapshot:
        object_store = S3ObjectStore(job.bucket_name, retry_policy=retry_policy, settings=settings)

    log.info(
        "[JOB START]",
        extra={
            "schema": job.schema_name,
            "mode": job.mode.value,
            "chunk_size": job.chunk_size,
            "max_connections": job.max_connections,
            "start_position": job.start_position,
            "snapshot_only": job.snapshot_only,
            "diff_only": job.diff_only,
        },
    )

    pools = pools or PoolManager.from_job(job, settings)
    async with AsyncExitStack() as stack:
        try:
            await stack.enter_async_context(pools)
        except CdcValidatorError as exc:
            result = JobResult(started_at=datetime.now(timezone.utc), fatal_error=str(exc))
            result.finished_at = result.started_at
            log.error("[RUN ABORTED]", extra={"error": str(exc)})
        else:
            runner = JobRunner(
                job,
                source=PostgresOperator(pools.source, retry_policy),
                target=PostgresOperator(pools.target, retry_policy),
                object_store=object_store,
                differ=differ,
                settings=settings,
                retry_policy=retry_policy,
            )
            result = await runner.run()

    if persist:
        _persist_results(result.as_dict(), Path(results_dir or settings.results_dir))

    log.info(
        "[JOB COMPLETE]",
        extra={
            "tables": len(result.tables),
            "reports": len(result.reports),
            "failures": len(result.failures),
            "fatal": result.fatal_error is not None,
        },
    )
    return result


__all__ = [
    "EXIT_FATAL",
    "EXIT_MISMATCH",
    "EXIT_OK",
    "JobResult",
    "JobRunner",
    "TableFailure",
    "run_job",
]
