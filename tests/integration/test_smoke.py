"""
Integration tests for the CDC snapshot validator.

These tests run against two real PostgreSQL instances and verify that:
1. Replaying a generated export recreates the table in the target
2. The chunked comparison of the replayed table against the source matches
3. Results are persisted

Run with: RUN_INTEGRATION_TESTS=1 pytest tests/integration/
"""

from __future__ import annotations

import os
from datetime import date
from pathlib import Path

import psycopg
import pyarrow.parquet as pq
import pytest

from cdc_validator.config import JobConfiguration, Settings
from cdc_validator.infrastructure.object_store import LocalObjectStore
from cdc_validator.orchestrator import EXIT_OK, run_job
from scripts import generate_cdc_files

SCHEMA = "cdc_smoke"
GENERATED_ROWS = 50
GENERATED_DAYS = 2
CHANGES_PER_DAY = 30
CHUNK_SIZE = 7

pytestmark = pytest.mark.skipif(
    os.getenv("RUN_INTEGRATION_TESTS", "0") != "1",
    reason="Integration tests require RUN_INTEGRATION_TESTS=1 and reachable Postgres",
)

_CREATE = f"""
CREATE SCHEMA IF NOT EXISTS {SCHEMA};
DROP TABLE IF EXISTS {SCHEMA}.orders;
CREATE TABLE {SCHEMA}.orders (
    id bigint PRIMARY KEY,
    status text,
    amount numeric(12, 2),
    updated_at timestamp with time zone
);
"""


def _seed_source(dsn: str, export_root: Path) -> None:
    """Load the expected end state of the export into the source."""
    state: dict = {}
    for path in sorted(export_root.rglob("*.parquet"), key=lambda p: ("LOAD" not in p.name, p.as_posix())):
        for row in pq.read_table(path).to_pylist():
            op = row.pop("Op", "I")
            row.pop("_dms_ingestion_timestamp", None)
            if op == "D":
                state.pop(row["id"], None)
            else:
                state[row["id"]] = row
    with psycopg.connect(dsn) as conn:
        conn.execute(_CREATE)
        with conn.cursor() as cur:
            cur.executemany(
                f"INSERT INTO {SCHEMA}.orders (id, status, amount, updated_at) VALUES (%s, %s, %s, %s)",
                [(r["id"], r["status"], r["amount"], r["updated_at"]) for r in state.values()],
            )


def _reset_target(dsn: str) -> None:
    with psycopg.connect(dsn) as conn:
        conn.execute(f"DROP SCHEMA IF EXISTS {SCHEMA} CASCADE")


@pytest.mark.asyncio
async def test_replay_then_diff_matches_source(tmp_path: Path, source_dsn, target_dsn, db_connection_available):
    if not db_connection_available:
        pytest.skip("Databases not available for integration tests")

    export_root = tmp_path / "export"
    generate_cdc_files.write_export(
        export_root,
        rows=GENERATED_ROWS,
        days=GENERATED_DAYS,
        changes_per_day=CHANGES_PER_DAY,
        start=date(2024, 2, 14),
        seed=11,
        database="mydb",
        schema=SCHEMA,
    )
    _seed_source(source_dsn, export_root)
    _reset_target(target_dsn)

    job = JobConfiguration(
        source_db_url=source_dsn,
        target_db_url=target_dsn,
        database_name="mydb",
        schema_name=SCHEMA,
        start_date="2024-02-14T00:00:00Z",
        chunk_size=CHUNK_SIZE,
        max_connections=4,
    )
    result = await run_job(
        job,
        settings=Settings(),
        object_store=LocalObjectStore(export_root),
        results_dir=tmp_path / "results",
    )

    assert result.failures == []
    assert result.fatal_error is None
    report = result.reports[0]
    assert report.status == "match"
    assert report.source_rows == report.target_rows
    assert result.exit_code() == EXIT_OK
    assert (tmp_path / "results" / "latest.json").exists()
