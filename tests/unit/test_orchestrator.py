from __future__ import annotations

import asyncio
import json
from collections import Counter
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from cdc_validator.config import JobConfiguration, Settings
from cdc_validator.domain.models import Discrepancy, DiscrepancyKind, UnverifiedWindow, ValidationReport
from cdc_validator.errors import ConnectionFailedError, ResourceExhaustedError
from cdc_validator.infrastructure.retry import NO_WAIT
from cdc_validator.orchestrator import (
    EXIT_FATAL,
    EXIT_MISMATCH,
    EXIT_OK,
    JobResult,
    JobRunner,
    _persist_results,
    run_job,
)
from tests.fakes import FakeObjectStore, FakeTableStore, cdc_row, make_descriptor, parquet_bytes

SOURCE_ROWS = [{"id": 1, "name": "a"}, {"id": 2, "name": "b"}]
ORDERS_DAY = "mydb/public/orders/2024/02/14/a.parquet"
ORDERS_NEXT_DAY = "mydb/public/orders/2024/02/15/a.parquet"
BROKEN_KEY = "mydb/public/customers/2024/02/14/a.parquet"
CUSTOMERS_DAY = "mydb/public/customers/2024/02/14/b.parquet"
T0 = datetime(2024, 2, 14, tzinfo=timezone.utc)


def _ts(seconds: int) -> str:
    return (T0 + timedelta(seconds=seconds)).strftime("%Y-%m-%d %H:%M:%S")


def _job(**overrides) -> JobConfiguration:
    params = {
        "bucket_name": "exports",
        "source_db_url": "postgresql://u:p@localhost:5432/mydb",
        "target_db_url": "postgresql://u:p@localhost:5438/mydb",
        "start_date": "2024-02-14T00:00:00Z",
        "chunk_size": 1,
        "extensions": ["postgis"],
    }
    params.update(overrides)
    return JobConfiguration(**params)


def _store() -> FakeObjectStore:
    return FakeObjectStore(
        {
            ORDERS_DAY: parquet_bytes(
                [cdc_row("I", 1, "a", _ts(1)), cdc_row("I", 2, "x", _ts(2))]
            ),
            ORDERS_NEXT_DAY: parquet_bytes(
                [cdc_row("U", 2, "b", _ts(3)), cdc_row("D", 3, None, _ts(4))]
            ),
            BROKEN_KEY: b"not a parquet file",
        }
    )


def _runner(job, source, target, store=None) -> JobRunner:
    return JobRunner(
        job,
        source=source,
        target=target,
        object_store=store,
        settings=Settings(),
        retry_policy=NO_WAIT,
    )


@pytest.mark.asyncio
async def test_runner_replays_and_validates_scenario():
    orders = make_descriptor("orders")
    source = FakeTableStore("source", [orders], rows={"orders": SOURCE_ROWS})
    target = FakeTableStore("target")

    result = await _runner(_job(), source, target, _store()).run()

    assert result.tables == ["orders"]
    assert result.failures == []
    report = result.reports[0]
    assert report.status == "match"
    assert report.windows_total == 2
    assert report.replayed_mutations == 3
    assert report.extra["replay"]["deletes"] == 1
    assert "profile" in report.extra
    assert target.created_schemas == ["public"]
    assert target.created_extensions == ["postgis"]
    assert target.created_tables == ["orders"]
    assert result.exit_code() == EXIT_OK


@pytest.mark.asyncio
async def test_broken_file_fails_only_its_table():
    orders = make_descriptor("orders")
    customers = make_descriptor("customers")
    source = FakeTableStore(
        "source", [orders, customers], rows={"orders": SOURCE_ROWS, "customers": []}
    )
    target = FakeTableStore("target")

    result = await _runner(_job(), source, target, _store()).run()

    assert [r.table_name for r in result.reports] == ["orders"]
    assert len(result.failures) == 1
    failure = result.failures[0]
    assert failure.table == "customers"
    assert failure.stage == "replay"
    assert failure.file_key == BROKEN_KEY
    assert failure.error_code == "STR001"
    assert result.exit_code() == EXIT_FATAL


@pytest.mark.asyncio
async def test_diff_only_skips_target_preparation_and_replay():
    orders = make_descriptor("orders")
    source = FakeTableStore("source", [orders], rows={"orders": SOURCE_ROWS})
    target = FakeTableStore("target", [orders], rows={"orders": SOURCE_ROWS[:1]})

    result = await _runner(_job(diff_only=True, start_date=None), source, target).run()

    assert target.created_schemas == []
    assert target.created_tables == []
    report = result.reports[0]
    assert report.replayed_mutations is None
    assert [d.primary_key for d in report.discrepancies] == [(2,)]
    assert result.exit_code() == EXIT_MISMATCH


@pytest.mark.asyncio
async def test_snapshot_only_produces_report_without_windows():
    orders = make_descriptor("orders")
    source = FakeTableStore("source", [orders], rows={"orders": SOURCE_ROWS})
    target = FakeTableStore("target")

    result = await _runner(_job(snapshot_only=True, included_tables=["orders"]), source, target, _store()).run()

    report = result.reports[0]
    assert report.windows_total == 0
    assert report.replayed_mutations == 3
    assert target.snapshot() == {(1,): {"id": 1, "name": "a"}, (2,): {"id": 2, "name": "b"}}


@pytest.mark.asyncio
async def test_run_fatal_error_aborts_the_run():
    class _UnreachableSource(FakeTableStore):
        async def get_table_descriptor(self, schema_name, table_name):
            raise ConnectionFailedError("Could not connect to the source database")

    orders = make_descriptor("orders")
    source = _UnreachableSource("source", [orders], rows={"orders": SOURCE_ROWS})

    result = await _runner(_job(), source, FakeTableStore("target"), _store()).run()

    assert result.fatal_error is not None
    assert "CON001" in result.fatal_error
    assert result.exit_code() == EXIT_FATAL


@pytest.mark.asyncio
async def test_pool_exhaustion_during_replay_keeps_resume_offsets():
    stalled = asyncio.Event()

    class _StarvedTarget(FakeTableStore):
        def __init__(self, name):
            super().__init__(name)
            self.calls = Counter()

        async def apply_batch(self, descriptor, upserts, deletes):
            self.calls[descriptor.table_name] += 1
            count = self.calls[descriptor.table_name]
            if descriptor.table_name == "customers" and count == 2:
                stalled.set()
                await asyncio.Event().wait()
            if descriptor.table_name == "orders" and count == 3:
                await stalled.wait()
                raise ResourceExhaustedError("Timed out waiting for a target connection")
            await super().apply_batch(descriptor, upserts, deletes)

    orders = make_descriptor("orders")
    customers = make_descriptor("customers")
    source = FakeTableStore(
        "source", [orders, customers], rows={"orders": SOURCE_ROWS, "customers": SOURCE_ROWS}
    )
    target = _StarvedTarget("target")
    store = _store()
    store.objects[CUSTOMERS_DAY] = parquet_bytes([cdc_row("I", k, f"c{k}", _ts(k)) for k in (1, 2, 3)])
    del store.objects[BROKEN_KEY]

    result = await _runner(_job(), source, target, store).run()

    assert target.snapshot("orders") == {(1,): {"id": 1, "name": "a"}, (2,): {"id": 2, "name": "b"}}
    assert "last_offset=2" in result.fatal_error
    by_table = {failure.table: failure for failure in result.failures}
    assert by_table["orders"].stage == "replay"
    assert by_table["orders"].last_offset == 2
    assert by_table["orders"].error_code == "RPL001"
    assert by_table["customers"].last_offset == 1
    assert by_table["customers"].file_key == CUSTOMERS_DAY
    assert result.exit_code() == EXIT_FATAL


@pytest.mark.asyncio
async def test_unexpected_error_before_tables_still_yields_result():
    class _DeniedSource(FakeTableStore):
        async def get_tables_in_schema(self, schema_name, included_tables=(), excluded_tables=()):
            raise RuntimeError("permission denied for schema public")

    source = _DeniedSource("source", [make_descriptor("orders")])

    result = await _runner(_job(), source, FakeTableStore("target"), _store()).run()

    assert result.tables == []
    assert result.fatal_error == "RuntimeError: permission denied for schema public"
    assert result.finished_at is not None
    assert result.exit_code() == EXIT_FATAL


def test_exit_code_policy_for_unverified_windows():
    report = ValidationReport(schema_name="public", table_name="orders")
    report.record_unverified(UnverifiedWindow(window_index=0, start=0, size=10, error="timeout"))
    result = JobResult(started_at=T0, reports=[report])

    assert result.exit_code() == EXIT_OK
    assert result.exit_code(fail_on_unverified=True) == EXIT_MISMATCH


def test_persist_results_writes_latest_and_archive(tmp_path: Path):
    report = ValidationReport(schema_name="public", table_name="orders", source_rows=1)
    report.record_window(
        [Discrepancy(kind=DiscrepancyKind.MISSING_IN_TARGET, primary_key=(1,), position=0)], 0
    )
    payload = JobResult(started_at=T0, tables=["orders"], reports=[report]).as_dict()

    _persist_results(payload, tmp_path)

    latest = json.loads((tmp_path / "latest.json").read_text(encoding="utf-8"))
    assert latest["reports"][0]["status"] == "mismatch"
    assert latest["reports"][0]["discrepancies"][0]["kind"] == "missing_in_target"
    assert len(list(tmp_path.glob("run-*.json"))) == 1


class _FailingPools:
    async def __aenter__(self):
        raise ConnectionFailedError("Could not connect to the source database")

    async def __aexit__(self, exc_type, exc, tb):
        return None


@pytest.mark.asyncio
async def test_run_job_records_connection_failure(tmp_path: Path):
    result = await run_job(
        _job(),
        settings=Settings(),
        object_store=_store(),
        pools=_FailingPools(),
        results_dir=tmp_path,
    )

    assert result.exit_code() == EXIT_FATAL
    assert json.loads((tmp_path / "latest.json").read_text(encoding="utf-8"))["fatal_error"]
