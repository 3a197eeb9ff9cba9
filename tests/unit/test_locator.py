from __future__ import annotations

from datetime import date

import pytest

from cdc_validator.config import JobConfiguration, LoadMode
from cdc_validator.domain.models import PartitionFile
from cdc_validator.engine.locator import (
    PartitionLocator,
    in_date_range,
    order_files,
    partition_date_of,
    table_prefix,
)
from cdc_validator.errors import StructuralError
from tests.fakes import FakeObjectStore

BASE = "cdc/mydb/public/orders/"
LOAD_KEY = BASE + "LOAD00000001.parquet"


def _job(**overrides) -> JobConfiguration:
    params = {
        "bucket_name": "exports",
        "s3_prefix": "cdc",
        "source_db_url": "postgresql://u:p@localhost:5432/mydb",
        "target_db_url": "postgresql://u:p@localhost:5438/mydb",
        "start_date": "2024-02-14T00:00:00Z",
        "stop_date": "2024-02-15T00:00:00Z",
    }
    params.update(overrides)
    return JobConfiguration(**params)


def _store() -> FakeObjectStore:
    keys = [
        LOAD_KEY,
        BASE + "2024/02/13/a.parquet",
        BASE + "2024/02/14/b.parquet",
        BASE + "2024/02/14/a.parquet",
        BASE + "2024/02/15/c.parquet",
        BASE + "2024/02/16/d.parquet",
        BASE + "2024/02/15/manifest.json",
    ]
    return FakeObjectStore({key: b"" for key in keys})


def test_table_prefix_skips_empty_parts():
    assert table_prefix("", "mydb", "public", "orders") == "mydb/public/orders/"
    assert table_prefix("/cdc/", "mydb", "public", "orders") == BASE


def test_partition_date_of_reads_layout():
    assert partition_date_of(BASE + "2024/02/14/a.parquet", BASE) == date(2024, 2, 14)
    assert partition_date_of(LOAD_KEY, BASE) is None


@pytest.mark.parametrize("key", [BASE + "2024/02/x.parquet", BASE + "2024/13/40/a.parquet"])
def test_partition_date_of_rejects_malformed_keys(key):
    with pytest.raises(StructuralError) as excinfo:
        partition_date_of(key, BASE)
    assert excinfo.value.file_key == key


def test_in_date_range_is_inclusive():
    start, stop = date(2024, 2, 14), date(2024, 2, 15)
    assert in_date_range(date(2024, 2, 14), start, stop)
    assert in_date_range(date(2024, 2, 15), start, stop)
    assert not in_date_range(date(2024, 2, 13), start, stop)
    assert not in_date_range(date(2024, 2, 16), start, stop)
    assert in_date_range(date(2030, 1, 1), start, None)


def test_order_files_puts_full_load_first():
    files = [
        PartitionFile(BASE + "2024/02/15/a.parquet", date(2024, 2, 15)),
        PartitionFile(BASE + "2024/02/14/b.parquet", date(2024, 2, 14)),
        PartitionFile(LOAD_KEY),
        PartitionFile(BASE + "2024/02/14/a.parquet", date(2024, 2, 14)),
    ]
    assert [f.key for f in order_files(files)] == [
        LOAD_KEY,
        BASE + "2024/02/14/a.parquet",
        BASE + "2024/02/14/b.parquet",
        BASE + "2024/02/15/a.parquet",
    ]


@pytest.mark.asyncio
async def test_date_aware_includes_both_boundaries_and_excludes_outside():
    store = _store()
    listing = await PartitionLocator(store, _job()).locate("orders")

    assert [f.key for f in listing] == [
        LOAD_KEY,
        BASE + "2024/02/14/a.parquet",
        BASE + "2024/02/14/b.parquet",
        BASE + "2024/02/15/c.parquet",
    ]
    assert store.list_calls == [(BASE, BASE + "2024/02/14/")]


@pytest.mark.asyncio
async def test_listing_is_restartable():
    listing = await PartitionLocator(_store(), _job()).locate("orders")
    assert list(listing) == list(listing)
    assert len(listing.full_load_files) == 1


@pytest.mark.asyncio
async def test_no_stop_date_means_no_upper_bound():
    listing = await PartitionLocator(_store(), _job(stop_date=None)).locate("orders")
    assert BASE + "2024/02/16/d.parquet" in [f.key for f in listing]


@pytest.mark.asyncio
async def test_full_load_only_selects_load_files():
    job = _job(mode=LoadMode.FULL_LOAD_ONLY, start_date=None, stop_date=None)
    listing = await PartitionLocator(_store(), job).locate("orders")
    assert [f.key for f in listing] == [LOAD_KEY]


@pytest.mark.asyncio
async def test_absolute_path_mode_uses_given_keys_without_listing():
    keys = ["anywhere/x.parquet", "elsewhere/y.parquet"]
    store = _store()
    job = _job(mode=LoadMode.ABSOLUTE_PATH, absolute_paths=keys)
    listing = await PartitionLocator(store, job).locate("orders")
    assert [f.key for f in listing] == keys
    assert store.list_calls == []


@pytest.mark.asyncio
async def test_malformed_key_fails_the_table():
    store = FakeObjectStore({BASE + "2024/02/14/nested/deeper/a.parquet": b""})
    with pytest.raises(StructuralError):
        await PartitionLocator(store, _job()).locate("orders")
