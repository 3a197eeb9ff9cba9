"""
Partition Locator: select the export files that feed one table's replay.

Object layout (DMS-style export):

    {prefix}/{database}/{schema}/{table}/LOAD00000001.parquet        full load
    {prefix}/{database}/{schema}/{table}/{YYYY}/{MM}/{DD}/*.parquet  CDC files

Modes:
- date-aware: full-load files plus CDC files whose partition date lies in
  ``[start_date, stop_date]`` (both inclusive, by calendar date; no stop date
  means no upper bound).
- absolute-path: exactly the keys the caller supplied, no filtering.
- full-load-only: only the full-load files.

The result is ordered full-load files first, then by partition date ascending
and lexical key within a partition. Within-partition file order says nothing
about event order; the lexical tie-break only makes runs reproducible.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date
from typing import Iterator, List, Optional, Sequence, Tuple

from cdc_validator.config import JobConfiguration, LoadMode
from cdc_validator.domain.models import PartitionFile
from cdc_validator.engine.abstract import ObjectStore
from cdc_validator.errors import StructuralError
from cdc_validator.utils.logging import get_logger

log = get_logger(__name__)

PARQUET_SUFFIX = ".parquet"

_DATE_PATH = re.compile(r"^(?P<year>\d{4})/(?P<month>\d{2})/(?P<day>\d{2})/[^/]+$")


@dataclass(frozen=True)
class FileListing:
    """
    Ordered, restartable selection of export files for one table.

    Iterating it twice yields the same files in the same order.
    """

    table: str
    files: Tuple[PartitionFile, ...]

    def __iter__(self) -> Iterator[PartitionFile]:
        return iter(self.files)

    def __len__(self) -> int:
        return len(self.files)

    @property
    def full_load_files(self) -> Tuple[PartitionFile, ...]:
        return tuple(f for f in self.files if f.is_full_load)


def table_prefix(prefix: str, database: str, schema: str, table: str) -> str:
    parts = [p.strip("/") for p in (prefix, database, schema, table) if p and p.strip("/")]
    return "/".join(parts) + "/"


def partition_date_of(key: str, base_prefix: str) -> Optional[date]:
    """
    Partition date encoded in ``key`` below ``base_prefix``.

    Returns None for full-load files sitting directly under the table prefix.
    Raises StructuralError for any other layout.
    """
    relative = key[len(base_prefix):] if key.startswith(base_prefix) else key
    if "/" not in relative:
        return None
    match = _DATE_PATH.match(relative)
    if not match:
        raise StructuralError("Object key does not follow the YYYY/MM/DD partition layout", file_key=key)
    try:
        return date(int(match["year"]), int(match["month"]), int(match["day"]))
    except ValueError as exc:
        raise StructuralError(f"Invalid partition date: {exc}", file_key=key) from exc


def order_files(files: Sequence[PartitionFile]) -> List[PartitionFile]:
    """Full-load files first, then partition date ascending, then key."""
    return sorted(
        files,
        key=lambda f: (
            0 if f.is_full_load else 1,
            f.partition_date or date.min,
            f.key,
        ),
    )


def in_date_range(partition: date, start: Optional[date], stop: Optional[date]) -> bool:
    if start is not None and partition < start:
        return False
    if stop is not None and partition > stop:
        return False
    return True


class PartitionLocator:
    """
    Enumerates candidate object keys for a table under the configured mode.

    Listing retries live in the object store; if they are exhausted the error
    propagates and aborts this table only.
    """

    def __init__(self, store: ObjectStore, job: JobConfiguration) -> None:
        self.store = store
        self.job = job

    def base_prefix(self, table: str) -> str:
        return table_prefix(
            self.job.s3_prefix,
            self.job.resolved_database_name,
            self.job.schema_name,
            table,
        )

    async def locate(self, table: str) -> FileListing:
        if self.job.mode is LoadMode.ABSOLUTE_PATH:
            files = [PartitionFile(key=key) for key in self.job.absolute_paths]
            return FileListing(table=table, files=tuple(files))

        base = self.base_prefix(table)
        start_after = None
        if self.job.mode is LoadMode.DATE_AWARE and self.job.start_date is not None:
            # Keys sort as base/YYYY/MM/DD/..., and LOAD files sort after the digits.
            start_after = base + self.job.start_date.strftime("%Y/%m/%d/")
        objects = await self.store.list(base, start_after=start_after)

        start = self.job.start_date.date() if self.job.start_date else None
        stop = self.job.stop_date.date() if self.job.stop_date else None

        selected: List[PartitionFile] = []
        for obj in objects:
            if not obj.key.endswith(PARQUET_SUFFIX):
                log.debug("Skipping non-parquet object", extra={"key": obj.key, "table": table})
                continue
            candidate = PartitionFile(key=obj.key, partition_date=partition_date_of(obj.key, base))
            if candidate.is_full_load:
                selected.append(candidate)
                continue
            if self.job.mode is LoadMode.FULL_LOAD_ONLY:
                continue
            if candidate.partition_date is None:
                raise StructuralError(
                    "CDC file is missing a partition date", file_key=obj.key, table=table
                )
            if in_date_range(candidate.partition_date, start, stop):
                selected.append(candidate)

        listing = FileListing(table=table, files=tuple(order_files(selected)))
        log.info(
            f"Files to process for table {table}: {len(listing)}",
            extra={
                "table": table,
                "files": len(listing),
                "full_load_files": len(listing.full_load_files),
                "mode": self.job.mode.value,
            },
        )
        return listing


__all__ = [
    "FileListing",
    "PartitionLocator",
    "in_date_range",
    "order_files",
    "partition_date_of",
    "table_prefix",
]
