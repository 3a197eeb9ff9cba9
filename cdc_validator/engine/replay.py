"""
Snapshot Replay Engine: fold every selected export file of a table into its
point-in-time state and materialize that state in the target database.

Files are not globally timestamp ordered, so records are grouped by primary
key and only the terminal record of each key survives the merge. Ordering is
``(ingestion timestamp, arrival sequence)``; on equal timestamps the record
that arrived later (locator order, then row order inside the file) wins.

The surviving mutations are applied in primary-key order, ``chunk_size`` at a
time, each batch in its own transaction. ``start_position`` counts terminal
mutations in that order, so a resumed run skips exactly the batches an
earlier run already committed.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

from cdc_validator.domain.models import (
    ChangeRecord,
    Operation,
    PartitionFile,
    ReplayCursor,
    TableDescriptor,
)
from cdc_validator.engine.abstract import Key, TableStore
from cdc_validator.engine.reader import CdcReader
from cdc_validator.errors import CdcValidatorError, ReplayAbortedError
from cdc_validator.utils.logging import get_logger

log = get_logger(__name__)


@dataclass
class MergeResult:
    """Terminal record per key plus bookkeeping from the merge pass."""

    terminal: Dict[Key, ChangeRecord] = field(default_factory=dict)
    files: int = 0
    records: int = 0
    timestamp_ties: int = 0
    last_file: Optional[str] = None

    def mutations(self) -> List[ChangeRecord]:
        """Terminal records in primary-key order."""
        return [self.terminal[key] for key in sorted(self.terminal)]


@dataclass
class ReplayResult:
    table: str
    files: int
    records: int
    mutations: int
    applied: int
    upserts: int
    deletes: int
    batches: int
    cursor: ReplayCursor

    def as_dict(self) -> dict:
        return {
            "files": self.files,
            "records": self.records,
            "mutations": self.mutations,
            "applied": self.applied,
            "upserts": self.upserts,
            "deletes": self.deletes,
            "batches": self.batches,
            "cursor": self.cursor.export(),
        }


def fold_records(records: Iterable[ChangeRecord], merge: Optional[MergeResult] = None) -> MergeResult:
    """
    Fold records into ``merge`` keeping the latest record per key.

    Records must be supplied in arrival order (their ``sequence`` grows), so
    a record with a timestamp equal to the stored one replaces it.
    """
    merge = merge or MergeResult()
    for record in records:
        merge.records += 1
        current = merge.terminal.get(record.primary_key)
        if current is None or record.ordering_key >= current.ordering_key:
            if (
                current is not None
                and record.timestamp == current.timestamp
                and record.source != current.source
            ):
                merge.timestamp_ties += 1
            merge.terminal[record.primary_key] = record
    return merge


def iter_batches(mutations: Sequence[ChangeRecord], size: int) -> Iterator[Sequence[ChangeRecord]]:
    for offset in range(0, len(mutations), size):
        yield mutations[offset : offset + size]


def split_batch(batch: Sequence[ChangeRecord]) -> Tuple[List[dict], List[Key]]:
    """Upsert payloads and delete keys for one batch."""
    upserts: List[dict] = []
    deletes: List[Key] = []
    for record in batch:
        if record.operation is Operation.DELETE:
            deletes.append(record.primary_key)
        else:
            upserts.append(dict(record.values))
    return upserts, deletes


class SnapshotReplayEngine:
    """
    Reconstructs one table's state in the target from its export files.

    Parameters
    ----------
    reader : CdcReader
        Fetches and decodes export files.
    target : TableStore
        Database receiving the mutations.
    chunk_size : int
        Mutations per committed batch.
    start_position : int
        Number of terminal mutations to skip (already applied by a prior run).
    """

    def __init__(
        self,
        reader: CdcReader,
        target: TableStore,
        chunk_size: int,
        start_position: int = 0,
    ) -> None:
        if chunk_size <= 0:
            raise ValueError("chunk_size must be greater than 0")
        if start_position < 0:
            raise ValueError("start_position must not be negative")
        self.reader = reader
        self.target = target
        self.chunk_size = chunk_size
        self.start_position = start_position
        # Progress of the current replay, readable if the run is cancelled.
        self.cursor: Optional[ReplayCursor] = None

    async def merge(self, files: Iterable[PartitionFile], descriptor: TableDescriptor) -> MergeResult:
        merge = MergeResult()
        sequence = 0
        for file in files:
            records = await self.reader.read(file, descriptor, sequence_start=sequence)
            before = merge.records
            fold_records(records, merge)
            sequence += merge.records - before
            merge.files += 1
            merge.last_file = file.key
        if merge.timestamp_ties:
            log.warning(
                "Equal ingestion timestamps for the same key across files; later arrival wins",
                extra={"table": descriptor.qualified_name, "ties": merge.timestamp_ties},
            )
        return merge

    async def replay(self, files: Iterable[PartitionFile], descriptor: TableDescriptor) -> ReplayResult:
        table = descriptor.qualified_name
        merge = await self.merge(files, descriptor)
        mutations = merge.mutations()
        cursor = ReplayCursor(table=table, offset=min(self.start_position, len(mutations)))
        cursor.last_file = merge.last_file
        self.cursor = cursor

        pending = mutations[cursor.offset :]
        log.info(
            f"[REPLAY START] {table}",
            extra={
                "table": table,
                "files": merge.files,
                "records": merge.records,
                "mutations": len(mutations),
                "start_position": cursor.offset,
            },
        )

        upserts_total = deletes_total = batches = 0
        for batch in iter_batches(pending, self.chunk_size):
            upserts, deletes = split_batch(batch)
            try:
                await self.target.apply_batch(descriptor, upserts, deletes)
            except Exception as exc:
                raise self._aborted(table, cursor, exc) from exc
            cursor.advance(len(batch))
            upserts_total += len(upserts)
            deletes_total += len(deletes)
            batches += 1
            log.debug(
                f"[REPLAY BATCH] {table}",
                extra={"table": table, "offset": cursor.offset, "upserts": len(upserts), "deletes": len(deletes)},
            )

        result = ReplayResult(
            table=table,
            files=merge.files,
            records=merge.records,
            mutations=len(mutations),
            applied=len(pending),
            upserts=upserts_total,
            deletes=deletes_total,
            batches=batches,
            cursor=cursor,
        )
        log.info(f"[REPLAY DONE] {table}", extra={"table": table, **result.as_dict()})
        return result

    @staticmethod
    def _aborted(table: str, cursor: ReplayCursor, exc: Exception) -> ReplayAbortedError:
        run_fatal = isinstance(exc, CdcValidatorError) and exc.run_fatal
        log.error(
            f"[REPLAY ABORTED] {table}",
            extra={"table": table, "last_offset": cursor.offset, "run_fatal": run_fatal, "error": str(exc)},
        )
        return ReplayAbortedError(
            f"Replay of {table} stopped after {cursor.offset} mutations",
            table=table,
            last_offset=cursor.offset,
            cause=str(exc),
            run_fatal=run_fatal,
            cause_code=exc.error_code if isinstance(exc, CdcValidatorError) else None,
        )


__all__ = [
    "MergeResult",
    "ReplayResult",
    "SnapshotReplayEngine",
    "fold_records",
    "iter_batches",
    "split_batch",
]
