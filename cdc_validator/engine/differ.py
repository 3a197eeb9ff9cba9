"""
Chunked Diff Orchestrator: compare the source and target tables window by
window and aggregate the outcome into one ValidationReport.

Windows are planned over the source primary-key order. Window ``i`` covers
source ordinals ``[S + i*C, S + (i+1)*C)`` and, on the key axis, the range
``(key at start-1, key at end-1]``. The first window is unbounded below when
it starts at ordinal 0 and the last window is unbounded above, so every
target row falls into exactly one window whatever the starting offset.

Windows are dispatched in ascending order with bounded concurrency. A window
whose fetches keep failing transiently is recorded as unverified; pool
exhaustion and connection failures abort the whole comparison.
"""

from __future__ import annotations

import asyncio
from bisect import bisect_left
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from cdc_validator.domain.models import (
    ColumnDifference,
    DiffWindow,
    Discrepancy,
    DiscrepancyKind,
    TableDescriptor,
    UnverifiedWindow,
    ValidationReport,
)
from cdc_validator.engine.abstract import Key, Row, TableDiffer, TableStore
from cdc_validator.errors import TransientIOError
from cdc_validator.infrastructure.retry import RetryPolicy
from cdc_validator.utils.logging import get_logger

log = get_logger(__name__)

# Collaborators already retry each query; a window is only re-read once more
# before it is recorded as unverified.
WINDOW_ATTEMPTS = 2


def plan_windows(total: int, start: int, chunk_size: int) -> List[DiffWindow]:
    """
    Split source ordinals ``[start, total)`` into windows of ``chunk_size``.

    The last window holds the remainder. When ``start == total`` a single
    empty tail window remains so target rows past the last source key are
    still compared.
    """
    if chunk_size <= 0:
        raise ValueError("chunk_size must be greater than 0")
    if start < 0:
        raise ValueError("start must not be negative")
    if start > total:
        return []
    if start == total:
        return [DiffWindow(index=0, start=start, size=0)]
    windows = []
    for index, offset in enumerate(range(start, total, chunk_size)):
        windows.append(DiffWindow(index=index, start=offset, size=min(chunk_size, total - offset)))
    return windows


def normalize_value(value: Any) -> Any:
    """Bring equal values from both databases to one comparable form."""
    if isinstance(value, float):
        return Decimal(repr(value))
    if isinstance(value, Decimal):
        return value.normalize() if value.is_finite() else value
    if isinstance(value, datetime) and value.tzinfo is not None:
        return value.astimezone(timezone.utc)
    if isinstance(value, (memoryview, bytearray)):
        return bytes(value)
    if isinstance(value, list):
        return tuple(normalize_value(item) for item in value)
    return value


def _json_safe(value: Any) -> Any:
    if isinstance(value, bytes):
        return value.hex()
    return value


class RowSliceDiffer:
    """
    Default row-set comparison for one window.

    Rows are matched on primary key. Source rows missing from the target,
    target rows absent from the source and rows whose column values differ
    become discrepancies. Results are ordered by position.
    """

    def compare(
        self,
        descriptor: TableDescriptor,
        source_rows: Sequence[Row],
        target_rows: Sequence[Row],
        base_position: int,
        window_index: int,
    ) -> List[Discrepancy]:
        target_by_key: Dict[Key, Row] = {}
        for row in target_rows:
            target_by_key[descriptor.key_of(row)] = row

        ordered: List[Tuple[int, int, int, Discrepancy]] = []
        source_keys = []
        for offset, row in enumerate(source_rows):
            key = descriptor.key_of(row)
            source_keys.append(key)
            position = base_position + offset
            other = target_by_key.pop(key, None)
            if other is None:
                found = Discrepancy(
                    kind=DiscrepancyKind.MISSING_IN_TARGET,
                    primary_key=key,
                    position=position,
                    window_index=window_index,
                )
            else:
                differences = self._differences(descriptor, row, other)
                if not differences:
                    continue
                found = Discrepancy(
                    kind=DiscrepancyKind.VALUE_MISMATCH,
                    primary_key=key,
                    position=position,
                    window_index=window_index,
                    differences=differences,
                )
            ordered.append((position, 1, offset, found))

        sorted_keys = sorted(source_keys)
        for arrival, (key, _row) in enumerate(target_by_key.items()):
            position = base_position + bisect_left(sorted_keys, key)
            ordered.append(
                (
                    position,
                    0,
                    arrival,
                    Discrepancy(
                        kind=DiscrepancyKind.MISSING_IN_SOURCE,
                        primary_key=key,
                        position=position,
                        window_index=window_index,
                    ),
                )
            )

        ordered.sort(key=lambda item: item[:3])
        return [item[3] for item in ordered]

    @staticmethod
    def _differences(descriptor: TableDescriptor, source: Row, target: Row) -> Tuple[ColumnDifference, ...]:
        differences = []
        for name in descriptor.value_columns:
            left, right = source.get(name), target.get(name)
            if normalize_value(left) != normalize_value(right):
                differences.append(
                    ColumnDifference(
                        column=name,
                        source_value=_json_safe(left),
                        target_value=_json_safe(right),
                    )
                )
        return tuple(differences)


@dataclass(frozen=True)
class _Verified:
    discrepancies: List[Discrepancy]
    matched_rows: int


WindowOutcome = Union[_Verified, UnverifiedWindow]


class ChunkedDiffOrchestrator:
    """
    Compares one table between two databases in resumable windows.

    Parameters
    ----------
    source, target : TableStore
        Authoritative and candidate databases.
    chunk_size : int
        Rows per window.
    start_position : int
        Source ordinal to resume from.
    max_concurrency : int
        Windows in flight at once; also bounded by ``limiter`` when given.
    differ : TableDiffer, optional
        Row-set comparison collaborator (defaults to ``RowSliceDiffer``).
    retry_policy : RetryPolicy, optional
        Backoff between window re-reads; its attempt count is capped at
        ``window_attempts``.
    window_attempts : int
        Times a window is read before it is recorded as unverified.
    limiter : asyncio.Semaphore, optional
        Shared across tables so all comparisons together stay within the
        connection budget.
    """

    def __init__(
        self,
        source: TableStore,
        target: TableStore,
        chunk_size: int,
        start_position: int = 0,
        max_concurrency: int = 100,
        differ: Optional[TableDiffer] = None,
        retry_policy: Optional[RetryPolicy] = None,
        limiter: Optional[asyncio.Semaphore] = None,
        window_attempts: int = WINDOW_ATTEMPTS,
    ) -> None:
        if max_concurrency <= 0:
            raise ValueError("max_concurrency must be greater than 0")
        self.source = source
        self.target = target
        self.chunk_size = chunk_size
        self.start_position = start_position
        self.max_concurrency = max_concurrency
        self.differ = differ or RowSliceDiffer()
        policy = retry_policy or RetryPolicy.from_settings()
        self.retry_policy = replace(policy, attempts=max(1, min(policy.attempts, window_attempts)))
        self.limiter = limiter

    async def run(self, descriptor: TableDescriptor, replayed_mutations: Optional[int] = None) -> ValidationReport:
        source_total = await self.source.count_rows(descriptor)
        target_total = await self.target.count_rows(descriptor)
        windows = plan_windows(source_total, self.start_position, self.chunk_size)
        last_index = len(windows) - 1

        report = ValidationReport(
            schema_name=descriptor.schema_name,
            table_name=descriptor.table_name,
            source_rows=source_total,
            target_rows=target_total,
            start_position=self.start_position,
            chunk_size=self.chunk_size,
            windows_total=len(windows),
            replayed_mutations=replayed_mutations,
        )
        log.info(
            f"[DIFF START] {descriptor.qualified_name}",
            extra={
                "table": descriptor.qualified_name,
                "source_rows": source_total,
                "target_rows": target_total,
                "windows": len(windows),
                "start_position": self.start_position,
            },
        )

        outcomes: Dict[int, WindowOutcome] = {}
        semaphore = asyncio.Semaphore(min(self.max_concurrency, max(len(windows), 1)))

        async def _worker(window: DiffWindow) -> None:
            async with semaphore:
                if self.limiter is not None:
                    async with self.limiter:
                        outcomes[window.index] = await self._run_window(
                            descriptor, window, window.index == last_index
                        )
                else:
                    outcomes[window.index] = await self._run_window(
                        descriptor, window, window.index == last_index
                    )

        try:
            async with asyncio.TaskGroup() as group:
                for window in windows:
                    group.create_task(_worker(window))
        except ExceptionGroup as errors:
            raise errors.exceptions[0] from None

        for window in windows:
            outcome = outcomes[window.index]
            if isinstance(outcome, UnverifiedWindow):
                report.record_unverified(outcome)
            else:
                report.record_window(outcome.discrepancies, outcome.matched_rows)

        log.info(
            f"[DIFF DONE] {descriptor.qualified_name}",
            extra={
                "table": descriptor.qualified_name,
                "status": report.status,
                "matched_rows": report.matched_rows,
                "discrepancies": len(report.discrepancies),
                "unverified_windows": len(report.unverified_windows),
            },
        )
        return report

    async def _run_window(self, descriptor: TableDescriptor, window: DiffWindow, is_last: bool) -> WindowOutcome:
        try:
            async for attempt in self.retry_policy.retrying((TransientIOError,)):
                with attempt:
                    return await self._verify(descriptor, window, is_last)
        except TransientIOError as exc:
            log.warning(
                f"[WINDOW UNVERIFIED] {descriptor.qualified_name}",
                extra={
                    "table": descriptor.qualified_name,
                    "window": window.index,
                    "start": window.start,
                    "size": window.size,
                    "error": str(exc),
                },
            )
            return UnverifiedWindow(
                window_index=window.index, start=window.start, size=window.size, error=str(exc)
            )
        raise AssertionError("unreachable")  # pragma: no cover

    async def _verify(self, descriptor: TableDescriptor, window: DiffWindow, is_last: bool) -> _Verified:
        source_rows: List[Row] = []
        if window.size:
            source_rows = await self.source.fetch_slice(descriptor, window.start, window.size)
            if len(source_rows) != window.size and not is_last:
                raise TransientIOError(
                    "Source slice shorter than planned",
                    {"table": descriptor.qualified_name, "window": window.index, "rows": len(source_rows)},
                )
        lower = None
        if window.start > 0:
            lower = await self.source.fetch_key_at(descriptor, window.start - 1)
        upper = None if is_last else descriptor.key_of(source_rows[-1])
        bounded = DiffWindow(
            index=window.index, start=window.start, size=window.size, lower_key=lower, upper_key=upper
        )
        target_rows = await self.target.fetch_range(descriptor, bounded.lower_key, bounded.upper_key)
        discrepancies = self.differ.compare(
            descriptor, source_rows, target_rows, window.start, window.index
        )
        mismatched = {
            d.primary_key for d in discrepancies if d.kind is not DiscrepancyKind.MISSING_IN_SOURCE
        }
        log.debug(
            "Window compared",
            extra={
                "table": descriptor.qualified_name,
                "window": window.index,
                "source": len(source_rows),
                "target": len(target_rows),
                "discrepancies": len(discrepancies),
            },
        )
        return _Verified(discrepancies=discrepancies, matched_rows=len(source_rows) - len(mismatched))


__all__ = [
    "ChunkedDiffOrchestrator",
    "RowSliceDiffer",
    "WINDOW_ATTEMPTS",
    "normalize_value",
    "plan_windows",
]
