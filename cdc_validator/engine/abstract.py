"""
Capability interfaces for the CDC snapshot validator engine.

The engine talks to four collaborators through small fixed operation sets:

- ObjectStore: ``list`` / ``fetch`` export objects
- ChangeDecoder: decode one export file into typed rows plus metadata
- TableStore: the database operations replay and diff need
- TableDiffer: compare two row slices of one key range

Production implementations live in ``cdc_validator.infrastructure`` and
``cdc_validator.engine``; tests provide in-memory variants of the same
protocols.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import (
    Any,
    Dict,
    Iterator,
    List,
    Mapping,
    Optional,
    Protocol,
    Sequence,
    Tuple,
    runtime_checkable,
)

from cdc_validator.domain.models import Discrepancy, TableDescriptor

Row = Dict[str, Any]
Key = Tuple[Any, ...]


@dataclass(frozen=True)
class ObjectInfo:
    """Listing entry returned by an object store."""

    key: str
    last_modified: Optional[datetime] = None
    size: int = 0


@dataclass(frozen=True)
class DecodedRow:
    """One decoded export row: payload columns plus raw metadata values."""

    values: Row
    operation: Any
    timestamp: Any


@runtime_checkable
class ObjectStore(Protocol):
    """
    Object storage capability.

    Both operations raise TransientIOError for retryable failures and
    ObjectStoreError for fatal ones.
    """

    async def list(self, prefix: str, start_after: Optional[str] = None) -> List[ObjectInfo]:
        """Return every object under ``prefix`` (keys greater than ``start_after``)."""
        ...

    async def fetch(self, key: str) -> bytes:
        """Return the full body of one object."""
        ...


@runtime_checkable
class ChangeDecoder(Protocol):
    """Columnar file decoding capability; fails with StructuralError."""

    def decode(self, payload: bytes, descriptor: TableDescriptor, file_key: str) -> Iterator[DecodedRow]:
        ...


@runtime_checkable
class TableStore(Protocol):
    """Database operations used by the replay engine and the diff orchestrator."""

    name: str

    async def apply_batch(
        self,
        descriptor: TableDescriptor,
        upserts: Sequence[Mapping[str, Any]],
        deletes: Sequence[Key],
    ) -> None:
        ...

    async def count_rows(self, descriptor: TableDescriptor) -> int:
        ...

    async def fetch_slice(self, descriptor: TableDescriptor, offset: int, limit: int) -> List[Row]:
        ...

    async def fetch_key_at(self, descriptor: TableDescriptor, offset: int) -> Optional[Key]:
        ...

    async def fetch_range(
        self, descriptor: TableDescriptor, lower: Optional[Key], upper: Optional[Key]
    ) -> List[Row]:
        ...


@runtime_checkable
class TableDiffer(Protocol):
    """
    Row-set comparison capability for one window.

    ``source_rows`` are in key order and ``base_position`` is the source
    ordinal of the first of them; returned discrepancies carry positions and
    the window index and are in key order.
    """

    def compare(
        self,
        descriptor: TableDescriptor,
        source_rows: Sequence[Row],
        target_rows: Sequence[Row],
        base_position: int,
        window_index: int,
    ) -> List[Discrepancy]:
        ...


__all__ = [
    "ChangeDecoder",
    "DecodedRow",
    "Key",
    "ObjectInfo",
    "ObjectStore",
    "Row",
    "TableDiffer",
    "TableStore",
]
