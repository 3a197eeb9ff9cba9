"""
Domain models for the CDC snapshot validator.

Hot-path values (one per decoded row or per window) are frozen dataclasses;
descriptors and reports are Pydantic models so they validate on construction
and serialize cleanly into the persisted JSON results.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from pathlib import PurePosixPath
from typing import Any, Dict, List, Mapping, Optional, Tuple

from pydantic import BaseModel, Field, model_validator

FULL_LOAD_MARKER = "LOAD"


class Operation(str, Enum):
    """Row operation carried by a CDC export row."""

    INSERT = "I"
    UPDATE = "U"
    DELETE = "D"

    @classmethod
    def from_code(cls, code: Any) -> "Operation":
        text = str(code).strip().upper() if code is not None else ""
        for member in cls:
            if text == member.value or text == member.name:
                return member
        raise ValueError(f"Unknown operation code {code!r}")


class DiscrepancyKind(str, Enum):
    MISSING_IN_TARGET = "missing_in_target"
    MISSING_IN_SOURCE = "missing_in_source"
    VALUE_MISMATCH = "value_mismatch"


class ColumnSpec(BaseModel):
    """A table column as reported by ``information_schema.columns``."""

    name: str
    data_type: str = Field(..., description="information_schema data_type.")
    udt_name: str = Field("", description="Underlying type name (e.g. geometry, _text).")

    model_config = {"frozen": True}

    @property
    def is_geometry(self) -> bool:
        return self.udt_name.lower() == "geometry"

    @property
    def ddl_type(self) -> str:
        """Type used when recreating the column in the target database."""
        if self.data_type.upper() == "ARRAY":
            return "text[]"
        if self.data_type.upper() == "USER-DEFINED" and self.udt_name:
            return self.udt_name
        return self.data_type


class TableDescriptor(BaseModel):
    """
    Schema of one table, introspected once per run and never changed after.
    """

    schema_name: str
    table_name: str
    columns: Tuple[ColumnSpec, ...]
    primary_key: Tuple[str, ...]

    model_config = {"frozen": True}

    @model_validator(mode="after")
    def _check_primary_key(self) -> "TableDescriptor":
        if not self.primary_key:
            raise ValueError(f"Table {self.table_name} has no primary key")
        names = {column.name for column in self.columns}
        missing = [key for key in self.primary_key if key not in names]
        if missing:
            raise ValueError(f"Primary key columns {missing} are not table columns")
        return self

    @property
    def qualified_name(self) -> str:
        return f"{self.schema_name}.{self.table_name}"

    @property
    def column_names(self) -> Tuple[str, ...]:
        return tuple(column.name for column in self.columns)

    @property
    def value_columns(self) -> Tuple[str, ...]:
        """Columns outside the primary key."""
        return tuple(name for name in self.column_names if name not in self.primary_key)

    def column(self, name: str) -> ColumnSpec:
        for column in self.columns:
            if column.name == name:
                return column
        raise KeyError(name)

    def key_of(self, row: Mapping[str, Any]) -> Tuple[Any, ...]:
        return tuple(row[name] for name in self.primary_key)


@dataclass(frozen=True)
class PartitionFile:
    """One candidate export object for a table."""

    key: str
    partition_date: Optional[date] = None

    @property
    def file_name(self) -> str:
        return PurePosixPath(self.key).name

    @property
    def is_full_load(self) -> bool:
        return FULL_LOAD_MARKER in self.file_name


@dataclass(frozen=True)
class ChangeRecord:
    """
    One decoded CDC row. ``sequence`` is the arrival ordinal across all files
    of a table and breaks ties between equal timestamps.
    """

    primary_key: Tuple[Any, ...]
    values: Mapping[str, Any]
    operation: Operation
    timestamp: datetime
    source: str
    sequence: int = 0

    def __post_init__(self) -> None:
        if any(part is None for part in self.primary_key):
            raise ValueError(f"Null primary key in record from {self.source}")

    @property
    def ordering_key(self) -> Tuple[datetime, int]:
        return (self.timestamp, self.sequence)


@dataclass
class ReplayCursor:
    """
    Replay progress for one table: count of terminal mutations committed and
    the last export file folded into the merge.
    """

    table: str
    offset: int = 0
    last_file: Optional[str] = None

    def advance(self, applied: int) -> None:
        if applied < 0:
            raise ValueError("Replay cursor only moves forward")
        self.offset += applied

    def restart(self, offset: int = 0) -> None:
        self.offset = offset
        self.last_file = None

    def export(self) -> Dict[str, Any]:
        return {"table": self.table, "offset": self.offset, "last_file": self.last_file}


@dataclass(frozen=True)
class DiffWindow:
    """
    A contiguous slice ``[start, start + size)`` of the source primary-key
    ordering. Key bounds are resolved when the window is fetched: lower is
    exclusive, upper inclusive, ``None`` means unbounded.
    """

    index: int
    start: int
    size: int
    lower_key: Optional[Tuple[Any, ...]] = None
    upper_key: Optional[Tuple[Any, ...]] = None

    @property
    def end(self) -> int:
        return self.start + self.size


class ColumnDifference(BaseModel):
    column: str
    source_value: Any = None
    target_value: Any = None

    model_config = {"frozen": True}


class Discrepancy(BaseModel):
    """
    One row-level mismatch. ``position`` is the row's ordinal in the source
    key order (for target-only rows, the ordinal it would occupy).
    """

    kind: DiscrepancyKind
    primary_key: Tuple[Any, ...]
    position: int = 0
    window_index: int = 0
    differences: Tuple[ColumnDifference, ...] = ()

    model_config = {"frozen": True}


class UnverifiedWindow(BaseModel):
    window_index: int
    start: int
    size: int
    error: str

    model_config = {"frozen": True}


class ValidationReport(BaseModel):
    """
    Aggregated comparison outcome for one table.

    Discrepancies and unverified windows are appended in window order and are
    never edited afterwards.
    """

    schema_name: str
    table_name: str
    source_rows: int = 0
    target_rows: int = 0
    start_position: int = 0
    chunk_size: int = 0
    windows_total: int = 0
    windows_verified: int = 0
    matched_rows: int = 0
    replayed_mutations: Optional[int] = None
    discrepancies: List[Discrepancy] = Field(default_factory=list)
    unverified_windows: List[UnverifiedWindow] = Field(default_factory=list)
    extra: Dict[str, Any] = Field(default_factory=dict)

    @property
    def qualified_name(self) -> str:
        return f"{self.schema_name}.{self.table_name}"

    @property
    def status(self) -> str:
        if self.discrepancies:
            return "mismatch"
        if self.unverified_windows:
            return "partial"
        return "match"

    def record_window(
        self, discrepancies: List[Discrepancy], matched_rows: int
    ) -> None:
        self.discrepancies.extend(discrepancies)
        self.matched_rows += matched_rows
        self.windows_verified += 1

    def record_unverified(self, window: UnverifiedWindow) -> None:
        self.unverified_windows.append(window)

    def count_by_kind(self) -> Dict[str, int]:
        counts = {kind.value: 0 for kind in DiscrepancyKind}
        for discrepancy in self.discrepancies:
            counts[discrepancy.kind.value] += 1
        return counts


__all__ = [
    "ChangeRecord",
    "ColumnDifference",
    "ColumnSpec",
    "DiffWindow",
    "Discrepancy",
    "DiscrepancyKind",
    "FULL_LOAD_MARKER",
    "Operation",
    "PartitionFile",
    "ReplayCursor",
    "TableDescriptor",
    "UnverifiedWindow",
    "ValidationReport",
]
