"""
Columnar CDC Reader: decode one export file into ChangeRecords.

``ParquetChangeDecoder`` is the columnar decode collaborator (pyarrow): it
checks the file's columns against the TableDescriptor and yields raw rows
plus the operation and ingestion-timestamp metadata. ``CdcReader`` fetches
the object, drives the decoder lazily and turns each row into a typed
ChangeRecord (decimal, timezone-aware timestamp, date, string ...).

Any decoding problem is a StructuralError naming the file: a silently
dropped file would corrupt the reconstructed table without anyone noticing.
"""

from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Iterator, Optional

import pyarrow as pa
import pyarrow.parquet as pq

from cdc_validator.config import get_settings, parse_timestamp
from cdc_validator.domain.models import (
    FULL_LOAD_MARKER,
    ChangeRecord,
    ColumnSpec,
    Operation,
    PartitionFile,
    TableDescriptor,
)
from cdc_validator.engine.abstract import ChangeDecoder, DecodedRow, ObjectStore
from cdc_validator.errors import StructuralError
from cdc_validator.utils.logging import get_logger

log = get_logger(__name__)

# Full-load rows without an ingestion timestamp sort before every CDC record.
FULL_LOAD_TIMESTAMP = datetime.min.replace(tzinfo=timezone.utc)

_TRUE_STRINGS = frozenset({"t", "true", "1", "y", "yes"})
_FALSE_STRINGS = frozenset({"f", "false", "0", "n", "no"})


class ParquetChangeDecoder:
    """Decode Parquet export files with pyarrow, one record batch at a time."""

    def __init__(self, op_column: Optional[str] = None, timestamp_column: Optional[str] = None) -> None:
        settings = get_settings()
        self.op_column = op_column or settings.op_column
        self.timestamp_column = timestamp_column or settings.timestamp_column

    def decode(self, payload: bytes, descriptor: TableDescriptor, file_key: str) -> Iterator[DecodedRow]:
        try:
            parquet_file = pq.ParquetFile(pa.BufferReader(payload))
        except (pa.ArrowException, OSError) as exc:
            raise StructuralError(
                f"Unreadable Parquet file: {exc}", file_key=file_key, table=descriptor.table_name
            ) from exc

        names = parquet_file.schema_arrow.names
        meta = {self.op_column, self.timestamp_column}
        data_columns = [name for name in names if name not in meta]
        self._check_columns(names, data_columns, descriptor, file_key)

        try:
            for batch in parquet_file.iter_batches():
                for row in batch.to_pylist():
                    yield DecodedRow(
                        values={name: row[name] for name in data_columns},
                        operation=row.get(self.op_column),
                        timestamp=row.get(self.timestamp_column),
                    )
        except (pa.ArrowException, OSError) as exc:
            raise StructuralError(
                f"Truncated or corrupt Parquet data: {exc}",
                file_key=file_key,
                table=descriptor.table_name,
            ) from exc

    def _check_columns(self, names, data_columns, descriptor: TableDescriptor, file_key: str) -> None:
        is_full_load = FULL_LOAD_MARKER in file_key.rsplit("/", 1)[-1]
        if not is_full_load:
            for required in (self.op_column, self.timestamp_column):
                if required not in names:
                    raise StructuralError(
                        f"CDC file has no '{required}' column",
                        file_key=file_key,
                        table=descriptor.table_name,
                    )
        known = set(descriptor.column_names)
        unknown = [name for name in data_columns if name not in known]
        if unknown:
            raise StructuralError(
                "Schema of table is not the same as the schema of the Parquet file",
                file_key=file_key,
                table=descriptor.table_name,
                details={"unknown_columns": unknown},
            )
        missing = [name for name in descriptor.column_names if name not in data_columns]
        if missing:
            raise StructuralError(
                "Parquet file is missing table columns",
                file_key=file_key,
                table=descriptor.table_name,
                details={"missing_columns": missing},
            )


def coerce_value(value: Any, column: ColumnSpec) -> Any:
    """Convert a decoded value to the Python type matching the column type."""
    if value is None:
        return None
    data_type = column.data_type.lower()
    if data_type in {"numeric", "decimal"}:
        if isinstance(value, Decimal):
            return value
        try:
            return Decimal(str(value))
        except InvalidOperation as exc:
            raise ValueError(f"{column.name}: not a decimal: {value!r}") from exc
    if data_type.startswith("timestamp"):
        if isinstance(value, str):
            value = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        if not isinstance(value, datetime):
            raise ValueError(f"{column.name}: not a timestamp: {value!r}")
        if "with time zone" in data_type:
            return parse_timestamp(value)
        return value.replace(tzinfo=None) if value.tzinfo else value
    if data_type == "date":
        if isinstance(value, datetime):
            return value.date()
        if isinstance(value, str):
            return date.fromisoformat(value.strip())
        return value
    if data_type in {"smallint", "integer", "bigint"}:
        if isinstance(value, bool):
            raise ValueError(f"{column.name}: not an integer: {value!r}")
        return int(value)
    if data_type == "boolean":
        if isinstance(value, str):
            lowered = value.strip().lower()
            if lowered in _TRUE_STRINGS:
                return True
            if lowered in _FALSE_STRINGS:
                return False
            raise ValueError(f"{column.name}: not a boolean: {value!r}")
        return bool(value)
    if data_type in {"text", "character varying", "character"}:
        if isinstance(value, bytes):
            return value.decode("utf-8")
        return value if isinstance(value, str) else str(value)
    return value


def coerce_operation(raw: Any, is_full_load: bool) -> Operation:
    if raw is None and is_full_load:
        return Operation.INSERT
    return Operation.from_code(raw)


def coerce_ingestion_timestamp(raw: Any, is_full_load: bool) -> datetime:
    if raw is None:
        if is_full_load:
            return FULL_LOAD_TIMESTAMP
        raise ValueError("missing ingestion timestamp")
    return parse_timestamp(raw)


class CdcReader:
    """
    Turns export objects into ChangeRecords.

    ``read`` fetches the object and returns a lazy, single-pass iterator;
    re-reading a file means calling ``read`` again.
    """

    def __init__(self, store: ObjectStore, decoder: Optional[ChangeDecoder] = None) -> None:
        self.store = store
        self.decoder = decoder or ParquetChangeDecoder()

    async def read(
        self, file: PartitionFile, descriptor: TableDescriptor, sequence_start: int = 0
    ) -> Iterator[ChangeRecord]:
        payload = await self.store.fetch(file.key)
        log.debug(
            "Fetched export file",
            extra={"file": file.key, "bytes": len(payload), "table": descriptor.table_name},
        )
        return self.iter_records(payload, file, descriptor, sequence_start)

    def iter_records(
        self,
        payload: bytes,
        file: PartitionFile,
        descriptor: TableDescriptor,
        sequence_start: int = 0,
    ) -> Iterator[ChangeRecord]:
        for index, row in enumerate(self.decoder.decode(payload, descriptor, file.key)):
            try:
                values = {
                    name: coerce_value(row.values.get(name), descriptor.column(name))
                    for name in descriptor.column_names
                }
                yield ChangeRecord(
                    primary_key=descriptor.key_of(values),
                    values=values,
                    operation=coerce_operation(row.operation, file.is_full_load),
                    timestamp=coerce_ingestion_timestamp(row.timestamp, file.is_full_load),
                    source=file.key,
                    sequence=sequence_start + index,
                )
            except (ValueError, TypeError, KeyError) as exc:
                raise StructuralError(
                    f"Row {index} could not be decoded: {exc}",
                    file_key=file.key,
                    table=descriptor.table_name,
                ) from exc


__all__ = [
    "CdcReader",
    "FULL_LOAD_TIMESTAMP",
    "ParquetChangeDecoder",
    "coerce_ingestion_timestamp",
    "coerce_operation",
    "coerce_value",
]
