"""
PostgreSQL access for the CDC snapshot validator.

``PostgresOperator`` wraps one ``DatabasePool`` and provides exactly what the
engine needs from a database: catalog introspection, target preparation,
atomic upsert/delete batches and primary-key-ordered row fetches. Identifiers
are composed with ``psycopg.sql`` and values are always bound as parameters.

Transient ``psycopg.OperationalError`` failures are retried per call; once the
retry budget is spent they surface as TransientIOError. Pool timeouts surface
as ResourceExhaustedError straight from the pool and are never retried.
"""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence, Tuple, TypeVar

import psycopg
from psycopg import sql
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb

from cdc_validator.domain.models import ColumnSpec, TableDescriptor
from cdc_validator.errors import TransientIOError
from cdc_validator.infrastructure.db_factory import DatabasePool
from cdc_validator.infrastructure.retry import RetryPolicy
from cdc_validator.utils.logging import get_logger

log = get_logger(__name__)

T = TypeVar("T")

Row = Dict[str, Any]
Key = Tuple[Any, ...]


def _table(descriptor: TableDescriptor) -> sql.Composed:
    return sql.SQL("{}.{}").format(
        sql.Identifier(descriptor.schema_name), sql.Identifier(descriptor.table_name)
    )


def _key_columns(descriptor: TableDescriptor) -> sql.Composed:
    return sql.SQL(", ").join(sql.Identifier(name) for name in descriptor.primary_key)


def _key_tuple(descriptor: TableDescriptor) -> sql.Composed:
    return sql.SQL("({})").format(_key_columns(descriptor))


def _key_placeholders(descriptor: TableDescriptor) -> sql.Composed:
    return sql.SQL("({})").format(
        sql.SQL(", ").join(sql.Placeholder() for _ in descriptor.primary_key)
    )


# Text keys are ordered bytewise so the database sorts them the way Python
# compares str (code point order), whatever the database's default collation.
TEXT_KEY_TYPES = frozenset({"text", "character varying", "character"})


def _ordering_key(descriptor: TableDescriptor) -> sql.Composed:
    parts = []
    for name in descriptor.primary_key:
        ident = sql.Identifier(name)
        if descriptor.column(name).data_type.lower() in TEXT_KEY_TYPES:
            parts.append(sql.SQL('{} COLLATE "C"').format(ident))
        else:
            parts.append(ident)
    return sql.SQL(", ").join(parts)


def _select_list(descriptor: TableDescriptor) -> sql.Composed:
    """Column list for fetches; geometry is read back as WKT text."""
    parts = []
    for column in descriptor.columns:
        ident = sql.Identifier(column.name)
        if column.is_geometry:
            parts.append(sql.SQL("ST_AsText({}) AS {}").format(ident, ident))
        else:
            parts.append(ident)
    return sql.SQL(", ").join(parts)


def _adapt(column: ColumnSpec, value: Any) -> Any:
    if isinstance(value, (dict, list)) and column.data_type.lower() in {"json", "jsonb"}:
        return Jsonb(value)
    return value


def _value_placeholder(column: ColumnSpec) -> sql.Composable:
    if column.is_geometry:
        return sql.SQL("ST_GeomFromText({}, 4326)").format(sql.Placeholder())
    return sql.Placeholder()


def build_upsert_query(descriptor: TableDescriptor) -> sql.Composed:
    """
    ``INSERT ... ON CONFLICT (pk) DO UPDATE`` overwriting every non-key column.
    """
    columns = sql.SQL(", ").join(sql.Identifier(name) for name in descriptor.column_names)
    values = sql.SQL(", ").join(_value_placeholder(column) for column in descriptor.columns)
    if descriptor.value_columns:
        assignments = sql.SQL(", ").join(
            sql.SQL("{} = EXCLUDED.{}").format(sql.Identifier(name), sql.Identifier(name))
            for name in descriptor.value_columns
        )
        conflict = sql.SQL("DO UPDATE SET {}").format(assignments)
    else:
        conflict = sql.SQL("DO NOTHING")
    return sql.SQL("INSERT INTO {} ({}) VALUES ({}) ON CONFLICT ({}) {}").format(
        _table(descriptor), columns, values, _key_columns(descriptor), conflict
    )


def build_delete_query(descriptor: TableDescriptor) -> sql.Composed:
    return sql.SQL("DELETE FROM {} WHERE {} = {}").format(
        _table(descriptor), _key_tuple(descriptor), _key_placeholders(descriptor)
    )


def build_create_table_query(descriptor: TableDescriptor) -> sql.Composed:
    column_defs = [
        sql.SQL("{} {}").format(sql.Identifier(column.name), sql.SQL(column.ddl_type))
        for column in descriptor.columns
    ]
    column_defs.append(sql.SQL("PRIMARY KEY ({})").format(_key_columns(descriptor)))
    return sql.SQL("CREATE TABLE IF NOT EXISTS {} ({})").format(
        _table(descriptor), sql.SQL(", ").join(column_defs)
    )


def build_slice_query(descriptor: TableDescriptor) -> sql.Composed:
    """Rows ``[offset, offset + limit)`` in key order; binds limit then offset."""
    return sql.SQL("SELECT {} FROM {} ORDER BY {} LIMIT %s OFFSET %s").format(
        _select_list(descriptor), _table(descriptor), _ordering_key(descriptor)
    )


def build_key_at_query(descriptor: TableDescriptor) -> sql.Composed:
    return sql.SQL("SELECT {} FROM {} ORDER BY {} LIMIT 1 OFFSET %s").format(
        _key_columns(descriptor), _table(descriptor), _ordering_key(descriptor)
    )


def build_range_query(descriptor: TableDescriptor, bounded_below: bool, bounded_above: bool) -> sql.Composed:
    """Rows with ``lower < key <= upper`` in key order; an unbounded side binds nothing."""
    key = sql.SQL("({})").format(_ordering_key(descriptor))
    conditions = []
    if bounded_below:
        conditions.append(sql.SQL("{} > {}").format(key, _key_placeholders(descriptor)))
    if bounded_above:
        conditions.append(sql.SQL("{} <= {}").format(key, _key_placeholders(descriptor)))
    where = sql.SQL(" WHERE ") + sql.SQL(" AND ").join(conditions) if conditions else sql.SQL("")
    return sql.SQL("SELECT {} FROM {}{} ORDER BY {}").format(
        _select_list(descriptor), _table(descriptor), where, _ordering_key(descriptor)
    )


class PostgresOperator:
    """
    Database collaborator bound to one pool (source or target).
    """

    def __init__(self, pool: DatabasePool, retry_policy: Optional[RetryPolicy] = None) -> None:
        self.pool = pool
        self.retry_policy = retry_policy or RetryPolicy.from_settings()

    @property
    def name(self) -> str:
        return self.pool.name

    async def _run(self, operation: str, call: Callable[[], Awaitable[T]]) -> T:
        try:
            async for attempt in self.retry_policy.retrying((psycopg.OperationalError,)):
                with attempt:
                    return await call()
        except psycopg.OperationalError as exc:
            raise TransientIOError(
                f"{operation} failed on the {self.pool.name} database",
                {"pool": self.pool.name, "cause": str(exc)},
            ) from exc
        raise AssertionError("unreachable")  # pragma: no cover

    async def _fetch(self, query: sql.Composable, params: Sequence[Any] = ()) -> List[Row]:
        async with self.pool.connection() as conn:
            async with conn.cursor(row_factory=dict_row) as cur:
                await cur.execute(query, params)
                return list(await cur.fetchall())

    async def _execute(self, query: sql.Composable, params: Sequence[Any] = ()) -> None:
        async with self.pool.connection() as conn:
            await conn.execute(query, params)

    # Catalog

    async def get_tables_in_schema(
        self,
        schema_name: str,
        included_tables: Sequence[str] = (),
        excluded_tables: Sequence[str] = (),
    ) -> List[str]:
        query = sql.SQL(
            "SELECT table_name FROM information_schema.tables "
            "WHERE table_schema = %s AND table_type = 'BASE TABLE'"
        )
        params: List[Any] = [schema_name]
        if included_tables:
            query += sql.SQL(" AND table_name = ANY(%s)")
            params.append(list(included_tables))
        elif excluded_tables:
            query += sql.SQL(" AND NOT (table_name = ANY(%s))")
            params.append(list(excluded_tables))
        query += sql.SQL(" ORDER BY table_name")
        rows = await self._run("list tables", lambda: self._fetch(query, params))
        return [row["table_name"] for row in rows]

    async def get_table_descriptor(self, schema_name: str, table_name: str) -> TableDescriptor:
        columns_query = sql.SQL(
            "SELECT column_name, data_type, udt_name FROM information_schema.columns "
            "WHERE table_schema = %s AND table_name = %s ORDER BY ordinal_position"
        )
        key_query = sql.SQL(
            "SELECT a.attname FROM pg_index i "
            "JOIN pg_attribute a ON a.attrelid = i.indrelid AND a.attnum = ANY(i.indkey) "
            "WHERE i.indrelid = format('%%I.%%I', %s, %s)::regclass AND i.indisprimary "
            "ORDER BY array_position(i.indkey, a.attnum)"
        )
        columns = await self._run(
            "introspect columns", lambda: self._fetch(columns_query, (schema_name, table_name))
        )
        keys = await self._run(
            "introspect primary key", lambda: self._fetch(key_query, (schema_name, table_name))
        )
        descriptor = TableDescriptor(
            schema_name=schema_name,
            table_name=table_name,
            columns=tuple(
                ColumnSpec(
                    name=row["column_name"],
                    data_type=row["data_type"],
                    udt_name=row.get("udt_name") or "",
                )
                for row in columns
            ),
            primary_key=tuple(row["attname"] for row in keys),
        )
        log.info(
            "Introspected table",
            extra={
                "table": descriptor.qualified_name,
                "columns": len(descriptor.columns),
                "primary_key": list(descriptor.primary_key),
            },
        )
        return descriptor

    # Target preparation

    async def create_schema(self, schema_name: str) -> None:
        query = sql.SQL("CREATE SCHEMA IF NOT EXISTS {}").format(sql.Identifier(schema_name))
        await self._run("create schema", lambda: self._execute(query))

    async def create_extensions(self, extensions: Sequence[str]) -> None:
        for extension in extensions:
            query = sql.SQL("CREATE EXTENSION IF NOT EXISTS {}").format(sql.Identifier(extension))
            await self._run("create extension", lambda query=query: self._execute(query))

    async def create_table(self, descriptor: TableDescriptor) -> None:
        query = build_create_table_query(descriptor)
        await self._run("create table", lambda: self._execute(query))

    # Replay

    async def apply_batch(
        self,
        descriptor: TableDescriptor,
        upserts: Sequence[Mapping[str, Any]],
        deletes: Sequence[Key],
    ) -> None:
        """
        Apply upserts and deletes in a single transaction.

        Either the whole batch commits or nothing does, so a failed batch can
        be replayed from its start offset.
        """
        upsert_query = build_upsert_query(descriptor)
        delete_query = build_delete_query(descriptor)
        upsert_params = [
            tuple(_adapt(column, row.get(column.name)) for column in descriptor.columns)
            for row in upserts
        ]
        delete_params = [tuple(key) for key in deletes]

        async def _apply() -> None:
            async with self.pool.connection() as conn:
                async with conn.transaction():
                    async with conn.cursor() as cur:
                        if upsert_params:
                            await cur.executemany(upsert_query, upsert_params)
                        if delete_params:
                            await cur.executemany(delete_query, delete_params)

        await self._run("apply batch", _apply)

    # Comparison

    async def count_rows(self, descriptor: TableDescriptor) -> int:
        query = sql.SQL("SELECT count(*) AS n FROM {}").format(_table(descriptor))
        rows = await self._run("count rows", lambda: self._fetch(query))
        return int(rows[0]["n"]) if rows else 0

    async def fetch_slice(self, descriptor: TableDescriptor, offset: int, limit: int) -> List[Row]:
        """Rows ``[offset, offset + limit)`` in primary-key order."""
        query = build_slice_query(descriptor)
        return await self._run("fetch slice", lambda: self._fetch(query, (limit, offset)))

    async def fetch_key_at(self, descriptor: TableDescriptor, offset: int) -> Optional[Key]:
        query = build_key_at_query(descriptor)
        rows = await self._run("fetch key", lambda: self._fetch(query, (offset,)))
        return descriptor.key_of(rows[0]) if rows else None

    async def fetch_range(
        self,
        descriptor: TableDescriptor,
        lower: Optional[Key],
        upper: Optional[Key],
    ) -> List[Row]:
        """Rows with ``lower < key <= upper`` in primary-key order."""
        params: List[Any] = []
        if lower is not None:
            params.extend(lower)
        if upper is not None:
            params.extend(upper)
        query = build_range_query(descriptor, lower is not None, upper is not None)
        return await self._run("fetch range", lambda: self._fetch(query, params))


__all__ = [
    "PostgresOperator",
    "build_create_table_query",
    "build_delete_query",
    "build_key_at_query",
    "build_range_query",
    "build_slice_query",
    "build_upsert_query",
]
