"""
Sample CDC export generator for local runs of the validator.

Writes a DMS-style export for one table into a directory that can be passed
to ``cdc-validator validate --local-root``:

    {root}/{prefix}/{database}/{schema}/{table}/LOAD00000001.parquet
    {root}/{prefix}/{database}/{schema}/{table}/YYYY/MM/DD/<timestamp>.parquet

Rows are generated deterministically from a seed. The full load holds every
row; each following day carries updates, deletes and fresh inserts.
"""

from __future__ import annotations

import random
import sys
import time
from datetime import UTC, date, datetime, timedelta
from decimal import Decimal
from pathlib import Path

import pyarrow as pa
import pyarrow.parquet as pq
import typer

app = typer.Typer(help="Generate a sample CDC export (Parquet) for local validation runs.")

OP_COLUMN = "Op"
TIMESTAMP_COLUMN = "_dms_ingestion_timestamp"

_SCHEMA = pa.schema(
    [
        pa.field("id", pa.int64(), nullable=False),
        pa.field("status", pa.string()),
        pa.field("amount", pa.decimal128(12, 2)),
        pa.field("updated_at", pa.timestamp("us", tz="UTC")),
    ]
)
_CDC_SCHEMA = pa.schema(
    [pa.field(OP_COLUMN, pa.string()), pa.field(TIMESTAMP_COLUMN, pa.string())] + list(_SCHEMA)
)
_STATUSES = ["new", "paid", "shipped", "cancelled"]


def _row(rng: random.Random, key: int, at: datetime) -> dict:
    return {
        "id": key,
        "status": rng.choice(_STATUSES),
        "amount": Decimal(f"{rng.uniform(1, 10_000):.2f}"),
        "updated_at": at,
    }


def _write(path: Path, rows: list[dict], schema: pa.Schema) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    table = pa.Table.from_pylist(rows, schema=schema)
    pq.write_table(table, path)


def write_export(
    root: Path,
    rows: int,
    days: int,
    changes_per_day: int,
    start: date,
    seed: int,
    prefix: str = "",
    database: str = "mydb",
    schema: str = "public",
    table: str = "orders",
) -> list[Path]:
    """
    Write the full load plus ``days`` daily CDC files; returns written paths.
    """
    rng = random.Random(seed)
    base = root.joinpath(*[p for p in (prefix, database, schema, table) if p])
    load_at = datetime.combine(start, datetime.min.time(), tzinfo=UTC) - timedelta(hours=1)

    live = list(range(1, rows + 1))
    next_key = rows + 1
    written: list[Path] = []

    load_path = base / "LOAD00000001.parquet"
    _write(load_path, [_row(rng, key, load_at) for key in live], _SCHEMA)
    written.append(load_path)

    for day in range(days):
        partition = start + timedelta(days=day)
        moment = datetime.combine(partition, datetime.min.time(), tzinfo=UTC)
        changes: list[dict] = []
        for _ in range(changes_per_day):
            moment += timedelta(seconds=rng.randint(1, 60))
            stamp = moment.strftime("%Y-%m-%d %H:%M:%S.%f")
            action = rng.random()
            if action < 0.2 or not live:
                record = _row(rng, next_key, moment)
                live.append(next_key)
                next_key += 1
                op = "I"
            elif action < 0.35:
                key = live.pop(rng.randrange(len(live)))
                record = _row(rng, key, moment)
                op = "D"
            else:
                record = _row(rng, rng.choice(live), moment)
                op = "U"
            changes.append({OP_COLUMN: op, TIMESTAMP_COLUMN: stamp, **record})
        path = base / partition.strftime("%Y/%m/%d") / f"{partition:%Y%m%d}-000000001.parquet"
        _write(path, changes, _CDC_SCHEMA)
        written.append(path)

    return written


@app.command()
def main(
    output: Path = typer.Option(Path("cdc-export"), "--output", "-o", help="Root directory of the export."),
    rows: int = typer.Option(1_000, "--rows", "-r", help="Rows in the full load."),
    days: int = typer.Option(3, "--days", "-d", help="Number of daily CDC partitions."),
    changes_per_day: int = typer.Option(200, "--changes-per-day", help="CDC rows per partition."),
    start_date: str = typer.Option("2024-02-14", "--start-date", help="First partition date (YYYY-MM-DD)."),
    seed: int = typer.Option(42, "--seed", help="Deterministic RNG seed."),
    prefix: str = typer.Option("", "--s3-prefix", help="Key prefix above the database folder."),
    database: str = typer.Option("mydb", "--database-name", help="Database folder name."),
    schema: str = typer.Option("public", "--schema-name", help="Schema folder name."),
    table: str = typer.Option("orders", "--table", help="Table folder name."),
) -> None:
    """
    Generate a deterministic CDC export for one table.
    """
    start = time.perf_counter()
    paths = write_export(
        output,
        rows=rows,
        days=days,
        changes_per_day=changes_per_day,
        start=date.fromisoformat(start_date),
        seed=seed,
        prefix=prefix,
        database=database,
        schema=schema,
        table=table,
    )
    duration = time.perf_counter() - start
    typer.echo(f"Wrote {len(paths)} files under {output} in {duration:.2f}s")


if __name__ == "__main__":
    try:
        app()
    except KeyboardInterrupt:
        typer.echo("Cancelled by user.", err=True)
        sys.exit(130)
