from __future__ import annotations

from typing import Any, Dict, List

from rich import box
from rich.console import Console
from rich.table import Table

_STATUS_STYLE = {
    "match": "bold green",
    "mismatch": "bold red",
    "partial": "yellow",
    "failed": "bold red",
}

# Discrepancies listed per table before the detail table is cut short.
MAX_DETAIL_ROWS = 20


def _status(text: str) -> str:
    style = _STATUS_STYLE.get(text, "white")
    return f"[{style}]{text}[/{style}]"


def print_results(payload: Dict[str, Any], console: Console | None = None) -> None:
    """
    Render a job result (``JobResult.as_dict()``) as rich tables.

    One summary row per validated table, one row per failed table, then the
    first discrepancies of every mismatching table.
    """
    console = console or Console()
    reports: List[Dict[str, Any]] = payload.get("reports", [])
    failures: List[Dict[str, Any]] = payload.get("failures", [])

    if not reports and not failures:
        console.print("[yellow]No tables were processed.[/yellow]")
    else:
        table = Table(
            title="CDC Snapshot Validation Results",
            box=box.ROUNDED,
            caption="Tables in discovery order",
        )
        table.add_column("Table", style="cyan", no_wrap=True)
        table.add_column("Status", justify="center")
        table.add_column("Source rows", justify="right", style="magenta")
        table.add_column("Target rows", justify="right", style="magenta")
        table.add_column("Replayed", justify="right", style="blue")
        table.add_column("Windows\n[dim](verified/total)[/dim]", justify="right", style="green")
        table.add_column("Matched", justify="right", style="bold green")
        table.add_column("Discrepancies", justify="right", style="red")
        table.add_column("Unverified", justify="right", style="yellow")
        table.add_column("Duration (s)", justify="right", style="green")

        for report in reports:
            replayed = report.get("replayed_mutations")
            profile = report.get("extra", {}).get("profile", {})
            duration = profile.get("duration_seconds")
            table.add_row(
                f"{report['schema_name']}.{report['table_name']}",
                _status(report.get("status", "match")),
                f"{report.get('source_rows', 0):,}",
                f"{report.get('target_rows', 0):,}",
                f"{replayed:,}" if replayed is not None else "-",
                f"{report.get('windows_verified', 0)}/{report.get('windows_total', 0)}",
                f"{report.get('matched_rows', 0):,}",
                f"{len(report.get('discrepancies', [])):,}",
                f"{len(report.get('unverified_windows', [])):,}",
                f"{duration:.1f}" if duration is not None else "N/A",
            )
        for failure in failures:
            offset = failure.get("last_offset")
            table.add_row(
                failure["table"],
                _status("failed"),
                "-",
                "-",
                f"@{offset:,}" if offset is not None else "-",
                "-",
                "-",
                "-",
                "-",
                "N/A",
            )
        console.print(table)

    for failure in failures:
        where = f" file={failure['file_key']}" if failure.get("file_key") else ""
        console.print(
            f"[red]{failure['table']}[/red] failed during [bold]{failure['stage']}[/bold]: "
            f"{failure['message']}{where}"
        )

    for report in reports:
        discrepancies = report.get("discrepancies", [])
        if not discrepancies:
            continue
        detail = Table(
            title=f"Discrepancies in {report['schema_name']}.{report['table_name']}",
            box=box.SIMPLE,
        )
        detail.add_column("Position", justify="right", style="magenta")
        detail.add_column("Kind", style="red")
        detail.add_column("Primary key", style="cyan")
        detail.add_column("Columns", style="yellow")
        for item in discrepancies[:MAX_DETAIL_ROWS]:
            columns = ", ".join(diff["column"] for diff in item.get("differences", []))
            key = ", ".join(str(part) for part in item.get("primary_key", []))
            detail.add_row(str(item.get("position", "")), item["kind"], key, columns or "-")
        if len(discrepancies) > MAX_DETAIL_ROWS:
            detail.caption = f"{len(discrepancies) - MAX_DETAIL_ROWS:,} more not shown"
        console.print(detail)

    if payload.get("fatal_error"):
        console.print(f"[bold red]Run aborted:[/bold red] {payload['fatal_error']}")
