"""
Run reporting: CSV export and console summary.
"""
import logging
import os
from collections import Counter
from typing import List, Optional

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .constants import (
    APPLIED_ERROR,
    APPLIED_NONE,
    REPORT_COLUMNS,
    REPORT_FILE_PREFIX,
    STATUS_ERROR,
    STATUS_PARTIAL_ERROR,
    STATUS_SUCCESS,
)
from .models import ErrorRecord, RunReport, UpdateResult
from .utils import write_csv

logger = logging.getLogger(__name__)

STATUS_STYLES = {
    STATUS_SUCCESS: "green",
    STATUS_PARTIAL_ERROR: "yellow",
    STATUS_ERROR: "red",
}


def sort_results(results: List[UpdateResult]) -> List[UpdateResult]:
    """Deterministic report order: timestamp, then VM name."""
    return sorted(results, key=lambda r: (r.timestamp, r.vm_name))


def report_path(output_dir: str, file_ts: str) -> str:
    return os.path.join(output_dir, f"{REPORT_FILE_PREFIX}_{file_ts}.csv")


def export_report(results: List[UpdateResult], output_dir: str, file_ts: str) -> Optional[str]:
    """
    Write the run report CSV.

    Returns:
        The file path, or None when the export failed. Failures are logged
        and never raised; the in-memory results are unaffected.
    """
    filepath = report_path(output_dir, file_ts)
    rows = [r.to_row() for r in sort_results(results)]
    try:
        os.makedirs(output_dir, exist_ok=True)
        write_csv(rows, filepath, fieldnames=REPORT_COLUMNS)
    except OSError as e:
        logger.error(f"Failed to export report to {filepath}: {e}")
        return None
    return filepath


def format_progress_line(index: int, total: int, result: UpdateResult) -> str:
    """One console line per processed VM."""
    return f"[{index}/{total}] {result.vm_name}: Applied={result.applied}, Status={result.status}"


def status_counts(results: List[UpdateResult]) -> Counter:
    return Counter(r.status for r in results)


def applied_counts(results: List[UpdateResult]) -> Counter:
    """Breakdown of license changes, excluding VMs with nothing applied or an error."""
    return Counter(
        r.applied for r in results
        if r.applied not in (APPLIED_NONE, APPLIED_ERROR)
    )


def _errors_table(errors: List[ErrorRecord]) -> Table:
    table = Table(title="Collection Errors")
    table.add_column("Subscription", style="cyan")
    table.add_column("Message", style="red")
    for error in errors:
        subscription = error.subscription_name or error.subscription_id or "-"
        table.add_row(subscription, error.message)
    return table


def print_run_summary(report: RunReport, console: Optional[Console] = None) -> None:
    """Print the end-of-run summary; always printed, even for empty runs."""
    console = console or Console()

    table = Table(title="License Update Summary", show_header=False)
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="green")

    table.add_row("Subscriptions", str(len(report.subscriptions)))
    table.add_row("Windows VMs", str(report.vm_count))
    table.add_row("VMs processed", str(len(report.results)))

    for status, count in sorted(status_counts(report.results).items()):
        style = STATUS_STYLES.get(status, "white")
        table.add_row(f"Status: {status}", f"[{style}]{count}[/{style}]")

    applied = applied_counts(report.results)
    if applied:
        for label, count in sorted(applied.items()):
            table.add_row(f"Applied: {label}", str(count))
    else:
        table.add_row("Applied", "No license changes")

    if report.errors:
        table.add_row("Collection errors", f"[red]{len(report.errors)}[/red]")

    title = "DRY RUN - no changes were made" if report.dry_run else None
    console.print()
    console.print(Panel(table, title=title))

    if report.errors:
        console.print(_errors_table(report.errors))
