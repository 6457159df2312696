"""Rich-based display and logging setup for Mail Ad Cleaner."""

from __future__ import annotations

import logging

from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from .models import ClassificationReport, CleanupReport, Message

console = Console()


def configure_logging(level: str = "INFO") -> None:
    """Route all module loggers through a RichHandler on the shared console."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
        force=True,
    )
    # The OpenAI client logs every HTTP request at INFO.
    logging.getLogger("httpx").setLevel(logging.WARNING)


def _age_color(age: int, threshold: int | None) -> str:
    if threshold is None:
        return "white"
    if age >= threshold:
        return "red"
    if age >= threshold * 0.75:
        return "yellow"
    return "green"


def display_settings(provider: str, batch_size: int, max_age_days: int, delete_after_days: int, dry_run: bool) -> None:
    """Show the configuration a run is about to use."""
    mode = (
        "[yellow]ON (no emails will be deleted)[/yellow]"
        if dry_run
        else "[red]OFF (emails will be deleted)[/red]"
    )
    lines = [
        f"[bold]Provider:[/bold] {provider}",
        f"[bold]Batch size:[/bold] {batch_size} emails",
        f"[bold]Max email age:[/bold] {max_age_days} days",
        f"[bold]Delete advertising older than:[/bold] {delete_after_days} days",
        f"[bold]Dry run:[/bold] {mode}",
    ]
    console.print(Panel("\n".join(lines), title="Configuration"))


def display_classification_report(report: ClassificationReport) -> None:
    table = Table(title="Classification Pass")
    table.add_column("Metric")
    table.add_column("Count", justify="right")
    table.add_row("Fetched", str(report.fetched))
    table.add_row("Processed", str(report.processed))
    table.add_row("Skipped (already processed)", str(report.skipped))
    table.add_row("[red]Marked as Advertising[/red]", f"[red]{report.marked_advertising}[/red]")
    table.add_row("Marked as Processed", str(report.marked_processed))
    if report.failed:
        table.add_row("[yellow]Label failures[/yellow]", f"[yellow]{report.failed}[/yellow]")
    console.print(table)


def display_cleanup_report(report: CleanupReport, delete_after_days: int) -> None:
    table = Table(title="Cleanup Pass")
    table.add_column("Metric")
    table.add_column("Count", justify="right")
    table.add_row("Advertising emails found", str(report.found))
    label = "Would delete" if report.dry_run else "Deleted"
    table.add_row(f"[red]{label} (>= {delete_after_days} days)[/red]", f"[red]{report.deleted}[/red]")
    table.add_row("[green]Kept (too recent)[/green]", f"[green]{report.skipped_for_age}[/green]")
    if report.failed:
        table.add_row("[yellow]Delete failures[/yellow]", f"[yellow]{report.failed}[/yellow]")
    console.print(table)
    if report.dry_run:
        console.print("[yellow][DRY RUN] No emails were actually deleted.[/yellow]")


def display_locations(locations: list[str], kind: str) -> None:
    table = Table(title=f"{kind.capitalize()}s")
    table.add_column("#", justify="right", style="dim")
    table.add_column("Name")
    for idx, name in enumerate(locations, start=1):
        table.add_row(str(idx), name)
    console.print(table)


def display_messages(messages: list[Message], location: str, delete_after_days: int | None = None) -> None:
    """Table of fetched messages with their age and labels."""
    if not messages:
        console.print(f"[dim]No emails found in {location}.[/dim]")
        return

    table = Table(title=f"{location} ({len(messages)} emails)")
    table.add_column("UID", justify="right", style="dim")
    table.add_column("Subject")
    table.add_column("From")
    table.add_column("Age", justify="right")
    table.add_column("Labels")
    for message in messages:
        age = message.age_in_days
        color = _age_color(age, delete_after_days)
        table.add_row(
            message.id,
            message.subject or "(No subject)",
            message.sender or "(No sender)",
            f"[{color}]{age}d[/{color}]",
            ", ".join(message.labels),
        )
    console.print(table)
