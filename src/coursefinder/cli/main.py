"""
CLI Main - Typer command-line interface.
========================================

Commands:
- rebuild: Scrape the catalog and publish a new index generation
- search: Ranked keyword search
- course: Exact course code lookup
- watch: Keep the index fresh on a schedule and answer queries interactively
- status: Show the index served from the snapshot
- info: Show configuration and snapshot status
"""

from typing import Optional

import typer
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from coursefinder.shared.logging import get_logger, setup_logging_from_settings

logger = get_logger(__name__)

app = typer.Typer(
    name="coursefinder",
    help="""CourseFinder - course catalog scraper and keyword search

QUICK START:

  coursefinder rebuild                          # Scrape the catalog, build the index
  coursefinder search "programming fundamentals"
  coursefinder course COMP-1020

Use 'coursefinder <command> --help' for detailed command options.
""",
    add_completion=False,
    rich_markup_mode="rich",
)

console = Console()


def _build_service(term: Optional[str] = None, use_snapshot: bool = True):
    from coursefinder.indexing.store import IndexStore
    from coursefinder.pipeline.rebuild import RebuildPipeline
    from coursefinder.pipeline.service import CatalogService

    setup_logging_from_settings()
    store = IndexStore()
    service = CatalogService(store=store, pipeline=RebuildPipeline(store, term=term))
    if use_snapshot:
        service.load_snapshot()
    return service


def _print_hits(hits, title: str) -> None:
    if not hits:
        console.print("[yellow]No matching courses.[/yellow]")
        return

    table = Table(title=title)
    table.add_column("#", justify="right")
    table.add_column("Code", style="bold")
    table.add_column("Title")
    table.add_column("Score", justify="right")
    table.add_column("Description")

    for position, hit in enumerate(hits, 1):
        table.add_row(
            str(position),
            escape(hit.record.code),
            escape(hit.record.title),
            f"{hit.score:.3f}",
            escape(hit.record.summary(80)),
        )
    console.print(table)


def _print_status(status) -> None:
    color = {"succeeded": "green", "failed": "red", "cancelled": "yellow"}.get(status.state.value, "white")
    console.print(Panel(
        f"State: [{color}]{status.state.value}[/{color}]\n"
        f"Generation: {status.generation}\n"
        f"Records: {status.record_count}\n"
        f"Rejected: {status.rejected_count}\n"
        f"Pages fetched: {status.pages_fetched}\n"
        f"Finished: {status.finished_at or '-'}\n"
        f"Last error: {escape(status.last_error or '-')}",
        title="Rebuild",
    ))


def _course_body(record) -> str:
    # Scraped text is escaped so brackets in it print literally
    body = escape(record.description) if record.description else "[dim]No description.[/dim]"

    details = [
        ("Meets", record.meets),
        ("Starts", record.starts),
        ("Ends", record.ends),
        ("Campus", record.campus),
        ("Availability", record.availability),
    ]
    lines = [f"[bold]{label}:[/bold] {escape(value)}" for label, value in details if value]
    if lines:
        body += "\n\n" + "\n".join(lines)

    if record.instructors:
        body += "\n\n[bold]Instructors:[/bold]\n" + "\n".join(
            escape(str(instructor)) for instructor in record.instructors
        )
    if record.note:
        body += f"\n\n[bold]Note:[/bold] {escape(record.note)}"
    if record.prerequisites:
        body += "\n\n[bold]Prerequisites:[/bold]\n" + "\n".join(escape(p) for p in record.prerequisites)
    return body


# ─────────────────────────────────────────────────────────────────────────────
# Rebuild Command
# ─────────────────────────────────────────────────────────────────────────────


@app.command()
def rebuild(
    term: Optional[str] = typer.Option(
        None,
        "--term", "-t",
        help="Academic term code, e.g. 20185 (year + semester digit). Default: from config.",
    ),
    from_snapshot: bool = typer.Option(
        True,
        "--snapshot/--no-snapshot",
        help="Start from the saved snapshot so docIds stay stable.",
    ),
):
    """
    Scrape the catalog and publish a new index generation.

    On failure the previous index (and snapshot) are kept untouched.
    """
    service = _build_service(term=term, use_snapshot=from_snapshot)
    with console.status("Rebuilding index..."):
        status = service.rebuild_now()
    _print_status(status)

    if status.state.value != "succeeded":
        raise typer.Exit(1)


# ─────────────────────────────────────────────────────────────────────────────
# Search Commands
# ─────────────────────────────────────────────────────────────────────────────


@app.command()
def search(
    query: str = typer.Argument(..., help="Keywords or a course code."),
    top_k: Optional[int] = typer.Option(
        None,
        "--top-k", "-k",
        help="Maximum number of results. Default: from config.",
    ),
    refresh: bool = typer.Option(
        False,
        "--refresh", "-r",
        help="Rebuild from the live catalog before searching.",
    ),
):
    """
    Ranked keyword search over course code, title and description.

    Examples:
        coursefinder search "programming fundamentals"
        coursefinder search COMP-1020 -k 3
    """
    service = _build_service()
    if refresh or service.active_index().generation == 0:
        with console.status("Building index..."):
            status = service.rebuild_now()
        if status.state.value != "succeeded":
            _print_status(status)
            raise typer.Exit(1)

    try:
        hits = service.search(query, limit=top_k)
    except ValueError as e:
        console.print(f"[red]{escape(str(e))}[/red]")
        raise typer.Exit(2)

    _print_hits(hits, title=f"Results for '{escape(query)}' (generation {service.active_index().generation})")


@app.command()
def course(
    code: str = typer.Argument(..., help="Course code, e.g. COMP-1020."),
):
    """
    Show the full listing of one course.
    """
    service = _build_service()
    records = service.lookup_code(code)

    if not records:
        console.print(f"Course `{escape(code)}` not found.")
        raise typer.Exit(1)

    for record in records:
        console.print(Panel(
            _course_body(record),
            title=escape(f"{record.code} - {record.title} ({record.term})"),
        ))


@app.command()
def watch(
    interval: Optional[float] = typer.Option(
        None,
        "--interval", "-i",
        help="Seconds between refreshes. Default: rebuild.refresh_interval from config.",
    ),
):
    """
    Refresh the index on a schedule while answering queries from stdin.

    Type a query per line; an empty line shows the rebuild status,
    Ctrl+D or Ctrl+C stops.
    """
    service = _build_service()
    if not service.start_schedule(interval=interval):
        console.print("[yellow]Refresh schedule disabled; serving the snapshot only.[/yellow]")

    try:
        while True:
            try:
                line = console.input("[bold]query> [/bold]")
            except EOFError:
                break
            if not line.strip():
                _print_status(service.status())
                continue
            _print_hits(service.search(line), title=f"Results for '{escape(line)}'")
    except KeyboardInterrupt:
        pass
    finally:
        service.stop(timeout=5)


# ─────────────────────────────────────────────────────────────────────────────
# Status / Info Commands
# ─────────────────────────────────────────────────────────────────────────────


@app.command()
def status():
    """
    Show the index generation served from the saved snapshot.
    """
    service = _build_service()
    index = service.active_index()

    if index.generation == 0:
        console.print("[yellow]No index yet. Run 'coursefinder rebuild' first.[/yellow]")
        raise typer.Exit(1)

    table = Table(title="Active Index")
    table.add_column("Field", style="bold")
    table.add_column("Value")
    table.add_row("Generation", str(index.generation))
    table.add_row("Documents", str(index.document_count))
    table.add_row("Distinct codes", str(len(index.codes)))
    table.add_row("Vocabulary", str(index.vocabulary_size))
    table.add_row("Next docId", str(index.next_doc_id))
    table.add_row("Terms", ", ".join(sorted({r.term for r in index.records.values()})))
    console.print(table)


@app.command()
def info():
    """
    Show configuration and snapshot status.
    """
    from coursefinder import __version__
    from coursefinder.indexing.snapshot import SnapshotManager
    from coursefinder.shared.config import get_settings
    from coursefinder.shared.schemas import AcademicTerm

    settings = get_settings()
    term_code = settings.get_effective_term()
    try:
        term_label = AcademicTerm.parse(term_code).label
    except ValueError:
        term_label = "[red]invalid[/red]"

    console.print(Panel(
        f"[bold]CourseFinder[/bold]\n"
        f"Version: {__version__}\n"
        f"Config: config/settings.yaml\n"
        f"Catalog: {settings.get_effective_base_url()}\n"
        f"Term: {term_code} ({term_label})\n"
        f"Retry: {settings.retry.max_attempts} attempts, "
        f"{settings.retry.backoff_base}s x{settings.retry.backoff_factor}\n"
        f"Rebuild timeout: {settings.rebuild.timeout}s, "
        f"max rejection rate {settings.rebuild.max_rejection_rate:.0%}",
        title="Info",
    ))

    snapshot_file = settings.resolved_paths.snapshot_file
    exists = "✓" if snapshot_file.exists() else "✗"
    console.print(f"\n[bold]Snapshot:[/bold] {snapshot_file} [{exists}]")

    if snapshot_file.exists():
        index = SnapshotManager(snapshot_file).load()
        if index is not None:
            console.print(
                f"  generation {index.generation}, {index.document_count} documents, "
                f"{index.vocabulary_size} terms"
            )


# ─────────────────────────────────────────────────────────────────────────────
# Entry Point
# ─────────────────────────────────────────────────────────────────────────────


def cli():
    """CLI entry point."""
    app()


if __name__ == "__main__":
    cli()
