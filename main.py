"""Main CLI entry point for the soundscape pipeline."""
import functools
import json
import sys
from pathlib import Path
from typing import List, Tuple

import click
from rich.console import Console
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from errors import PipelineError, PublishBlockedError, ValidationError
from pipeline.models import PipelineStage
from pipeline.orchestrator import PipelineOrchestrator
from pipeline.workers import WorkerPools
from soundscapes.admin import AdminOverrideGateway
from soundscapes.catalog import SoundscapeCatalog
from soundscapes.reader import export_scenes, resolve_page_audio
from storage.database import Database
from utils.logger import setup_logger
import config

logger = setup_logger(__name__)
console = Console()

STAGE_CHOICES = {stage.name.lower(): stage for stage in PipelineStage}


def handle_pipeline_errors(func):
    """Print pipeline errors in red and exit non-zero instead of dumping a traceback."""
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except PublishBlockedError as e:
            console.print(f"[red]Error: {e}[/red]")
            for scene_id in e.unresolved_scene_ids:
                console.print(f"  [yellow]needs review:[/yellow] {scene_id}")
            sys.exit(1)
        except PipelineError as e:
            console.print(f"[red]Error: {e}[/red]")
            sys.exit(1)
    return wrapper


def load_pages(path: Path) -> Tuple[List[dict], dict]:
    """Read extractor output: a list of pages or {"title", "author", "pages"}.

    Returns:
        (pages, metadata) where metadata holds any title/author found
    """
    with open(path, 'r') as f:
        data = json.load(f)
    meta = data if isinstance(data, dict) else {}
    pages = data.get("pages", []) if isinstance(data, dict) else data
    if not isinstance(pages, list):
        raise ValidationError(f"{path} does not contain a list of pages")
    return pages, meta


def build_orchestrator(db: Database, pools: WorkerPools = None) -> PipelineOrchestrator:
    return PipelineOrchestrator(db, pools=pools)


@click.group()
@click.option('--db-path', type=click.Path(), default=str(config.DB_PATH), show_default=True,
              help='SQLite database file')
@click.pass_context
def cli(ctx, db_path):
    """Book Soundscape Pipeline - classify pages, segment scenes, match ambient audio"""
    ctx.obj = Database(Path(db_path))


# ==================== Processing ====================

@cli.command()
@click.option('--pages', 'pages_file', required=True, type=click.Path(exists=True), help='Extractor output JSON')
@click.option('--title', default=None, help='Book title (defaults to the JSON title or file name)')
@click.option('--author', default=None, help='Author name')
@click.pass_obj
@handle_pipeline_errors
def ingest(db, pages_file, title, author):
    """Store extracted pages as a new book."""
    path = Path(pages_file)
    pages, meta = load_pages(path)
    title = title or meta.get("title") or path.stem
    author = author or meta.get("author") or ""

    book = build_orchestrator(db).ingest(title, pages, author=author)

    console.print(f"\n[green]✓ Ingestion complete![/green]")
    console.print(f"Book ID: [cyan]{book.book_id}[/cyan]")
    console.print(f"Title: [cyan]{book.title}[/cyan]")
    console.print(f"Pages: {book.total_pages}")


@cli.command()
@click.argument('book_ids', nargs=-1, required=True)
@click.pass_obj
@handle_pipeline_errors
def process(db, book_ids):
    """Run the pipeline for one or more books."""
    if not config.ANTHROPIC_API_KEY:
        console.print("[red]Error: ANTHROPIC_API_KEY not set in environment[/red]")
        sys.exit(1)

    with WorkerPools() as pools:
        orchestrator = build_orchestrator(db, pools)
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            console=console
        ) as progress:
            task = progress.add_task(f"Processing {len(book_ids)} book(s)...", total=None)
            futures = {book_id: orchestrator.submit(book_id) for book_id in book_ids}
            results = {book_id: future.result() for book_id, future in futures.items()}
            progress.update(task, completed=True)

    for book_id, book in results.items():
        _print_outcome(book_id, book)


@cli.command()
@click.argument('book_id')
@click.pass_obj
@handle_pipeline_errors
def retry(db, book_id):
    """Re-enter the pipeline at a failed book's failed stage."""
    with WorkerPools() as pools:
        book = build_orchestrator(db, pools).retry_book(book_id)
    _print_outcome(book_id, book)


@cli.command()
@click.argument('book_id')
@click.option('--from-stage', required=True, type=click.Choice(list(STAGE_CHOICES)), help='First stage to redo')
@click.pass_obj
@handle_pipeline_errors
def reprocess(db, book_id, from_stage):
    """Redo a book from the given stage onwards."""
    with WorkerPools() as pools:
        book = build_orchestrator(db, pools).reprocess(book_id, STAGE_CHOICES[from_stage])
    _print_outcome(book_id, book)


@cli.command()
@click.argument('book_id', required=False)
@click.pass_obj
@handle_pipeline_errors
def status(db, book_id):
    """Show processing status for one book, or list all books."""
    if not book_id:
        books = db.list_books()
        if not books:
            console.print("[yellow]No books found[/yellow]")
            return

        table = Table(title="Books")
        table.add_column("ID", style="cyan")
        table.add_column("Title")
        table.add_column("Pages", justify="right")
        table.add_column("Status")
        table.add_column("Cost", justify="right")
        table.add_column("Created", style="dim")
        for book in books:
            table.add_row(
                book.book_id,
                book.title,
                str(book.total_pages),
                _status_markup(book.status.value),
                f"${book.processing_cost:.4f}",
                book.created_at[:19]
            )
        console.print(table)
        return

    book = db.require_book(book_id)
    run = db.get_pipeline_run(book_id)

    table = Table(show_header=False)
    table.add_row("Book ID", f"[cyan]{book.book_id}[/cyan]")
    table.add_row("Title", book.title)
    table.add_row("Status", _status_markup(book.status.value))
    table.add_row("Pages", str(book.total_pages))
    table.add_row("Cost", f"${book.processing_cost:.4f}")
    if book.processing_error:
        table.add_row("Error", f"[red]{book.processing_error}[/red]")
    if run:
        for stage in PipelineStage:
            table.add_row(f"Stage: {stage.name.lower()}", run.stage_status(stage).value)
        if run.degraded_pages:
            table.add_row("Degraded pages", ", ".join(str(n) for n in run.degraded_pages))
    console.print(table)


# ==================== Admin review ====================

@cli.command()
@click.argument('book_id')
@click.option('--history', is_flag=True, help='Show every assignment, not only the current one')
@click.pass_obj
@handle_pipeline_errors
def review(db, book_id, history):
    """List a book's scenes with their soundscape and review flag."""
    reviews = AdminOverrideGateway(db).review(book_id)
    if not reviews:
        console.print("[yellow]No scenes yet[/yellow]")
        return

    table = Table(title=f"Scenes - {book_id}")
    table.add_column("#", style="cyan", justify="right")
    table.add_column("Pages")
    table.add_column("Mood")
    table.add_column("Setting")
    table.add_column("Soundscape")
    table.add_column("Confidence", justify="right")
    table.add_column("Source", style="dim")
    table.add_column("Scene ID", style="dim")

    for r in reviews:
        current = r.current_assignment
        flag = "[bold red]⚠ [/bold red]" if r.needs_review else ""
        table.add_row(
            f"{flag}{r.scene.scene_number}",
            f"{r.scene.start_page}-{r.scene.end_page}",
            r.scene.descriptor.mood,
            r.scene.descriptor.setting,
            current.audio_url if current else "[red]none[/red]",
            f"{current.confidence_score:.2f}" if current else "-",
            current.source.value if current else "-",
            r.scene.scene_id
        )
        if history:
            for past in r.history[:-1]:
                table.add_row("", "", "", "", f"[dim]{past.audio_url}[/dim]",
                              f"[dim]{past.confidence_score:.2f}[/dim]", past.source.value, "")

    console.print(table)
    pending = sum(1 for r in reviews if r.needs_review)
    if pending:
        console.print(f"[yellow]{pending} scene(s) need review before publishing[/yellow]")


@cli.command()
@click.argument('scene_id')
@click.argument('soundscape_id')
@click.pass_obj
@handle_pipeline_errors
def override(db, scene_id, soundscape_id):
    """Assign a soundscape to a scene by hand."""
    assignment = AdminOverrideGateway(db).override(scene_id, soundscape_id)
    console.print(f"[green]✓ Scene {scene_id} now plays {assignment.audio_url}[/green]")


@cli.command()
@click.argument('scene_id')
@click.pass_obj
@handle_pipeline_errors
def clear(db, scene_id):
    """Remove all soundscape assignments from a scene."""
    removed = AdminOverrideGateway(db).clear(scene_id)
    console.print(f"[green]✓ Removed {removed} assignment(s)[/green]")


@cli.command()
@click.argument('book_id')
@click.pass_obj
@handle_pipeline_errors
def publish(db, book_id):
    """Publish a book once every scene is resolved."""
    book = AdminOverrideGateway(db).publish(book_id)
    console.print(f"[green]✓ Published '{book.title}'[/green]")


@cli.command()
@click.argument('book_id')
@click.argument('page_number', type=int)
@click.pass_obj
@handle_pipeline_errors
def resolve(db, book_id, page_number):
    """Show the scene and audio URL for a page."""
    page_audio = resolve_page_audio(db, book_id, page_number)
    if page_audio is None:
        console.print(f"[yellow]Page {page_number} is not part of a scene yet[/yellow]")
        return
    console.print(f"Scene {page_audio.scene.scene_number} "
                  f"(pages {page_audio.scene.start_page}-{page_audio.scene.end_page})")
    console.print(f"Audio: [cyan]{page_audio.audio_url or 'none'}[/cyan]")


@cli.command()
@click.argument('book_id')
@click.confirmation_option(prompt='Delete this book with all its pages and scenes?')
@click.pass_obj
@handle_pipeline_errors
def delete_book(db, book_id):
    """Delete a book and everything derived from it."""
    build_orchestrator(db).delete_book(book_id)
    console.print(f"[green]✓ Deleted book {book_id}[/green]")


@cli.command(name='export-scenes')
@click.argument('book_id')
@click.option('--output', required=True, type=click.Path(), help='Output JSON path')
@click.pass_obj
@handle_pipeline_errors
def export_scenes_cmd(db, book_id, output):
    """Export a book's scenes and current soundscapes to JSON."""
    data = export_scenes(db, book_id)
    output_path = Path(output)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    with open(output_path, 'w') as f:
        json.dump(data, f, indent=2)
    console.print(f"[green]✓ Exported {len(data['scenes'])} scenes to {output_path}[/green]")


# ==================== Catalog ====================

@cli.command()
@click.option('--listing', 'listing_file', required=True, type=click.Path(exists=True),
              help='Storage listing JSON: {category: [{name, url}, ...]}')
@click.option('--curation', 'curation_file', type=click.Path(exists=True), default=None,
              help='Tags JSON keyed by bucket path, url or file name')
@click.pass_obj
@handle_pipeline_errors
def catalog_import(db, listing_file, curation_file):
    """Import curated soundscapes from a storage listing."""
    with open(listing_file, 'r') as f:
        listing = json.load(f)
    curation = {}
    if curation_file:
        with open(curation_file, 'r') as f:
            curation = json.load(f)

    created = SoundscapeCatalog(db).import_listing(listing, curation)
    console.print(f"[green]✓ Imported {len(created)} soundscape(s)[/green]")


@cli.command()
@click.option('--category', required=True)
@click.option('--name', required=True)
@click.option('--url', required=True)
@click.option('--mood', default=None)
@click.option('--setting', default=None)
@click.option('--intensity', type=float, default=None, help='0-10')
@click.option('--weather', default=None)
@click.option('--time-of-day', default=None)
@click.pass_obj
@handle_pipeline_errors
def catalog_add(db, category, name, url, mood, setting, intensity, weather, time_of_day):
    """Add a single soundscape to the catalog."""
    tags = {
        "mood": mood,
        "setting": setting,
        "intensity": intensity,
        "weather": weather,
        "time_of_day": time_of_day,
    }
    entry = SoundscapeCatalog(db).add(category, name, url, {k: v for k, v in tags.items() if v is not None})
    console.print(f"[green]✓ Added {entry.name}[/green] ([cyan]{entry.soundscape_id}[/cyan])")


@cli.command()
@click.option('--search', 'query', default=None, help='Filter by name or category')
@click.pass_obj
@handle_pipeline_errors
def catalog_list(db, query):
    """List the soundscape catalog."""
    catalog = SoundscapeCatalog(db)
    entries = catalog.search(query) if query else catalog.entries()
    if not entries:
        console.print("[yellow]Catalog is empty[/yellow]")
        return

    table = Table(title="Soundscapes")
    table.add_column("ID", style="cyan")
    table.add_column("Category")
    table.add_column("Name")
    table.add_column("Mood")
    table.add_column("Setting")
    table.add_column("Intensity", justify="right")
    for entry in entries:
        table.add_row(
            entry.soundscape_id,
            entry.category,
            entry.name,
            entry.tags.mood or "-",
            entry.tags.setting or "-",
            str(entry.tags.intensity) if entry.tags.intensity is not None else "-"
        )
    console.print(table)


@cli.command()
@click.argument('soundscape_id')
@click.pass_obj
@handle_pipeline_errors
def catalog_delete(db, soundscape_id):
    """Delete a soundscape unless a published book uses it."""
    AdminOverrideGateway(db).delete_soundscape(soundscape_id)
    console.print(f"[green]✓ Deleted soundscape {soundscape_id}[/green]")


def _status_markup(value: str) -> str:
    colours = {"failed": "red", "ready_for_review": "yellow", "published": "green"}
    colour = colours.get(value)
    return f"[{colour}]{value}[/{colour}]" if colour else value


def _print_outcome(book_id: str, book) -> None:
    if book is None:
        console.print(f"[yellow]Book {book_id} was cancelled[/yellow]")
    elif book.status.value == "failed":
        console.print(f"[red]✗ {book.title}: {book.processing_error}[/red]")
    else:
        console.print(f"[green]✓ {book.title}: {book.status.value}[/green]")


if __name__ == '__main__':
    cli()
