"""Command line interface for localkb."""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console
from rich.table import Table

from localkb.config import load_config
from localkb.errors import LocalKBError
from localkb.models import SearchFilters
from localkb.store import KnowledgeStore
from localkb.watch import DocumentWatcher


console = Console()
app = typer.Typer(help="localkb - local hybrid search over your documents")


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=level, format="[%(levelname)s] %(message)s")


def _ensure_data_dir(data_dir: Path) -> None:
    data_dir.mkdir(parents=True, exist_ok=True)


def _open_store(data_dir: Optional[Path]) -> KnowledgeStore:
    config = load_config(data_dir)
    _ensure_data_dir(config.resolve_data_dir())
    try:
        return KnowledgeStore.open(config)
    except LocalKBError as exc:
        console.print(f"[red]Cannot open index: {exc}[/red]")
        raise typer.Exit(code=1) from exc


DataDirOption = typer.Option(None, "--data-dir", help="Index data directory")
VerboseOption = typer.Option(False, "--verbose", "-v", help="Verbose logging")


@app.command()
def index(
    inputs: Optional[List[Path]] = typer.Argument(
        None, help="Files or directories to index (defaults to the configured roots)."
    ),
    data_dir: Optional[Path] = DataDirOption,
    verbose: bool = VerboseOption,
) -> None:
    """Index new and changed documents."""
    _setup_logging(verbose)
    store = _open_store(data_dir)
    try:
        console.print(f"Indexing into [bold]{store.config.resolve_data_dir()}[/bold]...")
        try:
            summary = store.index_paths(inputs or None)
        except LocalKBError as exc:
            console.print(f"[red]Indexing failed: {exc}[/red]")
            raise typer.Exit(code=1) from exc
        console.print(
            f"Indexed: {summary.indexed}, updated: {summary.updated}, "
            f"skipped: {summary.skipped}, removed: {summary.removed}, failed: {summary.failed}"
        )
    finally:
        store.close()


@app.command()
def search(
    query: str = typer.Argument(..., help="Query text"),
    k: int = typer.Option(8, "--k", "-k", help="Number of results to display"),
    alpha: float = typer.Option(0.65, help="Weight of the semantic score (0 = keyword only)"),
    types: Optional[List[str]] = typer.Option(None, "--type", help="Restrict to a chunk type"),
    tags: Optional[List[str]] = typer.Option(None, "--tag", help="Require a tag (repeatable)"),
    data_dir: Optional[Path] = DataDirOption,
    verbose: bool = VerboseOption,
) -> None:
    """Execute a hybrid search."""
    _setup_logging(verbose)
    store = _open_store(data_dir)
    try:
        filters = SearchFilters(types=types or None, tags=tags or None)
        response = store.search(query, k=k, alpha=alpha, filters=filters)
    finally:
        store.close()

    if not response.results:
        console.print("[yellow]No matches found.[/yellow]")
        return

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Score")
    table.add_column("Document")
    table.add_column("Page")
    table.add_column("Snippet")

    for hit in response.results:
        citation = hit.citation
        snippet = citation.snippet.replace("\n", " ")
        page = str(citation.page) if citation.page is not None else "-"
        table.add_row(f"{hit.score:.4f}", citation.file_path, page, snippet[:180])

    console.print(table)


@app.command()
def get(
    path: Path = typer.Argument(..., help="Indexed document path"),
    page: Optional[int] = typer.Option(None, help="Only this page"),
    data_dir: Optional[Path] = DataDirOption,
    verbose: bool = VerboseOption,
) -> None:
    """Print the indexed text of a document."""
    _setup_logging(verbose)
    store = _open_store(data_dir)
    try:
        document = store.get_document(path, page=page)
    except LocalKBError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1) from exc
    finally:
        store.close()
    if document.partial:
        console.print("[yellow]Extraction was partial for this document.[/yellow]")
    console.print(document.text, markup=False, highlight=False)


@app.command()
def remove(
    path: Path = typer.Argument(..., help="Document path to forget"),
    data_dir: Optional[Path] = DataDirOption,
    verbose: bool = VerboseOption,
) -> None:
    """Remove a document from the index."""
    _setup_logging(verbose)
    store = _open_store(data_dir)
    try:
        removed = store.remove_path(path)
    finally:
        store.close()
    if removed:
        console.print(f"Removed {path}.")
    else:
        console.print(f"[yellow]{path} was not indexed.[/yellow]")


@app.command()
def stats(
    data_dir: Optional[Path] = DataDirOption,
    verbose: bool = VerboseOption,
) -> None:
    """Show corpus statistics."""
    _setup_logging(verbose)
    store = _open_store(data_dir)
    try:
        result = store.stats()
    finally:
        store.close()

    table = Table(show_header=False)
    table.add_row("Files", str(result.files))
    table.add_row("Chunks", str(result.chunks))
    table.add_row("Embeddings", str(result.embedding_count))
    table.add_row("Average chunk length", str(result.avg_chunk_length))
    table.add_row("Last indexed", result.last_indexed_at or "-")
    for kind, count in result.by_type.items():
        table.add_row(f"  {kind}", str(count))
    console.print(table)


@app.command()
def watch(
    inputs: Optional[List[Path]] = typer.Argument(
        None, help="Directories to watch (defaults to the configured roots)."
    ),
    data_dir: Optional[Path] = DataDirOption,
    verbose: bool = VerboseOption,
) -> None:
    """Index once, then keep the index current as files change."""
    _setup_logging(verbose)
    store = _open_store(data_dir)
    try:
        summary = store.index_paths(inputs or None)
        console.print(
            f"Indexed: {summary.indexed}, updated: {summary.updated}, skipped: {summary.skipped}"
        )
        with DocumentWatcher(store, inputs or None):
            console.print("Watching for changes, press Ctrl+C to stop.")
            while True:
                time.sleep(1)
    except KeyboardInterrupt:
        console.print("Stopped.")
    finally:
        store.close()
