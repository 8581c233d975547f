"""Command line interface for refstore."""

from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Optional

import typer
from rich.console import Console
from rich.table import Table

from refstore.config import AppConfig
from refstore.errors import RefStoreError
from refstore.ingestion.saver import AttachmentMode
from refstore.library import Library, open_library

console = Console()
app = typer.Typer(help="refstore - local reference library with managed attachments")


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=level, format="[%(levelname)s] %(message)s")


@contextmanager
def _library(data_dir: Optional[Path], verbose: bool) -> Iterator[Library]:
    _setup_logging(verbose)
    config = AppConfig(data_dir=data_dir) if data_dir is not None else AppConfig()
    try:
        library = open_library(config, base_dir=Path.cwd())
    except RefStoreError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1) from exc

    try:
        yield library
    except RefStoreError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1) from exc
    finally:
        library.close()


DataDirOption = typer.Option(None, "--data-dir", help="Library data directory")
VerboseOption = typer.Option(False, "--verbose", "-v", help="Verbose logging")
ParentOption = typer.Option(None, "--parent", "-p", help="Parent record id")


@app.command("import-file")
def import_file(
    inputs: List[Path] = typer.Argument(..., help="Files to copy into storage.", resolve_path=True),
    parent: Optional[int] = ParentOption,
    data_dir: Optional[Path] = DataDirOption,
    verbose: bool = VerboseOption,
) -> None:
    """Copy files into managed storage as attachments."""
    with _library(data_dir, verbose) as library:
        for path in inputs:
            record = library.importer.import_from_file(path, parent_id=parent)
            console.print(f"Imported [bold]{path.name}[/bold] as {record.key} (id {record.id})")


@app.command("link-file")
def link_file(
    inputs: List[Path] = typer.Argument(..., help="Files to link in place.", resolve_path=True),
    parent: Optional[int] = ParentOption,
    data_dir: Optional[Path] = DataDirOption,
    verbose: bool = VerboseOption,
) -> None:
    """Create attachments referencing files where they are."""
    with _library(data_dir, verbose) as library:
        for path in inputs:
            record = library.importer.link_from_file(path, parent_id=parent)
            console.print(f"Linked [bold]{path}[/bold] as {record.key} (id {record.id})")


@app.command("link-url")
def link_url(
    url: str = typer.Argument(..., help="URL to link"),
    title: Optional[str] = typer.Option(None, help="Attachment title"),
    parent: Optional[int] = ParentOption,
    data_dir: Optional[Path] = DataDirOption,
    verbose: bool = VerboseOption,
) -> None:
    """Create a linked URL attachment."""
    with _library(data_dir, verbose) as library:
        record = library.importer.link_from_url(url, parent_id=parent, title=title)
        console.print(
            f"Linked [bold]{record.get_field('url')}[/bold] as {record.key} (id {record.id})"
        )


@app.command("import-records")
def import_records(
    source: Path = typer.Argument(..., help="JSON file with a list of records", exists=True),
    files: bool = typer.Option(False, "--files", help="Import attachment files referenced by path"),
    data_dir: Optional[Path] = DataDirOption,
    verbose: bool = VerboseOption,
) -> None:
    """Save parser output (a JSON list of generic records) into the library."""
    try:
        data = json.loads(source.read_text(encoding="utf-8"))
    except ValueError as exc:
        raise typer.BadParameter(f"Invalid JSON in {source}: {exc}") from exc

    with _library(data_dir, verbose) as library:
        saver = library.saver(
            attachment_mode=AttachmentMode.FILE if files else AttachmentMode.IGNORE,
            base_uri=source.resolve(),
        )
        outcome = {}

        def done(success: bool, result: object) -> None:
            outcome["success"] = success
            outcome["result"] = result

        saver.save_items(data, done)
        if not outcome.get("success"):
            console.print(f"[red]Import failed: {outcome.get('result')}[/red]")
            raise typer.Exit(code=1)
        console.print(f"Saved {len(outcome['result'])} records.")


@app.command("list")
def list_records(
    item_type: Optional[str] = typer.Option(None, "--type", help="Only list this item type"),
    data_dir: Optional[Path] = DataDirOption,
    verbose: bool = VerboseOption,
) -> None:
    """List records in the library."""
    with _library(data_dir, verbose) as library:
        records = library.store.list_records(item_type)
        if not records:
            console.print("[yellow]No records found.[/yellow]")
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("ID")
        table.add_column("Key")
        table.add_column("Type")
        table.add_column("Title")
        table.add_column("Path")

        for record in records:
            path = record.attachment.path if record.attachment else ""
            table.add_row(
                str(record.id),
                record.key,
                record.item_type,
                record.get_field("title")[:80],
                path or "",
            )
        console.print(table)


@app.command()
def basename(
    record_id: int = typer.Argument(..., help="Record id"),
    format_string: Optional[str] = typer.Option(None, "--format", help="Rename template"),
    data_dir: Optional[Path] = DataDirOption,
    verbose: bool = VerboseOption,
) -> None:
    """Print the attachment file base name generated for a record."""
    with _library(data_dir, verbose) as library:
        name = library.importer.get_file_base_name_from_item(record_id, format_string)
        console.print(name, markup=False, highlight=False)


@app.command()
def search(
    query: str = typer.Argument(..., help="Words to look for"),
    limit: int = typer.Option(20, help="Number of results to display"),
    data_dir: Optional[Path] = DataDirOption,
    verbose: bool = VerboseOption,
) -> None:
    """Search attachment full text."""
    with _library(data_dir, verbose) as library:
        ids = library.indexer.search(query, limit=limit)
        if not ids:
            console.print("[yellow]No matches found.[/yellow]")
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("ID")
        table.add_column("Key")
        table.add_column("Title")
        for record_id in ids:
            record = library.store.get(record_id)
            if record is None:
                continue
            table.add_row(str(record.id), record.key, record.get_field("title"))
        console.print(table)


@app.command()
def delete(
    record_id: int = typer.Argument(..., help="Record id"),
    data_dir: Optional[Path] = DataDirOption,
    verbose: bool = VerboseOption,
) -> None:
    """Delete a record together with its attachment files."""
    with _library(data_dir, verbose) as library:
        library.delete(record_id)
        console.print(f"Deleted record {record_id}.")
