"""Document extraction pipeline CLI."""

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.progress import BarColumn, Progress, TaskProgressColumn, TextColumn
from rich.table import Table as RichTable

from docextract.config import settings
from docextract.errors import ExtractionError
from docextract.models import (
    ExtractionJob,
    ExtractionMode,
    ExtractionSchema,
    JobStatus,
    ProgressEvent,
    RunnerEvent,
    TerminalFailure,
)
from docextract.pipeline import (
    DocumentLoader,
    ExtractionService,
    build_schema,
    plan_batches,
    to_json_schema,
)
from docextract.providers import LocalBlobStore, OpenAICompatibleLlm, TesseractOcr

app = typer.Typer(
    name="docextract",
    help="Schema-driven extraction of structured records from documents",
    add_completion=False,
)
console = Console()


def configure_logging(level: str) -> None:
    """Route stdlib logging through rich."""
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
        force=True,
    )


@app.callback()
def main(
    log_level: str = typer.Option(settings.log_level, help="Logging level"),
) -> None:
    configure_logging(log_level)


def load_schema_file(path: Path) -> ExtractionSchema:
    """Read a schema definition file.

    The file holds either a bare property list or an object with
    ``name``, ``properties`` and optional ``examples`` and ``prompt``.
    """
    definition: Any = json.loads(path.read_text(encoding="utf-8"))
    if isinstance(definition, list):
        definition = {"properties": definition}
    return build_schema(
        definition.get("name") or path.stem,
        definition.get("properties") or [],
        examples=definition.get("examples"),
        prompt=definition.get("prompt"),
    )


@app.command("compile")
def compile_schema_file(
    schema_path: Path = typer.Argument(..., exists=True, help="Schema definition (JSON)"),
    output: Optional[Path] = typer.Option(None, help="Write the compiled JSON Schema here"),
) -> None:
    """Compile a property list into JSON Schema."""
    try:
        schema = load_schema_file(schema_path)
    except ExtractionError as exc:
        console.print(f"[bold red]Invalid schema:[/bold red] {exc}")
        raise typer.Exit(code=1)

    rendered = json.dumps(to_json_schema(schema.compiled), indent=2, ensure_ascii=False)
    if output:
        output.write_text(rendered + "\n", encoding="utf-8")
        console.print(f"[green]Wrote[/green] {output}")
    else:
        console.print_json(rendered)


@app.command()
def plan(
    page_count: int = typer.Argument(..., help="Number of pages in the document"),
    max_pages: int = typer.Option(settings.max_pages_per_batch, help="Maximum pages per batch"),
) -> None:
    """Show how a document would be split into batches."""
    try:
        batches = plan_batches(page_count, max_pages)
    except ExtractionError as exc:
        console.print(f"[bold red]Cannot plan:[/bold red] {exc}")
        raise typer.Exit(code=1)

    table = RichTable(title=f"{len(batches)} batch(es)")
    table.add_column("#", justify="right")
    table.add_column("Pages")
    table.add_column("Size", justify="right")
    for batch in batches:
        table.add_row(str(batch.index + 1), batch.label, str(batch.page_count))
    console.print(table)


@app.command()
def extract(
    files: list[Path] = typer.Argument(..., exists=True, help="PDF, image or CSV files"),
    schema_path: Optional[Path] = typer.Option(None, "--schema", exists=True, help="Schema definition (JSON)"),
    mode: ExtractionMode = typer.Option(ExtractionMode.OCR_TEXT, help="How pages reach the LLM"),
    store_dir: Path = typer.Option(Path("./blobs"), help="Blob store directory"),
    max_pages: int = typer.Option(settings.max_pages_per_batch, help="Maximum pages per batch"),
    concurrency: int = typer.Option(settings.max_concurrent_batches, help="Concurrent provider calls"),
    persist: bool = typer.Option(False, help="Store results and progress in PostgreSQL"),
    output: Optional[Path] = typer.Option(None, help="Write results as JSON here"),
) -> None:
    """Extract structured records from documents."""
    try:
        schema = load_schema_file(schema_path) if schema_path else None
    except ExtractionError as exc:
        console.print(f"[bold red]Invalid schema:[/bold red] {exc}")
        raise typer.Exit(code=1)

    blob_store = LocalBlobStore(store_dir)
    loader = DocumentLoader(blob_store, ocr=TesseractOcr(), render_pages=mode != ExtractionMode.OCR_TEXT)
    documents = []
    for file_path in files:
        try:
            with console.status(f"Loading {file_path.name}..."):
                documents.append(loader.load(blob_store.put_file(file_path), filename=file_path.name))
        except ExtractionError as exc:
            console.print(f"[bold red]Cannot load {file_path.name}:[/bold red] {exc}")
            raise typer.Exit(code=1)
        console.print(f"[bold blue]Loaded:[/bold blue] {file_path.name} ({documents[-1].page_count} pages)")

    if persist:
        from docextract.storage import SqlJobTracker, SqlResultStore

        result_store, job_tracker = SqlResultStore(), SqlJobTracker()
    else:
        from docextract.storage import InMemoryJobTracker, InMemoryResultStore

        result_store, job_tracker = InMemoryResultStore(), InMemoryJobTracker()

    service = ExtractionService(
        OpenAICompatibleLlm(),
        result_store,
        job_tracker,
        blob_store=blob_store,
        mode=mode,
        max_pages_per_batch=max_pages,
        concurrency=concurrency,
    )
    job = ExtractionJob()

    with Progress(
        TextColumn("[bold blue]Extracting"), BarColumn(), TaskProgressColumn(), console=console
    ) as progress:
        task = progress.add_task("extract", total=100)

        def on_event(event: RunnerEvent) -> None:
            if isinstance(event, ProgressEvent):
                progress.update(task, completed=event.percent)
            elif isinstance(event, TerminalFailure):
                progress.console.print(f"[red]Failed[/red] {event.batch.label}: {event.failure.reason}")

        outcome = asyncio.run(service.run_job(job, documents, schema, on_event=on_event))
        progress.update(task, completed=outcome.job.progress)

    summary = outcome.summary
    console.print(
        f"[bold]{outcome.job.status.value}[/bold]: {summary.total_items} item(s), "
        f"average confidence {summary.average_confidence:.2f}, "
        f"{summary.processed_files}/{summary.total_files} file(s), "
        f"{summary.failed_batches} failed batch(es)"
    )

    if output:
        payload = {
            "job": outcome.job.model_dump(mode="json"),
            "summary": summary.model_dump(mode="json"),
            "results": [result.model_dump(mode="json") for result in outcome.results],
        }
        output.write_text(json.dumps(payload, indent=2, ensure_ascii=False) + "\n", encoding="utf-8")
        console.print(f"[green]Wrote[/green] {output}")

    if outcome.job.status == JobStatus.FAILED:
        raise typer.Exit(code=1)


@app.command("init-db")
def init_db() -> None:
    """Create the database tables."""
    from docextract.storage import close_db
    from docextract.storage import init_db as create_tables

    async def _run() -> None:
        try:
            await create_tables()
        finally:
            await close_db()

    asyncio.run(_run())
    console.print("[green]Database tables created[/green]")


if __name__ == "__main__":
    app()
