"""
Command Line Interface for Agent Artifacts.
"""

import asyncio
from typing import Optional

import typer
from rich import print as rprint
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from ..artifacts.repository import SqlArtifactRepository
from ..artifacts.storage import ArtifactStore
from ..db.audit_service import StorageAttemptLog
from ..db.base import get_session_local, init_database
from ..embeddings.providers import get_embedder
from ..embeddings.queue import EmbeddingQueue
from ..embeddings.worker import run_worker
from ..retrieval.search import HybridSearchEngine, SearchError, SearchRequest

app = typer.Typer(help="Agent Artifacts - canonical artifact store and retrieval")
console = Console()


def _session():
    asyncio.run(init_database())
    return get_session_local()()


@app.command()
def serve(
    port: Optional[int] = typer.Option(None, help="Port to run the API server on"),
    host: Optional[str] = typer.Option(None, help="Host to bind the server to"),
    dev: bool = typer.Option(False, help="Run in development mode (auto-reload)"),
):
    """Start the HTTP API."""
    from ..main import run

    rprint(Panel.fit("Starting Agent Artifacts API", style="bold blue"))
    run(host=host, port=port, reload=dev)


@app.command()
def worker(
    provider: Optional[str] = typer.Option(None, help="Embedding provider (openai or stub)"),
    poll_interval: Optional[int] = typer.Option(None, help="Seconds between poll cycles"),
    batch_size: Optional[int] = typer.Option(None, help="Jobs to claim per cycle"),
    once: bool = typer.Option(False, help="Process a single batch and exit"),
):
    """Run the embedding worker."""
    asyncio.run(init_database())
    report = run_worker(
        embedding_provider=provider,
        poll_interval=poll_interval,
        batch_size=batch_size,
        once=once,
    )
    if report is not None:
        console.print(
            f"Processed {report.processed}: [green]{report.succeeded} succeeded[/green], "
            f"[red]{report.failed} failed[/red], {report.skipped} skipped"
        )


@app.command()
def search(
    query: Optional[str] = typer.Argument(None, help="Query text (omit for recency order)"),
    repo: Optional[str] = typer.Option(None, help="Repository filter"),
    ticket: Optional[str] = typer.Option(None, help="Ticket filter"),
    recency_days: Optional[int] = typer.Option(None, help="Only artifacts from the last N days"),
    limit: int = typer.Option(20, help="Maximum results"),
    provider: Optional[str] = typer.Option(None, help="Embedding provider for the query"),
):
    """Search artifacts."""
    embedder = get_embedder(provider)
    db = _session()
    try:
        engine = HybridSearchEngine(db, embedder)
        response = engine.search(
            SearchRequest(
                query=query,
                repo_filter=repo,
                ticket_filter=ticket,
                recency_days=recency_days,
                limit=limit,
            )
        )
    except SearchError as e:
        console.print(f"❌ {e.message}")
        raise typer.Exit(code=1)
    finally:
        db.close()
        if embedder is not None:
            embedder.close()

    table = Table(title="Search Results", show_header=True, header_style="bold magenta")
    table.add_column("Artifact", style="cyan")
    table.add_column("Title")
    table.add_column("Similarity", style="green")
    table.add_column("Created")
    for hit in response.results:
        table.add_row(
            hit.artifact_id,
            hit.title,
            f"{hit.similarity:.2f}" if hit.similarity is not None else "-",
            hit.created_at or "",
        )
    console.print(table)

    meta = response.metadata
    console.print(f"Considered {meta['totalConsidered']}, selected {meta['totalSelected']}")
    if meta.get("reason"):
        console.print(f"[yellow]{meta['reason']}[/yellow]")


@app.command()
def jobs(
    status: Optional[str] = typer.Option(None, help="Filter by status"),
    limit: int = typer.Option(20, help="Maximum jobs to show"),
):
    """Show embedding job counts and recent jobs."""
    db = _session()
    try:
        queue = EmbeddingQueue(db)
        counts = queue.status_counts()
        recent = queue.list_jobs(status=status, limit=limit)

        summary = Table(title="Embedding Queue", show_header=True, header_style="bold magenta")
        summary.add_column("Status", style="cyan")
        summary.add_column("Count", style="green")
        for key, count in counts.items():
            summary.add_row(key, str(count))
        console.print(summary)

        table = Table(title="Recent Jobs", show_header=True, header_style="bold cyan")
        table.add_column("Job", style="yellow")
        table.add_column("Artifact")
        table.add_column("Atom")
        table.add_column("Status", style="green")
        table.add_column("Error", style="red")
        for job in recent:
            table.add_row(job.job_id, job.artifact_id, job.atom_type or "", job.status, job.error_message or "")
        console.print(table)
    finally:
        db.close()


@app.command("requeue-stale")
def requeue_stale(
    older_than: int = typer.Argument(..., help="Requeue jobs claimed more than this many seconds ago"),
):
    """Move embedding jobs stuck in 'processing' back to 'queued'."""
    db = _session()
    try:
        requeued = EmbeddingQueue(db).requeue_stale(older_than)
    finally:
        db.close()
    console.print(f"✅ Requeued {requeued} stale job(s)")


@app.command()
def cleanup(
    ticket_ref: str = typer.Argument(..., help="Ticket whose duplicates should be collapsed"),
    display_id: Optional[str] = typer.Option(None, help="Ticket display id used in titles"),
):
    """Delete empty and duplicate artifacts on a ticket."""
    db = _session()
    try:
        store = ArtifactStore(SqlArtifactRepository(db), StorageAttemptLog(db))
        report = store.cleanup_duplicates(ticket_ref, display_id=display_id)
    finally:
        db.close()
    console.print(
        f"✅ {ticket_ref}: kept {len(report.kept)}, deleted {len(report.deleted)}, "
        f"retitled {len(report.retitled)}"
    )


if __name__ == "__main__":
    app()
