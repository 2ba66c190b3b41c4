"""CLI interface for convindex."""

from __future__ import annotations

import logging
import shutil
import sys
from pathlib import Path

import click

from . import __version__
from .config import (
    CHECKPOINT_PATH,
    CHROMA_PATH,
    DATA_DIR,
    EMBED_CONCURRENCY,
    INDEX_BATCH_SIZE,
    SOURCE_DIRS,
    SQLITE_PATH,
)
from .errors import ConvIndexError

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


@click.group()
@click.version_option(version=__version__, prog_name="convindex")
def cli():
    """convindex: import chat transcripts and index them for semantic search.

    Import transcript JSONL files into a local SQLite store, then index them
    into ChromaDB with embeddings from a local Ollama server.
    """
    logging.basicConfig(stream=sys.stderr, level=logging.WARNING, format=LOG_FORMAT)


@cli.command("import")
@click.argument("dirs", nargs=-1, type=click.Path(file_okay=False))
@click.option("--force", is_flag=True, help="Add new messages to conversations that already exist")
def import_cmd(dirs: tuple[str, ...], force: bool):
    """Import transcript JSONL files from DIRS (default: configured source dirs).

    Example:
        convindex import ~/.claude/projects
    """
    from .importer import ImportReconciler
    from .parser import find_transcript_files
    from .storage import ConversationStore

    source_dirs = [Path(d) for d in dirs] or SOURCE_DIRS
    files = find_transcript_files(source_dirs)
    total = len(files)
    if not total:
        click.echo("No transcript files found.")
        return

    click.echo(f"Found {total} transcript files.")

    try:
        with ConversationStore(SQLITE_PATH) as store:
            reconciler = ImportReconciler(store)
            with click.progressbar(length=total, label="Importing transcripts", show_pos=True) as bar:
                summary = reconciler.import_files(
                    files,
                    source=", ".join(str(d) for d in source_dirs),
                    skip_existing=not force,
                    on_progress=lambda done, _total, _outcome: bar.update(done - bar.pos),
                )
    except ConvIndexError as e:
        raise click.ClickException(str(e)) from e

    click.echo()
    click.echo(click.style("Import complete!", fg="green", bold=True))
    click.echo(f"  Imported: {summary.imported} files ({summary.total_messages} messages)")
    if summary.skipped:
        click.echo(f"  Skipped:  {summary.skipped} (already imported, use --force to add new messages)")
    if summary.duplicates:
        click.echo(f"  Duplicate messages ignored: {summary.duplicates}")
    if summary.failed:
        click.echo(click.style(f"  Failed:   {summary.failed}", fg="red"))
        for err in summary.errors:
            click.echo(f"    {err.file_path}: {err.error}")
    click.echo(f"  Duration: {summary.duration_ms / 1000:.1f}s")


@cli.command()
@click.option("--batch-size", type=click.IntRange(min=1), default=INDEX_BATCH_SIZE, show_default=True,
              help="Conversations per checkpoint")
@click.option("--concurrency", type=click.IntRange(min=1), default=EMBED_CONCURRENCY, show_default=True,
              help="Simultaneous embedding requests")
@click.option("--fresh", is_flag=True, help="Ignore any saved checkpoint and start from the beginning")
@click.option("--verbose", "-v", is_flag=True, help="Log progress details to stderr")
def index(batch_size: int, concurrency: int, fresh: bool, verbose: bool):
    """Chunk, embed and index all imported conversations.

    Interrupted runs resume from the last checkpoint unless --fresh is given.
    """
    if verbose:
        logging.getLogger().setLevel(logging.INFO)

    if not SQLITE_PATH.exists():
        click.echo("No data found. Import transcripts first:")
        click.echo("  convindex import ~/.claude/projects")
        return

    from .checkpoint import CheckpointStore
    from .embeddings import OllamaEmbedder
    from .indexer import ChunkIndexer
    from .models import IndexOptions
    from .storage import ConversationStore
    from .vectorstore import ConversationVectorStore

    embedder = OllamaEmbedder()
    health = embedder.health_check()
    if not health["available"] or not health["model_loaded"]:
        raise click.ClickException(health["error"])

    try:
        with ConversationStore(SQLITE_PATH) as store:
            indexer = ChunkIndexer(
                store,
                embedder,
                ConversationVectorStore(CHROMA_PATH),
                CheckpointStore(CHECKPOINT_PATH),
            )
            total = len(store.list_all_conversations())
            with click.progressbar(length=total, label="Indexing conversations", show_pos=True) as bar:
                result = indexer.run(
                    IndexOptions(
                        batch_size=batch_size,
                        concurrency=concurrency,
                        fresh=fresh,
                        on_progress=lambda done, _total, _last: bar.update(done - bar.pos),
                    )
                )
    except ConvIndexError as e:
        raise click.ClickException(str(e)) from e

    click.echo()
    click.echo(click.style("Indexing complete!", fg="green", bold=True))
    click.echo(f"  Conversations: {result.processed}/{result.total_conversations} indexed")
    click.echo(f"  Chunks:        {result.total_chunks}")
    if result.skipped:
        click.echo(f"  Skipped:       {result.skipped} (no indexable messages)")
    if result.errors:
        click.echo(click.style(f"  Errors:        {result.errors}", fg="red"))
    click.echo(f"  Duration:      {result.duration_ms / 1000:.1f}s")


@cli.command()
@click.argument("session_id")
@click.option("--project-path", default=None, help="Project the session belongs to")
@click.option("--cwd", default=None, help="Working directory of the session")
def stub(session_id: str, project_path: str | None, cwd: str | None):
    """Register SESSION_ID before its transcript is imported."""
    from .storage import ConversationStore

    with ConversationStore(SQLITE_PATH) as store:
        if store.conversation_exists(session_id):
            click.echo(f"Conversation {session_id} already exists.")
            return
        project_id = store.resolve_or_create_project(project_path) if project_path else None
        store.create_stub(session_id, project_path=project_path, cwd=cwd, project_id=project_id)

    click.echo(f"Created stub for {session_id}.")


@cli.command()
def stats():
    """Show statistics about imported and indexed conversations."""
    if not SQLITE_PATH.exists():
        click.echo("No data found. Import transcripts first:")
        click.echo("  convindex import ~/.claude/projects")
        return

    from .checkpoint import CheckpointStore
    from .storage import ConversationStore

    with ConversationStore(SQLITE_PATH) as store:
        s = store.get_stats()

    click.echo()
    click.echo(click.style("convindex Statistics", bold=True))
    click.echo(f"  Conversations:  {s['total_conversations']:,} ({s['stubs']:,} stubs)")
    click.echo(f"  Messages:       {s['total_messages']:,}")
    click.echo(f"  Projects:       {s['projects']:,}")
    click.echo(f"  Avg msgs/conv:  {s['avg_messages_per_conversation']}")
    if s["date_range_start"]:
        click.echo(f"  Date range:     {s['date_range_start']} to {s['date_range_end']}")

    if CHROMA_PATH.exists():
        from .vectorstore import ConversationVectorStore

        click.echo(f"  Indexed chunks: {ConversationVectorStore(CHROMA_PATH).count():,}")

    checkpoint = CheckpointStore(CHECKPOINT_PATH).load()
    if checkpoint is not None:
        click.echo(
            f"  Interrupted run: {checkpoint.processed_count}/{checkpoint.total_conversations} "
            f"conversations, resume with 'convindex index'"
        )

    db_size = SQLITE_PATH.stat().st_size
    chroma_size = (
        sum(f.stat().st_size for f in CHROMA_PATH.rglob("*") if f.is_file())
        if CHROMA_PATH.exists()
        else 0
    )
    click.echo(f"  Storage:        {(db_size + chroma_size) / (1024 * 1024):.1f} MB")
    click.echo(f"  Location:       {DATA_DIR}")
    click.echo()


@cli.command()
@click.confirmation_option(prompt="This will delete all imported and indexed data. Are you sure?")
def reset():
    """Delete all imported data and start fresh."""
    if DATA_DIR.exists():
        shutil.rmtree(DATA_DIR)
        click.echo(f"Deleted {DATA_DIR}")
    else:
        click.echo("No data to delete.")
