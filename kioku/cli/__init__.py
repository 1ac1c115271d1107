"""Kioku CLI application - main entry point."""

import asyncio
import json
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, TypeVar

import typer
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from kioku.config import Config, StoreConfig, load_config
from kioku.console import get_stderr_console, get_stdout_console
from kioku.exceptions import KiokuError
from kioku.memory.embeddings import EmbeddingProvider, create_embedding_provider
from kioku.memory.schema import MemoryRole
from kioku.memory.store import MemoryStore, StoreBackend, create_store

T = TypeVar("T")

app = typer.Typer(
    name="kioku",
    help="Conversational memory retrieval and prompt context assembly",
    no_args_is_help=True,
)

# Global console for CLI output - uses stdout
console = get_stdout_console()


def _fail(message: str) -> None:
    get_stderr_console().print(f"[red]{escape(message)}[/red]")
    raise typer.Exit(1)


def _get_config(ctx: typer.Context) -> Config:
    return ctx.obj["config"]


def _run_with_store(config: Config, fn: Callable[[MemoryStore], Awaitable[T]]) -> T:
    """Open the configured store, run ``fn`` against it, and always close it."""

    async def _main() -> T:
        store = create_store(config.store)
        try:
            return await fn(store)
        finally:
            await store.close()

    try:
        return asyncio.run(_main())
    except KiokuError as e:
        _fail(f"Error: {e}")


def _embedder(config: Config) -> EmbeddingProvider:
    return create_embedding_provider(config.embedding)


def _truncate(text: str, width: int = 80) -> str:
    text = text.replace("\n", " ")
    return text if len(text) <= width else text[: width - 3] + "..."


@app.callback()
def main_callback(
    ctx: typer.Context,
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to config.json"),
):
    """Kioku memory tools."""
    try:
        config = load_config(config_path)
    except KiokuError as e:
        _fail(str(e))
    ctx.obj = {"config": config}


@app.command()
def version():
    """Show version information."""
    from kioku import __version__

    console.print(f"Kioku version {__version__}")


@app.command()
def stats(ctx: typer.Context):
    """Show store backend and entry count."""
    config = _get_config(ctx)
    count = _run_with_store(config, lambda store: store.count())

    table = Table(title="Memory Store")
    table.add_column("Setting", style="cyan")
    table.add_column("Value")
    table.add_row("Backend", StoreBackend(config.store.backend).value)
    table.add_row("Path", str(config.store.path) if config.store.path else "(default)")
    table.add_row("Embedding dimension", str(config.store.embedding_dim))
    table.add_row("Metric", config.store.search.metric.value)
    table.add_row("Exact search", str(config.store.search.exact))
    table.add_row("Entries", str(count))
    console.print(table)


@app.command()
def add(
    ctx: typer.Context,
    content: str = typer.Argument(help="Message text to remember"),
    user: Optional[str] = typer.Option(None, "--user", "-u", help="User id"),
    conversation: Optional[str] = typer.Option(None, "--conversation", help="Conversation id"),
    role: str = typer.Option("user", "--role", "-r", help="user, assistant or system"),
    no_embed: bool = typer.Option(False, "--no-embed", help="Store without an embedding"),
):
    """Add a message to memory."""
    from kioku.recorder import MemoryRecorder

    config = _get_config(ctx)
    try:
        memory_role = MemoryRole.parse(role)
    except ValueError as e:
        _fail(str(e))

    embedder = None if no_embed else _embedder(config)

    async def _add(store: MemoryStore):
        recorder = MemoryRecorder(store, embedder)
        return await recorder.record(content, memory_role, user_id=user, conversation_id=conversation)

    entry = _run_with_store(config, _add)
    if entry is None:
        _fail("Nothing stored")
    suffix = "" if entry.has_embedding else " (no embedding)"
    console.print(f"[green]✓ Stored {entry.id}{suffix}[/green]")


@app.command()
def search(
    ctx: typer.Context,
    query: str = typer.Argument(help="Search query"),
    user: Optional[str] = typer.Option(None, "--user", "-u", help="Restrict to user"),
    conversation: Optional[str] = typer.Option(None, "--conversation", help="Restrict to conversation"),
    limit: int = typer.Option(5, "--limit", "-n", help="Maximum results"),
):
    """Semantic search over stored messages."""
    config = _get_config(ctx)
    embedder = _embedder(config)

    async def _search(store: MemoryStore):
        vector = await embedder.embed(query)
        return await store.semantic_search(vector, limit, user_id=user, conversation_id=conversation)

    hits = _run_with_store(config, _search)
    if not hits:
        console.print("[yellow]No matching memories found[/yellow]")
        return

    table = Table(title=f"Results for '{query}'")
    table.add_column("Score", justify="right", style="cyan")
    table.add_column("Role", style="magenta")
    table.add_column("Content")
    table.add_column("Conversation", style="dim")
    for hit in hits:
        table.add_row(
            f"{hit.score:.3f}",
            hit.entry.metadata.role.value,
            Text(_truncate(hit.entry.content)),
            hit.entry.metadata.conversation_id or "",
        )
    console.print(table)


@app.command()
def context(
    ctx: typer.Context,
    query: str = typer.Argument(help="Current user message"),
    user: Optional[str] = typer.Option(None, "--user", "-u", help="User id"),
    conversation: Optional[str] = typer.Option(None, "--conversation", help="Conversation id"),
    budget: Optional[int] = typer.Option(None, "--budget", help="Override token budget"),
    as_messages: bool = typer.Option(False, "--messages", help="Print chat messages as JSON"),
):
    """Assemble the prompt context for a message."""
    from kioku.context.builder import create_context_builder
    from kioku.context.prompt import format_prompt

    config = _get_config(ctx)
    needs_embedder = "semantic" in config.context.strategies
    embedder = _embedder(config) if needs_embedder else None

    async def _build(store: MemoryStore):
        builder = create_context_builder(config.context, store, embedder)
        builder.for_user(user).for_conversation(conversation).with_query(query)
        if budget is not None:
            builder.with_token_budget(budget)
        return await builder.build()

    built = _run_with_store(config, _build)

    if as_messages:
        payload = [message.to_dict() for message in built.to_messages(query)]
        typer.echo(json.dumps(payload, indent=2, ensure_ascii=False))
        return

    meta = built.metadata
    subtitle = (
        f"{meta.total_tokens}/{meta.token_budget} tokens, {meta.message_count} messages"
        f", dropped {meta.dropped_semantic} semantic / {meta.dropped_recent} recent"
    )
    console.print(Panel(Text(format_prompt(built, query).rstrip()), title="Context", subtitle=subtitle))


@app.command("export")
def export_command(
    ctx: typer.Context,
    path: Path = typer.Argument(help="JSONL file to write"),
):
    """Export all entries to JSONL."""
    from kioku.memory.migration import export_entries

    config = _get_config(ctx)
    count = _run_with_store(config, lambda store: export_entries(store, path))
    console.print(f"[green]✓ Exported {count} entries to {path}[/green]")


@app.command("import")
def import_command(
    ctx: typer.Context,
    path: Path = typer.Argument(help="JSONL file to read"),
    overwrite: bool = typer.Option(False, "--overwrite", help="Replace entries that already exist"),
):
    """Import entries from JSONL."""
    from kioku.memory.migration import import_entries

    if not path.exists():
        _fail(f"File not found: {path}")

    config = _get_config(ctx)

    async def _import(store: MemoryStore):
        try:
            return await import_entries(store, path, overwrite=overwrite)
        except ValueError as e:
            _fail(str(e))

    result = _run_with_store(config, _import)
    console.print(f"[green]✓ Imported {result.copied} entries ({result.skipped} skipped)[/green]")


@app.command()
def backfill(
    ctx: typer.Context,
    batch_size: Optional[int] = typer.Option(None, "--batch-size", help="Texts per embedding request"),
):
    """Embed entries that have no embedding yet."""
    from kioku.memory.migration import backfill_embeddings

    config = _get_config(ctx)
    embedder = _embedder(config)
    size = batch_size or config.embedding.batch_size

    count = _run_with_store(config, lambda store: backfill_embeddings(store, embedder, batch_size=size))
    if count == 0:
        console.print("[yellow]All entries already have embeddings[/yellow]")
    else:
        console.print(f"[green]✓ Embedded {count} entries[/green]")


@app.command()
def migrate(
    ctx: typer.Context,
    to_backend: StoreBackend = typer.Option(..., "--to", help="Target backend"),
    to_path: Optional[Path] = typer.Option(None, "--to-path", help="Target database path"),
    overwrite: bool = typer.Option(False, "--overwrite", help="Replace entries that already exist"),
):
    """Copy every entry into another backend."""
    from kioku.memory.migration import migrate as migrate_entries

    config = _get_config(ctx)
    target_config = StoreConfig(
        backend=to_backend,
        path=to_path,
        table_name=config.store.table_name,
        embedding_dim=config.store.embedding_dim,
        search=config.store.search,
    )

    async def _migrate(source: MemoryStore) -> Any:
        target = create_store(target_config)
        try:
            return await migrate_entries(source, target, overwrite=overwrite)
        finally:
            await target.close()

    result = _run_with_store(config, _migrate)
    console.print(
        f"[green]✓ Migrated {result.copied} entries to {to_backend.value} ({result.skipped} skipped)[/green]"
    )


def main():
    app()
