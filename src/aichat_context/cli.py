"""CLI entry point for aichat-context."""

import asyncio
import json
import logging
from pathlib import Path

import click
import uvicorn

from .context import ContextCache
from .export import conversation_to_json, conversation_to_markdown
from .provider import StorageError
from .storage import ConversationNotFoundError, InvalidImportError, StorageCoordinator


def _open_cache() -> ContextCache:
    try:
        return ContextCache(StorageCoordinator())
    except StorageError as e:
        raise click.ClickException(str(e))


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
def main(verbose: bool):
    """Manage the persisted chat context: history, token budget and session metadata."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@main.command()
@click.option("--port", default=8080, help="Port to serve on.")
@click.option("--host", default="127.0.0.1", help="Host to bind to.")
def serve(port: int, host: str):
    """Start the HTTP API."""
    click.echo(f"Starting aichat-context on http://{host}:{port}")
    uvicorn.run("aichat_context.server:app", host=host, port=port, reload=False)


@main.command()
def stats():
    """Show storage, message and token usage statistics."""
    cache = _open_cache()

    async def _stats():
        return await cache.get_comprehensive_stats(), await cache.get_token_usage()

    data, usage = asyncio.run(_stats())
    db = data["storage"]["database"]
    msgs = data["storage"]["messages"]
    click.echo(f"Backend:    {db['type']} (schema v{db['version']}, {db['size']} bytes)")
    click.echo(
        f"Messages:   {msgs['total_messages']} "
        f"({msgs['user_messages']} user, {msgs['assistant_messages']} assistant, "
        f"{msgs['summarized_messages']} summarized)"
    )
    click.echo(f"Tokens:     {usage['used']} used, {usage['available']} available ({usage['percentage']:.1f}%)")
    if msgs["oldest_message"]:
        click.echo(f"Oldest:     {msgs['oldest_message'].isoformat()}")
        click.echo(f"Newest:     {msgs['newest_message'].isoformat()}")


@main.command("export")
@click.option("--format", "fmt", type=click.Choice(["json", "md"]), default="json", help="Export format.")
@click.option("--output", "-o", type=click.Path(dir_okay=False, path_type=Path), help="Write to a file instead of stdout.")
def export_cmd(fmt: str, output: Path | None):
    """Export the conversation."""
    cache = _open_cache()
    try:
        export = asyncio.run(cache.export_conversation())
    except ConversationNotFoundError as e:
        raise click.ClickException(str(e))

    content = conversation_to_json(export) if fmt == "json" else conversation_to_markdown(export)
    if output:
        output.write_text(content, encoding="utf-8")
        click.echo(f"Exported {export['metadata']['total_messages']} messages to {output}")
    else:
        click.echo(content)


@main.command("import")
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def import_cmd(path: Path):
    """Replace the stored conversation with an exported JSON file."""
    cache = _open_cache()

    async def _import(data):
        await cache.import_conversation(data)
        return await cache.get_token_usage()

    try:
        data = json.loads(path.read_text(encoding="utf-8"))
        usage = asyncio.run(_import(data))
    except (json.JSONDecodeError, InvalidImportError) as e:
        raise click.ClickException(f"Cannot import {path}: {e}")

    click.echo(f"Imported {path} ({usage['used']} tokens)")


@main.command()
@click.option("--max-messages", type=click.IntRange(min=0), help="Keep at most this many messages.")
@click.option("--max-tokens", type=click.IntRange(min=0), help="Keep at most this many tokens.")
@click.option("--max-age", type=click.FloatRange(min=0), help="Drop messages older than this many days.")
def cleanup(max_messages: int | None, max_tokens: int | None, max_age: float | None):
    """Remove old messages by age, count and token budget."""
    cache = _open_cache()
    result = asyncio.run(cache.advanced_cleanup(
        max_messages=max_messages, max_tokens=max_tokens, max_age=max_age,
    ))
    click.echo(f"Removed {result['removed_messages']} messages ({result['removed_tokens']} tokens)")


@main.command()
def summarize():
    """Summarize stored messages that exceed the summarization threshold."""
    cache = _open_cache()
    result = asyncio.run(cache.summarize_existing_messages())
    click.echo(f"Summarized {result['summarized']} messages, saved {result['saved_tokens']} tokens")


@main.command()
def selftest():
    """Check that the storage backend can write, read and delete a record."""
    cache = _open_cache()
    backend = cache.storage.backend.name
    if asyncio.run(cache.test_storage()):
        click.echo(f"{backend} storage OK")
    else:
        raise click.ClickException(f"{backend} storage self-test failed")


@main.command()
@click.confirmation_option(prompt="Delete all stored conversation data?")
def clear():
    """Delete all stored data and reset the session context."""
    cache = _open_cache()
    asyncio.run(cache.clear_all_data())
    click.echo("Cleared all conversation data")
