"""
LocalChat CLI

Command-line access to the local conversation store.

Usage:
    localchat list                         # Conversations grouped by recency
    localchat show CONVERSATION_ID         # Print one conversation
    localchat new "Trip planning"          # Create an empty conversation
    localchat say CONVERSATION_ID "Hi"     # Append a message
    localchat rename CONVERSATION_ID NAME  # Rename a conversation
    localchat delete CONVERSATION_ID       # Delete a conversation
    localchat export CONVERSATION_ID       # Write conversation_<id>.json
    localchat import FILE                  # Import an exported conversation
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from collections.abc import Awaitable, Callable
from datetime import datetime
from pathlib import Path
from typing import Any, TypeVar

import click
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from localchat import __version__
from localchat.config import get_settings
from localchat.conversations import (
    ConversationActions,
    ConversationStore,
    ConversationStoreError,
    GenerationTracker,
    group_conversations,
)

console = Console()
T = TypeVar("T")


def configure_cli_logging(verbose: bool) -> None:
    if verbose:
        logging.getLogger("localchat").setLevel(logging.DEBUG)
        return
    logging.getLogger("localchat").setLevel(logging.WARNING)


class CLIState:
    """Per-invocation state shared by commands."""

    def __init__(self, db_path: Path | None, locale: str) -> None:
        self.db_path = db_path
        self.locale = locale
        # The CLI never streams responses, so nothing is ever generating here;
        # the tracker keeps destructive commands on the guarded path.
        self.guard = GenerationTracker()

    def run(self, action: Callable[[ConversationStore, ConversationActions], Awaitable[T]]) -> T:
        """Open the store, run one action, close the store; exit 1 on store errors."""

        async def runner() -> T:
            store = ConversationStore(self.db_path)
            await store.initialize()
            try:
                return await action(store, ConversationActions(store, self.guard))
            finally:
                await store.close()

        try:
            return asyncio.run(runner())
        except ConversationStoreError as e:
            console.print(f"[red]Error: {escape(e.message)}[/red]")
            sys.exit(1)


def _format_timestamp(millis: int) -> str:
    return datetime.fromtimestamp(millis / 1000).strftime("%Y-%m-%d %H:%M")


@click.group()
@click.version_option(version=__version__, prog_name="LocalChat")
@click.option(
    "--db",
    "db_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Conversation database file (defaults to LOCALCHAT_STORE_PATH)",
)
@click.option("--locale", default=None, help="Locale for month names in the conversation list")
@click.option("--verbose", is_flag=True, help="Show store log output")
@click.pass_context
def cli(ctx: click.Context, db_path: Path | None, locale: str | None, verbose: bool):
    """LocalChat - local-first conversation history."""
    settings = get_settings()
    configure_cli_logging(verbose)
    ctx.obj = CLIState(
        db_path=db_path or settings.store.path,
        locale=locale or settings.grouping.default_locale,
    )


@cli.command(name="list")
@click.pass_obj
def list_conversations(state: CLIState):
    """List conversations grouped by recency."""

    async def run(store: ConversationStore, _actions: ConversationActions):
        return await store.get_all_conversations()

    conversations = state.run(run)
    if not conversations:
        console.print("[yellow]No conversations yet[/yellow]")
        return

    groups = group_conversations(
        conversations,
        datetime.now().astimezone(),
        state.locale,
        fallback_locale=get_settings().grouping.default_locale,
    )
    for group in groups:
        table = Table(title=group.label, show_header=True, header_style="bold cyan")
        table.add_column("ID", style="cyan", no_wrap=True)
        table.add_column("Name")
        table.add_column("Last modified", justify="right")
        for conv in group.conversations:
            table.add_row(conv.id, Text(conv.name), _format_timestamp(conv.last_modified))
        console.print(table)


@cli.command()
@click.argument("conversation_id")
@click.pass_obj
def show(state: CLIState, conversation_id: str):
    """Show a conversation and its messages."""

    async def run(store: ConversationStore, _actions: ConversationActions):
        return await store.get_conversation(conversation_id)

    conversation = state.run(run)
    console.print(f"[bold]{escape(conversation.name)}[/bold] [dim]({conversation.id})[/dim]")
    if not conversation.messages:
        console.print("[dim]No messages[/dim]")
    for message in conversation.messages:
        console.print(Panel(Text(message.content), title=Text(message.role, style="bold")))


@cli.command()
@click.argument("name", required=False, default="")
@click.pass_obj
def new(state: CLIState, name: str):
    """Create a new, empty conversation."""

    async def run(store: ConversationStore, _actions: ConversationActions):
        return await store.create_conversation(name)

    conversation = state.run(run)
    console.print(f"[green]Created {conversation.id}[/green] {escape(conversation.name)}")


@cli.command()
@click.argument("conversation_id")
@click.argument("content")
@click.option("--role", default="user", show_default=True, help="Message role")
@click.pass_obj
def say(state: CLIState, conversation_id: str, content: str, role: str):
    """Append a message to a conversation."""

    async def run(store: ConversationStore, _actions: ConversationActions):
        return await store.append_message(conversation_id, {"role": role, "content": content})

    message = state.run(run)
    console.print(f"[green]Added message {message.id}[/green]")


@cli.command()
@click.argument("conversation_id")
@click.argument("name")
@click.pass_obj
def rename(state: CLIState, conversation_id: str, name: str):
    """Rename a conversation."""

    async def run(_store: ConversationStore, actions: ConversationActions):
        return await actions.rename(conversation_id, name)

    meta = state.run(run)
    console.print(f"[green]Renamed {meta.id}[/green] to {escape(meta.name)}")


@cli.command()
@click.argument("conversation_id")
@click.option("--yes", is_flag=True, help="Delete without asking for confirmation")
@click.pass_obj
def delete(state: CLIState, conversation_id: str, yes: bool):
    """Delete a conversation and all of its messages."""
    if not yes and not click.confirm(f"Delete conversation {conversation_id}?"):
        console.print("[yellow]Cancelled[/yellow]")
        return

    async def run(_store: ConversationStore, actions: ConversationActions):
        await actions.delete(conversation_id)

    state.run(run)
    console.print(f"[green]Deleted {escape(conversation_id)}[/green]")


@cli.command()
@click.argument("conversation_id")
@click.option(
    "-o",
    "--output",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Target file (defaults to conversation_<id>.json)",
)
@click.pass_obj
def export(state: CLIState, conversation_id: str, output: Path | None):
    """Export a conversation as a JSON document."""

    async def run(_store: ConversationStore, actions: ConversationActions) -> dict[str, Any]:
        return await actions.export(conversation_id)

    document = state.run(run)
    target = output or Path(f"conversation_{conversation_id}.json")
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(json.dumps(document, indent=2, ensure_ascii=False), encoding="utf-8")
    console.print(
        f"[green]Exported {len(document['messages'])} messages to {escape(str(target))}[/green]"
    )


@cli.command(name="import")
@click.argument("file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.pass_obj
def import_conversation(state: CLIState, file: Path):
    """Import a conversation exported by LocalChat."""
    raw = file.read_bytes()

    async def run(store: ConversationStore, _actions: ConversationActions):
        return await store.import_conversation(raw)

    conversation = state.run(run)
    console.print(
        f"[green]Imported {conversation.id}[/green] {escape(conversation.name)} "
        f"({len(conversation.messages)} messages)"
    )


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
