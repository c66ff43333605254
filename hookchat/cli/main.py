"""HookChat CLI: chat with webhook-backed agents from the terminal.

Usage:
    hookchat agent add "Support" https://n8n.example.com/webhook/abc
    hookchat chat new <agent-id>
    hookchat send <conversation-id> "Hello"
    hookchat retry <message-id>
    hookchat purge --days 30
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import timedelta
from typing import Optional, TypeVar

import typer
from rich.console import Console

from hookchat import __version__
from hookchat.cli.config import HookChatConfig, load_config
from hookchat.cli.factory import AppContext, build_engine
from hookchat.cli.output import (
    format_agent_detail,
    format_agent_table,
    format_conversation_table,
    format_history,
    format_message_line,
)
from hookchat.db.models import DEFAULT_AGENT_ICON
from hookchat.errors import HookChatError
from hookchat.services.events import ConversationQueueObserver
from hookchat.services.keyring_store import webhook_secret_key
from hookchat.services.retention import purge_old_messages
from hookchat.services.webhook_dispatcher import validate_webhook
from hookchat.utils.logging_setup import configure_logging

_log = logging.getLogger(__name__)

T = TypeVar("T")

app = typer.Typer(
    name="hookchat",
    help="Chat with webhook-backed agents",
    no_args_is_help=True,
)
agent_app = typer.Typer(help="Manage agents")
chat_app = typer.Typer(help="Manage conversations")
secret_app = typer.Typer(help="Manage webhook bearer secrets")

app.add_typer(agent_app, name="agent")
app.add_typer(chat_app, name="chat")
app.add_typer(secret_app, name="secret")

console = Console()

# --- Global state ---
_config: HookChatConfig | None = None


@app.callback()
def main(
    config: Optional[str] = typer.Option(
        None, "--config", help="Path to hookchat.yaml config file"
    ),
    log_level: Optional[str] = typer.Option(
        None, "--log-level", help="Override logging.level"
    ),
):
    """HookChat: local-first chat client for webhook agents."""
    global _config
    try:
        _config = load_config(config_path=config)
    except FileNotFoundError as e:
        console.print(f"[red]Config file not found:[/red] {e}")
        raise typer.Exit(1)
    except (ValueError, TypeError) as e:
        console.print(f"[red]Config validation failed:[/red] {e}")
        raise typer.Exit(1)
    configure_logging(
        level=log_level or _config.logging.level,
        fmt=_config.logging.format,
        file=_config.logging.file,
    )


def _get_config() -> HookChatConfig:
    return _config or load_config()


def _run(action: Callable[[AppContext], Awaitable[T]]) -> T:
    """Run one async action against a fresh AppContext.

    Domain errors print a red line and exit with status 1.
    """
    cfg = _get_config()

    async def _wrapped() -> T:
        async with build_engine(cfg) as ctx:
            return await action(ctx)

    try:
        return asyncio.run(_wrapped())
    except HookChatError as e:
        console.print(f"[red]Error {e.code}:[/red] {e.message}")
        raise typer.Exit(1)


def _print_events(observer: ConversationQueueObserver, conversation_id: str) -> bool:
    """Print queued exchange events. Returns False if a send failed."""
    queue = observer.subscribe(conversation_id)
    ok = True
    while not queue.empty():
        item = queue.get_nowait()
        if item.event == "delivered":
            console.print(format_message_line(item.data["response"]))
        elif item.event == "failed":
            ok = False
            console.print(
                f"[red]Send failed {item.data['error_code']}:[/red] "
                f"{item.data['error_message']}"
            )
            console.print(f"  retry with: hookchat retry {item.message_id}")
        elif item.event == "deleted":
            _log.debug("Message %s replaced", item.message_id)
    return ok


# --- Version ---


@app.command()
def version():
    """Show HookChat version."""
    console.print(f"[bold]HookChat[/bold] v{__version__}")


# --- Agent commands ---


@agent_app.command("add")
def agent_add(
    name: str = typer.Argument(help="Display name"),
    webhook_url: str = typer.Argument(help="Webhook URL messages are POSTed to"),
    description: Optional[str] = typer.Option(None, "--description", "-d"),
    icon: Optional[str] = typer.Option(None, "--icon", help="Icon identifier"),
    no_voice: bool = typer.Option(False, "--no-voice", help="Disable voice input"),
    secret: Optional[str] = typer.Option(
        None, "--secret", help="Bearer secret for the webhook"
    ),
):
    """Register a new agent."""
    validation = validate_webhook(webhook_url)
    if not validation.is_valid:
        console.print(f"[red]Invalid webhook URL:[/red] {validation.error}")
        raise typer.Exit(1)

    async def _action(ctx: AppContext):
        agent = await ctx.store.create_agent(
            name,
            webhook_url,
            description=description,
            icon_name=icon or DEFAULT_AGENT_ICON,
            is_voice_enabled=not no_voice,
        )
        if secret:
            ctx.secrets.save_secret(webhook_secret_key(agent.webhook_url), secret)
        return agent

    agent = _run(_action)
    console.print(f"[green]Agent created:[/green] {agent.id}")


@agent_app.command("list")
def agent_list(
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """List all agents."""
    agents = _run(lambda ctx: ctx.store.list_agents())
    console.print(format_agent_table(agents, as_json=json_output))


@agent_app.command("show")
def agent_show(agent_id: str = typer.Argument(help="Agent ID")):
    """Show one agent."""

    async def _action(ctx: AppContext):
        agent = await ctx.store.get_agent(agent_id)
        secret = ctx.secrets.load_secret(webhook_secret_key(agent.webhook_url))
        return agent, secret is not None

    agent, has_secret = _run(_action)
    console.print(format_agent_detail(agent, has_secret=has_secret))


@agent_app.command("remove")
def agent_remove(
    agent_id: str = typer.Argument(help="Agent ID"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
):
    """Delete an agent with all of its conversations."""
    if not yes:
        typer.confirm("Delete this agent and all of its conversations?", abort=True)
    if _run(lambda ctx: ctx.store.delete_agent(agent_id)):
        console.print(f"[yellow]Agent {agent_id} deleted.[/yellow]")
    else:
        console.print(f"[red]Agent {agent_id} not found.[/red]")
        raise typer.Exit(1)


@agent_app.command("test")
def agent_test(agent_id: str = typer.Argument(help="Agent ID")):
    """Probe an agent's webhook."""
    if _run(lambda ctx: ctx.engine.check_connection(agent_id)):
        console.print("[green]Webhook reachable.[/green]")
    else:
        console.print("[red]Webhook did not answer with a 2xx status.[/red]")
        raise typer.Exit(1)


# --- Conversation commands ---


@chat_app.command("new")
def chat_new(
    agent_id: str = typer.Argument(help="Agent ID"),
    title: Optional[str] = typer.Option(None, "--title", "-t"),
):
    """Start a conversation with an agent."""
    conversation = _run(lambda ctx: ctx.store.create_conversation(agent_id, title))
    console.print(f"[green]Conversation created:[/green] {conversation.id}")


@chat_app.command("list")
def chat_list(
    agent_id: Optional[str] = typer.Option(None, "--agent", "-a", help="Filter by agent"),
    include_archived: bool = typer.Option(False, "--all", help="Include archived"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """List conversations, most recently active first."""
    conversations = _run(
        lambda ctx: ctx.store.list_conversations(
            agent_id=agent_id, include_archived=include_archived,
        )
    )
    console.print(format_conversation_table(conversations, as_json=json_output))


@chat_app.command("rename")
def chat_rename(
    conversation_id: str = typer.Argument(help="Conversation ID"),
    title: str = typer.Argument(help="New title; empty string clears it"),
):
    """Rename a conversation."""
    conversation = _run(lambda ctx: ctx.store.rename_conversation(conversation_id, title))
    console.print(f"[green]Conversation renamed:[/green] {conversation.display_title}")


@chat_app.command("archive")
def chat_archive(
    conversation_id: str = typer.Argument(help="Conversation ID"),
    unarchive: bool = typer.Option(False, "--unarchive", help="Restore instead"),
):
    """Archive (or restore) a conversation."""
    _run(
        lambda ctx: ctx.store.archive_conversation(
            conversation_id, archived=not unarchive,
        )
    )
    console.print("[green]Conversation restored.[/green]" if unarchive else "[yellow]Conversation archived.[/yellow]")


@chat_app.command("delete")
def chat_delete(
    conversation_id: str = typer.Argument(help="Conversation ID"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
):
    """Delete a conversation and its messages."""
    if not yes:
        typer.confirm("Delete this conversation?", abort=True)
    if not _run(lambda ctx: ctx.store.delete_conversation(conversation_id)):
        console.print(f"[red]Conversation {conversation_id} not found.[/red]")
        raise typer.Exit(1)
    console.print(f"[yellow]Conversation {conversation_id} deleted.[/yellow]")


@chat_app.command("history")
def chat_history(
    conversation_id: str = typer.Argument(help="Conversation ID"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Show a conversation's messages."""
    messages = _run(lambda ctx: ctx.engine.refresh(conversation_id))
    console.print(format_history(messages, as_json=json_output))


# --- Exchange commands ---


@app.command()
def send(
    conversation_id: str = typer.Argument(help="Conversation ID"),
    text: str = typer.Argument(help="Message text"),
):
    """Send a message and print the agent's answer."""
    observer = ConversationQueueObserver()
    observer.subscribe(conversation_id)

    async def _action(ctx: AppContext):
        ctx.engine.emitter.add_observer(observer)
        return await ctx.engine.send(conversation_id, text)

    _run(_action)
    if not _print_events(observer, conversation_id):
        raise typer.Exit(1)


@app.command()
def retry(message_id: str = typer.Argument(help="ID of a failed message")):
    """Re-send a failed message."""
    observer = ConversationQueueObserver()
    conversation: dict[str, str] = {}

    async def _action(ctx: AppContext):
        message = await ctx.store.get_message(message_id)
        conversation["id"] = message.conversation_id
        observer.subscribe(message.conversation_id)
        ctx.engine.emitter.add_observer(observer)
        return await ctx.engine.retry(message_id)

    new_id = _run(_action)
    console.print(f"[dim]Re-sent as {new_id}[/dim]")
    if not _print_events(observer, conversation["id"]):
        raise typer.Exit(1)


@app.command()
def purge(
    days: Optional[int] = typer.Option(
        None, "--days", min=1, help="Maximum age in days (default: retention.max_age_days)"
    ),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
):
    """Delete messages older than the retention age."""
    max_age_days = days or _get_config().retention.max_age_days
    if not yes:
        typer.confirm(f"Delete messages older than {max_age_days} days?", abort=True)
    deleted = _run(
        lambda ctx: purge_old_messages(ctx.store, timedelta(days=max_age_days))
    )
    console.print(f"[green]Deleted {deleted} message(s).[/green]")


# --- Secret commands ---


@secret_app.command("set")
def secret_set(
    agent_id: str = typer.Argument(help="Agent ID"),
    value: str = typer.Option(
        ..., "--value", prompt=True, hide_input=True, help="Bearer secret"
    ),
):
    """Store the bearer secret for an agent's webhook."""

    async def _action(ctx: AppContext):
        agent = await ctx.store.get_agent(agent_id)
        ctx.secrets.save_secret(webhook_secret_key(agent.webhook_url), value)

    _run(_action)
    console.print("[green]Secret stored.[/green]")


@secret_app.command("delete")
def secret_delete(agent_id: str = typer.Argument(help="Agent ID")):
    """Remove the bearer secret for an agent's webhook."""

    async def _action(ctx: AppContext):
        agent = await ctx.store.get_agent(agent_id)
        ctx.secrets.delete_secret(webhook_secret_key(agent.webhook_url))

    _run(_action)
    console.print("[yellow]Secret deleted.[/yellow]")


if __name__ == "__main__":
    app()
