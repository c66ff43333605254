"""CLI output formatters for Rich tables and JSON.

Provides human-readable Rich table output (default) and machine-parseable
JSON output (--json flag). All formatting goes through these functions
so the CLI commands stay clean.
"""

import json

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from hookchat.models.records import (
    AgentRecord,
    ConversationRecord,
    MessageRecord,
)

console = Console()

# Status color map for message delivery state
STATUS_COLORS = {
    "pending": "yellow",
    "delivered": "green",
    "failed": "red",
}


def _short_ts(value: str | None) -> str:
    return value[:19].replace("T", " ") if value else "-"


def _render(renderable) -> str:
    with console.capture() as capture:
        console.print(renderable)
    return capture.get()


def format_agent_table(agents: list[AgentRecord], as_json: bool = False) -> str:
    """Format agents as a Rich table or JSON."""
    if as_json:
        return json.dumps([a.model_dump(mode="json") for a in agents], indent=2)

    if not agents:
        return "No agents configured."

    table = Table(title="Agents", show_lines=True)
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Name", style="white")
    table.add_column("Webhook")
    table.add_column("Voice", justify="center")
    table.add_column("Created")

    for agent in agents:
        table.add_row(
            agent.id,
            agent.name,
            agent.webhook_url,
            "yes" if agent.is_voice_enabled else "no",
            _short_ts(agent.created_at),
        )
    return _render(table)


def format_agent_detail(agent: AgentRecord, has_secret: bool = False) -> str:
    """Format one agent as a Rich panel."""
    lines = [
        f"[bold]Agent ID:[/bold]  {agent.id}",
        f"[bold]Name:[/bold]      {agent.name}",
        f"[bold]Webhook:[/bold]   {agent.webhook_url}",
        f"[bold]Secret:[/bold]    {'set' if has_secret else 'none'}",
        f"[bold]Voice:[/bold]     {'enabled' if agent.is_voice_enabled else 'disabled'}",
        f"[bold]Icon:[/bold]      {agent.icon_name}",
    ]
    if agent.description:
        lines.append(f"[bold]About:[/bold]     {agent.description}")
    if agent.voice_settings:
        vs = agent.voice_settings
        lines.append(
            f"[bold]Speech:[/bold]    {vs.language} rate={vs.rate} "
            f"pitch={vs.pitch} volume={vs.volume}"
        )
    lines.extend([
        "",
        f"[bold]Created:[/bold]   {_short_ts(agent.created_at)}",
        f"[bold]Updated:[/bold]   {_short_ts(agent.updated_at)}",
    ])
    return _render(Panel("\n".join(lines), title="Agent", border_style="cyan"))


def format_conversation_table(
    conversations: list[ConversationRecord], as_json: bool = False
) -> str:
    """Format conversations as a Rich table or JSON."""
    if as_json:
        return json.dumps(
            [
                {**c.model_dump(mode="json"), "display_title": c.display_title}
                for c in conversations
            ],
            indent=2,
        )

    if not conversations:
        return "No conversations found."

    table = Table(title="Conversations", show_lines=True)
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Title", style="white")
    table.add_column("Messages", justify="right")
    table.add_column("Last activity")
    table.add_column("Archived", justify="center")

    for conv in conversations:
        table.add_row(
            conv.id,
            conv.display_title,
            str(conv.message_count),
            _short_ts(conv.last_message_at),
            "yes" if conv.is_archived else "",
        )
    return _render(table)


def format_message_line(message: MessageRecord) -> str:
    """One line of chat history with Rich markup."""
    speaker = "[bold blue]you[/bold blue]" if message.is_from_user else "[bold magenta]agent[/bold magenta]"
    line = f"[dim]{_short_ts(message.timestamp)}[/dim] {speaker}: {message.content}"
    if message.is_from_user and message.status.value != "delivered":
        color = STATUS_COLORS.get(message.status.value, "white")
        line += f" [{color}]({message.status.value})[/{color}]"
    if message.is_failed and message.metadata.error_message:
        line += (
            f"\n    [red]{message.metadata.error_code}: "
            f"{message.metadata.error_message}[/red] [dim]id={message.id}[/dim]"
        )
    for attachment in message.attachments:
        location = attachment.remote_url or attachment.local_path
        line += (
            f"\n    [cyan]{attachment.file_name}[/cyan] "
            f"({attachment.formatted_file_size}) {location}"
        )
    return line


def format_history(messages: list[MessageRecord], as_json: bool = False) -> str:
    """Format a conversation's messages oldest first."""
    if as_json:
        return json.dumps([m.model_dump(mode="json") for m in messages], indent=2)

    if not messages:
        return "No messages yet."
    return "\n".join(format_message_line(m) for m in messages)
