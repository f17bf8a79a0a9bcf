"""Terminal client for coach-chat."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

import click
from prompt_toolkit import PromptSession
from prompt_toolkit.formatted_text import HTML
from prompt_toolkit.history import FileHistory
from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.table import Table

from coach_chat import __version__
from coach_chat.config import load_config
from coach_chat.resilience.retry import SendOutcome
from coach_chat.session import ChatSession
from coach_chat.types import ChatEvent, EventType, Message, MessageRole, SendState

console = Console()

_STATUS_STYLES = {
    SendState.RETRYING: "yellow",
    SendState.OFFLINE: "magenta",
    SendState.QUEUED: "magenta",
    SendState.FAILED: "red",
}


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------

def render_message(message: Message, show_reasoning: bool = True) -> None:
    if message.role == MessageRole.SYSTEM:
        console.print(Panel(message.content, title="tools", border_style="dim"))
        return
    if message.role == MessageRole.USER:
        status = message.send_status
        suffix = ""
        if status is not None and status.state != SendState.SENT:
            style = _STATUS_STYLES.get(status.state, "dim")
            suffix = f"  [{style}]{status.icon} {status.status_description}[/{style}]"
        console.print(f"[bold green]you[/bold green] {message.content}{suffix}")
        return

    if show_reasoning and message.reasoning:
        console.print(Panel(message.reasoning, title="reasoning", border_style="dim"))
    console.print(Markdown(message.content or "_(no content)_"))


class EventPrinter:
    """Print tool activity and delivery problems as they happen."""

    def __call__(self, event: ChatEvent) -> None:
        data = event.data
        if event.type == EventType.TOOL_EXECUTING:
            console.print(f"[dim]  ⚙ {data['tool']}({data.get('params', {})})[/dim]")
        elif event.type == EventType.TOOL_ERROR:
            console.print(f"[red]  ✗ {data['tool']}: {data.get('error', '')}[/red]")
        elif event.type == EventType.STREAM_FALLBACK:
            console.print("[yellow]  stream interrupted, retrying without streaming[/yellow]")
        elif event.type == EventType.SEND_STATUS_CHANGED:
            state = SendState(data["state"])
            style = _STATUS_STYLES.get(state)
            if style:
                console.print(f"[{style}]  {data['description']}[/{style}]")
        elif event.type == EventType.CONNECTIVITY_CHANGED:
            label = "online" if data["online"] else "offline"
            console.print(f"[dim]  network: {label}[/dim]")


def _print_outcome(outcome: SendOutcome, show_reasoning: bool) -> None:
    if outcome.reply is not None:
        render_message(outcome.reply, show_reasoning)
    if outcome.error is not None and outcome.status.state == SendState.FAILED:
        console.print(f"[red]{outcome.status.status_description}[/red] [dim]/retry to resend[/dim]")


def _print_history(session: ChatSession) -> None:
    table = Table(title="Conversation")
    table.add_column("#", style="dim")
    table.add_column("Role")
    table.add_column("State")
    table.add_column("Content")
    for i, m in enumerate(session.history):
        state = m.state.value
        if m.send_status is not None:
            state = f"{m.send_status.icon} {m.send_status.status_description}"
        preview = m.content.replace("\n", " ")
        if len(preview) > 60:
            preview = preview[:57] + "..."
        table.add_row(str(i), m.role.value, state, preview)
    console.print(table)


# ---------------------------------------------------------------------------
# REPL
# ---------------------------------------------------------------------------

async def _handle_command(
    session: ChatSession, line: str, show_reasoning: bool,
) -> bool:
    """Handle a slash command.  Returns False when the REPL should exit."""
    cmd = line.split()[0].lower()
    if cmd in ("/quit", "/exit"):
        return False
    if cmd == "/history":
        _print_history(session)
    elif cmd == "/retry":
        pending = session.retryable_messages()
        if not pending:
            console.print("[dim]Nothing to retry[/dim]")
        for message in pending:
            outcome = await session.retry(message.id)
            _print_outcome(outcome, show_reasoning)
    elif cmd == "/help":
        console.print("""[bold]Commands:[/bold]
  /retry    - Resend failed or queued messages
  /history  - Show the conversation with delivery status
  /quit     - Exit""")
    else:
        console.print(f"[yellow]Unknown command: {cmd}[/yellow]")
    return True


async def _repl(session: ChatSession, show_reasoning: bool) -> None:
    history_file = Path("~/.coach_chat/history").expanduser()
    history_file.parent.mkdir(parents=True, exist_ok=True)
    prompt = PromptSession(history=FileHistory(str(history_file)))

    while True:
        try:
            line = await prompt.prompt_async(HTML("<ansigreen><b>❯ </b></ansigreen>"))
        except (EOFError, KeyboardInterrupt):
            break
        line = line.strip()
        if not line:
            continue
        if line.startswith("/"):
            if not await _handle_command(session, line, show_reasoning):
                break
            continue

        with console.status("[dim]thinking...[/dim]"):
            outcome = await session.send(line)
        _print_outcome(outcome, show_reasoning)


async def _run(
    config_path: str | None,
    message: str | None,
    show_reasoning: bool,
) -> None:
    config = load_config(config_path)
    session = ChatSession(config)
    session.event_bus.subscribe("*", EventPrinter())
    await session.start()
    try:
        if message:
            outcome = await session.send(message)
            _print_outcome(outcome, show_reasoning)
            return
        for m in session.history.messages[-10:]:
            render_message(m, show_reasoning)
        await _repl(session, show_reasoning)
    finally:
        await session.close()


@click.command()
@click.option("--config", "-c", "config_path", default=None,
              help="Path to coach_chat.yaml")
@click.option("--message", "-m", default=None, help="Send one message and exit")
@click.option("--no-reasoning", is_flag=True, help="Hide model reasoning")
@click.option("--verbose", "-v", is_flag=True, help="Verbose logging")
@click.version_option(__version__)
def main(config_path: str | None, message: str | None,
         no_reasoning: bool, verbose: bool) -> None:
    """coach-chat: talk to your coach from the terminal."""
    if verbose:
        logging.basicConfig(level=logging.DEBUG)
    else:
        logging.basicConfig(level=logging.WARNING)

    asyncio.run(_run(config_path, message, not no_reasoning))


if __name__ == "__main__":
    main()
