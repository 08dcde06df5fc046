import asyncio
import atexit
import re
import readline
import uuid
from pathlib import Path

import click

from nexusagent.events import AgentEvent
from nexusagent.runtime import Runtime


def _setup_readline(history_path: Path) -> None:
    """Configure readline with persistent history."""
    history_path.parent.mkdir(parents=True, exist_ok=True)
    try:
        readline.read_history_file(history_path)
    except FileNotFoundError:
        pass
    readline.set_history_length(1000)
    atexit.register(readline.write_history_file, str(history_path))


def _readline_prompt(styled: str) -> str:
    """Wrap ANSI escapes with readline markers so prompt width is correct."""
    return re.sub(r"\x1b\[[0-9;]*m", lambda m: f"\x01{m.group()}\x02", styled)


def render_event(event: AgentEvent) -> None:
    """Print one pipeline event to the terminal."""
    if event.type == "token":
        click.echo(click.style(event.data, fg="cyan"), nl=False)
    elif event.type == "reasoning":
        click.echo(click.style(event.data, dim=True), nl=False)
    elif event.type == "router_result":
        click.echo(click.style(f"[{event.data}]", fg="magenta"))
    elif event.type == "timeline":
        click.echo()
        for step in (event.payload or {}).get("steps", []):
            click.echo(
                click.style(f"  {step['id']}. {step['title']} ({step['action']})", fg="blue")
            )
    elif event.type == "step_start":
        click.echo(click.style(f"\n▶ {event.data}", fg="blue", bold=True))
    elif event.type == "tool_start":
        click.echo(click.style(f"\n⚙ {event.tool_name} {event.tool_args or ''}", fg="yellow"))
    elif event.type == "tool_end":
        click.echo(click.style(f"✓ {event.tool_name}: {event.data[:200]}", fg="yellow"))
    elif event.type == "error":
        click.echo(click.style(f"\n✗ {event.data}", fg="red"), err=True)
    elif event.type == "done":
        click.echo()


async def run_turn(runtime: Runtime, conversation_id: str, message: str, model: str | None) -> None:
    async for event in runtime.pipeline.stream_turn(conversation_id, message, model):
        render_event(event)


async def run_conversation(
    runtime: Runtime, conversation_id: str | None = None, model: str | None = None
) -> None:
    conversation_id = conversation_id or uuid.uuid4().hex
    _setup_readline(runtime.settings.data / "history")

    def notify(target: str, message: str) -> None:
        if target == conversation_id:
            click.echo(click.style(f"\n{message}", fg="green"))

    unsubscribe = runtime.scheduler.subscribe(notify)
    click.echo(click.style(f"Conversation {conversation_id}", dim=True))

    prompt = _readline_prompt(click.style("> ", fg="green", bold=True))
    try:
        while True:
            try:
                user_input = await asyncio.to_thread(input, prompt)
            except (EOFError, KeyboardInterrupt):
                click.echo()
                break

            if not user_input.strip():
                continue

            await run_turn(runtime, conversation_id, user_input, model)
    finally:
        unsubscribe()
