import asyncio
import logging
import uuid

import click

from nexusagent import scheduling
from nexusagent.agent import run_conversation, run_turn
from nexusagent.config import settings
from nexusagent.db import DbConnection, get_all_tasks, init_db, list_conversations
from nexusagent.plugins import load_plugins, run_db_migrations
from nexusagent.runtime import Runtime


def _get_db() -> DbConnection:
    return init_db(settings.db_path)


class _PluginGroup(click.Group):
    _plugins_loaded = False

    def _ensure_plugins(self) -> None:
        if self._plugins_loaded:
            return
        self._plugins_loaded = True
        plugins = load_plugins()
        run_db_migrations(_get_db(), plugins)
        for plugin in plugins:
            plugin.register_commands(self)

    def list_commands(self, ctx: click.Context) -> list[str]:
        self._ensure_plugins()
        return super().list_commands(ctx)

    def get_command(self, ctx: click.Context, cmd_name: str) -> click.Command | None:
        self._ensure_plugins()
        return super().get_command(ctx, cmd_name)


@click.group(cls=_PluginGroup, invoke_without_command=True)
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging.")
@click.pass_context
def main(ctx: click.Context, verbose: bool) -> None:
    """nexusagent: personal AI agent with planning, tools and scheduled tasks"""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if not ctx.invoked_subcommand:
        click.echo(ctx.get_help())


@main.command()
@click.option("--conversation", "conversation_id", help="Continue an existing conversation.")
@click.option("--model", help="Override the executor model.")
def chat(conversation_id: str | None, model: str | None) -> None:
    """Start an interactive chat session."""

    async def _run() -> None:
        async with Runtime(settings) as runtime:
            await run_conversation(runtime, conversation_id, model)

    asyncio.run(_run())


@main.command()
@click.argument("message")
@click.option("--conversation", "conversation_id", help="Conversation to add the turn to.")
@click.option("--model", help="Override the executor model.")
def ask(message: str, conversation_id: str | None, model: str | None) -> None:
    """Run a single turn and print the streamed answer."""

    async def _run() -> None:
        runtime = Runtime(settings)
        try:
            await run_turn(runtime, conversation_id or uuid.uuid4().hex, message, model)
        finally:
            await runtime.stop()

    asyncio.run(_run())


@main.command()
def scheduler() -> None:
    """Run the task scheduler daemon."""
    logging.getLogger("nexusagent").setLevel(logging.INFO)

    async def _run() -> None:
        async with Runtime(settings):
            click.echo(
                f"Scheduler started (tick every {settings.tick_interval:g}s)", err=True
            )
            await asyncio.Event().wait()

    try:
        asyncio.run(_run())
    except KeyboardInterrupt:
        click.echo("Scheduler stopped", err=True)


@main.command()
def conversations() -> None:
    """View conversation history."""
    db = _get_db()
    for conv in list_conversations(db):
        click.echo(f"{conv.id} | {conv.title or ''} | {conv.updated_at}")


@main.command()
def tasks() -> None:
    """List all scheduled tasks and their status."""
    db = _get_db()
    all_tasks = get_all_tasks(db)
    if not all_tasks:
        click.echo("No scheduled tasks.")
        return
    click.echo(
        f"{'ID':<10} {'Schedule':<24} {'Prompt':<50} {'Status':<10} {'Next Run'}"
    )
    click.echo("-" * 110)
    for task in all_tasks:
        schedule = f"{task.schedule_type} {task.schedule_value}"
        click.echo(
            f"{task.id:<10} {schedule[:24]:<24} {task.prompt[:50]:<50}"
            f" {task.status:<10} {task.next_run}"
        )


@main.group()
def task() -> None:
    """Manage a single scheduled task."""


@task.command("pause")
@click.argument("task_id")
def pause_cmd(task_id: str) -> None:
    """Pause a task."""
    if scheduling.pause_task(_get_db(), task_id) is None:
        raise click.ClickException(f"Task {task_id} not found")
    click.echo(f"Task {task_id} paused.")


@task.command("resume")
@click.argument("task_id")
def resume_cmd(task_id: str) -> None:
    """Resume a paused or failed task."""
    try:
        resumed = scheduling.resume_task(
            _get_db(), task_id, exact_cron=settings.exact_cron
        )
    except scheduling.ScheduleError as e:
        raise click.ClickException(str(e)) from e
    if resumed is None:
        raise click.ClickException(f"Task {task_id} not found")
    click.echo(f"Task {task_id} resumed. Next run: {resumed.next_run}")


@task.command("cancel")
@click.argument("task_id")
def cancel_cmd(task_id: str) -> None:
    """Cancel and delete a task."""
    if not scheduling.cancel_task(_get_db(), task_id):
        raise click.ClickException(f"Task {task_id} not found")
    click.echo(f"Task {task_id} cancelled.")


@task.command("run")
@click.argument("task_id")
def run_cmd(task_id: str) -> None:
    """Run a task immediately."""

    async def _run() -> str | None:
        runtime = Runtime(settings)
        try:
            return await runtime.scheduler.run_now(task_id)
        finally:
            await runtime.stop()

    result = asyncio.run(_run())
    if result is None:
        raise click.ClickException(f"Task {task_id} not found")
    click.echo(result)


if __name__ == "__main__":
    main()
