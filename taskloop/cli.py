"""Main CLI entry point for taskloop."""

import asyncio
import logging
from pathlib import Path
from typing import Any

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from . import db
from .claude_client import ClaudeConversationAdapter
from .config import settings
from .documentation import (
    build_context_prompt,
    delete_task_doc,
    ensure_claude_ui_folder,
    write_task_doc,
)
from .errors import ClaudeProcessError, TaskNotFoundError
from .events import BroadcastFn, EventType, RedisBroadcaster
from .models import Base, TaskStatus
from .notifications import PushNotifier
from .redis_client import get_redis_client
from .runner import AgentRunner

console = Console()
logger = logging.getLogger(__name__)


def _database() -> db.Database:
    return db.Database(settings.database_url)


def _describe_event(payload: dict[str, Any]) -> str | None:
    """One console line for a broadcast event, or None to stay quiet."""
    event_type = payload.get("type")
    if event_type == EventType.CLAUDE_RESPONSE:
        message = payload.get("data") or {}
        if message.get("type") != "assistant":
            return None
        parts = (message.get("message") or {}).get("content") or []
        text = " ".join(
            part.get("text", "")
            for part in parts
            if isinstance(part, dict) and part.get("type") == "text"
        ).strip()
        return f"[dim]{text}[/dim]" if text else None
    if event_type == EventType.STREAMING_STARTED:
        return (
            f"[green]Streaming started[/green] task {payload.get('taskId')} "
            f"session {payload.get('claudeSessionId')}"
        )
    if event_type == EventType.STREAMING_ENDED:
        return f"[cyan]Streaming ended[/cyan] task {payload.get('taskId')}"
    if event_type == EventType.CLAUDE_ERROR:
        return f"[red]Claude error:[/red] {payload.get('error')}"
    return None


def _make_broadcast() -> BroadcastFn:
    redis_broadcast = (
        RedisBroadcaster(get_redis_client()) if settings.redis_broadcast_enabled else None
    )

    async def broadcast(conversation_id: int, payload: dict[str, Any]) -> None:
        line = _describe_event(payload)
        if line:
            console.print(f"[bold]#{conversation_id}[/bold] {line}")
        if redis_broadcast is not None:
            await redis_broadcast(conversation_id, payload)

    return broadcast


@click.group()
@click.version_option(version="0.1.0")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
def main(verbose: bool) -> None:
    """Task agent loop CLI.

    Run planification, implementation and review agents (Claude Code) against
    a project's repository.
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, show_path=False)],
    )


@main.command(name="init-db")
def init_db() -> None:
    """Create all database tables."""

    async def do_init() -> None:
        database = _database()
        try:
            await database.init_db()
        finally:
            await database.dispose()
        console.print("[green]Database initialized[/green]")

    asyncio.run(do_init())


@main.command(name="schema-check", help="Check DB schema readiness for current code.")
def schema_check() -> None:
    async def check() -> None:
        from sqlalchemy import inspect

        database = _database()
        try:
            async with database.engine.connect() as conn:
                tables = set(await conn.run_sync(lambda c: inspect(c).get_table_names()))
        finally:
            await database.dispose()

        missing = set(Base.metadata.tables) - tables
        if missing:
            console.print(f"[red]Missing tables: {sorted(missing)}[/red]")
            console.print("Run: `taskloop init-db`")
            raise SystemExit(1)
        console.print("[green]Schema ready[/green]")

    asyncio.run(check())


@main.command()
def db_info() -> None:
    """Show database and integration settings."""
    console.print(
        Panel(
            f"Database: {settings.database_url}\n"
            f"Redis broadcast: {'on' if settings.redis_broadcast_enabled else 'off'}"
            f" ({settings.redis_url})\n"
            f"Claude command: {settings.claude_cmd}\n"
            f"Chain delay: {settings.chain_delay}s\n"
            f"Push notifications: "
            f"{'configured' if settings.onesignal_app_id else 'not configured'}",
            title="taskloop Configuration",
        )
    )


# =============================================================================
# Projects and tasks
# =============================================================================


@main.command()
@click.argument("name")
@click.argument(
    "repo_path", type=click.Path(exists=True, file_okay=False, resolve_path=True, path_type=Path)
)
@click.option("--user-id", "-u", type=int, default=1, help="Owning user id")
def create_project(name: str, repo_path: Path, user_id: int) -> None:
    """Register a repository as a project.

    NAME: Human-readable project name
    REPO_PATH: Repository folder the agents work in
    """

    async def do_create() -> None:
        database = _database()
        try:
            async with database.session() as session:
                project = await db.create_project(session, user_id, name, str(repo_path))
        finally:
            await database.dispose()

        try:
            ensure_claude_ui_folder(repo_path)
        except OSError as exc:
            logger.warning("Could not create .claude-ui folder in %s: %s", repo_path, exc)
        console.print(f'{{"id": {project.id}, "name": "{project.name}", "status": "created"}}')

    asyncio.run(do_create())


@main.command()
@click.option("--user-id", "-u", type=int, default=None, help="Only this user's projects")
def projects(user_id: int | None) -> None:
    """List projects."""

    async def list_all() -> None:
        database = _database()
        try:
            async with database.session() as session:
                rows = await db.list_projects(session, user_id)
        finally:
            await database.dispose()

        if not rows:
            console.print("[yellow]No projects found[/yellow]")
            return

        table = Table(title="Projects")
        table.add_column("ID", style="cyan")
        table.add_column("Name")
        table.add_column("User")
        table.add_column("Repository")
        for p in rows:
            table.add_row(str(p.id), p.name, str(p.user_id), p.repo_folder_path)
        console.print(table)

    asyncio.run(list_all())


@main.command()
@click.argument("project_id", type=int)
@click.argument("title")
def create_task(project_id: int, title: str) -> None:
    """Create a task and its empty documentation file.

    PROJECT_ID: Project the task belongs to
    TITLE: Human-readable task title
    """

    async def do_create() -> None:
        database = _database()
        try:
            async with database.session() as session:
                project = await db.get_project(session, project_id)
                if project is None:
                    raise click.ClickException(f"Project {project_id} not found")
                task = await db.create_task(session, project_id, title)
        finally:
            await database.dispose()

        try:
            write_task_doc(project.repo_folder_path, task.id, "")
        except OSError as exc:
            logger.warning("Could not create documentation for task %s: %s", task.id, exc)
        console.print(f'{{"id": {task.id}, "title": "{task.title}", "status": "created"}}')

    asyncio.run(do_create())


@main.command()
@click.argument("task_id", type=int)
def delete_task(task_id: int) -> None:
    """Delete a task with its runs, conversations and documentation file."""

    async def do_delete() -> None:
        database = _database()
        try:
            async with database.session() as session:
                task = await db.get_task_with_project(session, task_id)
                if task is None:
                    raise TaskNotFoundError(task_id)
                repo_path = task.project.repo_folder_path
                await db.delete_task(session, task_id)
        finally:
            await database.dispose()

        try:
            delete_task_doc(repo_path, task_id)
        except OSError as exc:
            logger.warning("Could not delete documentation for task %s: %s", task_id, exc)
        console.print(f"[green]Task {task_id} deleted[/green]")

    asyncio.run(do_delete())


@main.command()
@click.option("--limit", default=10, help="Number of tasks to show")
@click.option("--status-filter", "status_filter", default=None, help="Filter by status")
@click.option("--project-id", "-p", type=int, default=None, help="Only this project's tasks")
def tasks(limit: int, status_filter: str | None, project_id: int | None) -> None:
    """List recent tasks."""

    async def list_all() -> None:
        database = _database()
        try:
            async with database.session() as session:
                rows = await db.list_tasks(
                    session, project_id=project_id, status=status_filter, limit=limit
                )
        finally:
            await database.dispose()

        if not rows:
            console.print("[yellow]No tasks found[/yellow]")
            return

        table = Table(title="Tasks")
        table.add_column("ID", style="cyan")
        table.add_column("Project")
        table.add_column("Title")
        table.add_column("Status")
        table.add_column("Workflow")
        table.add_column("Updated")
        for t in rows:
            table.add_row(
                str(t.id),
                t.project.name,
                t.title or "-",
                t.status,
                "complete" if t.workflow_complete else "-",
                t.updated_at.strftime("%Y-%m-%d %H:%M"),
            )
        console.print(table)

    asyncio.run(list_all())


def _runs_table(runs: list[Any]) -> Table:
    table = Table(title="Agent Runs")
    table.add_column("ID", style="cyan")
    table.add_column("Agent")
    table.add_column("Status")
    table.add_column("Conversation")
    table.add_column("Created")
    table.add_column("Completed")

    status_colors = {"completed": "green", "failed": "red", "running": "yellow"}
    for r in runs:
        color = status_colors.get(r.status, "white")
        table.add_row(
            str(r.id),
            r.agent_type,
            f"[{color}]{r.status}[/{color}]",
            str(r.conversation_id) if r.conversation_id else "-",
            r.created_at.strftime("%Y-%m-%d %H:%M:%S"),
            r.completed_at.strftime("%Y-%m-%d %H:%M:%S") if r.completed_at else "-",
        )
    return table


@main.command()
@click.argument("task_id", type=int)
def status(task_id: int) -> None:
    """Show status of a task and its agent runs."""

    async def show_status() -> None:
        database = _database()
        try:
            async with database.session() as session:
                task = await db.get_task_with_project(session, task_id)
                if task is None:
                    raise TaskNotFoundError(task_id)
                runs = await db.get_agent_runs_for_task(session, task_id)
        finally:
            await database.dispose()

        console.print(
            Panel(
                f"[bold]{task.title or '(no title)'}[/bold]\n\n"
                f"Project: {task.project.name}\n"
                f"Status: [cyan]{task.status}[/cyan]\n"
                f"Planification complete: {task.planification_complete}\n"
                f"Workflow complete: {task.workflow_complete}\n"
                f"Created: {task.created_at.strftime('%Y-%m-%d %H:%M')}",
                title=f"Task {task.id}",
            )
        )
        if runs:
            console.print(_runs_table(runs))

    asyncio.run(show_status())


@main.command()
@click.argument("task_id", type=int)
def runs(task_id: int) -> None:
    """List a task's agent runs, newest first."""

    async def show_runs() -> None:
        database = _database()
        try:
            async with database.session() as session:
                rows = await db.get_agent_runs_for_task(session, task_id)
        finally:
            await database.dispose()

        if not rows:
            console.print("[yellow]No agent runs found[/yellow]")
            return
        console.print(_runs_table(rows))

    asyncio.run(show_runs())


@main.command()
@click.argument("task_id", type=int)
def context(task_id: int) -> None:
    """Print the context prompt agents receive for a task."""

    async def show_context() -> None:
        database = _database()
        try:
            async with database.session() as session:
                task = await db.get_task_with_project(session, task_id)
        finally:
            await database.dispose()
        if task is None:
            raise TaskNotFoundError(task_id)

        prompt = build_context_prompt(task.project.repo_folder_path, task_id)
        if not prompt:
            console.print("[yellow]No project or task documentation yet[/yellow]")
            return
        console.print(prompt, markup=False)

    asyncio.run(show_context())


# =============================================================================
# Agent runs
# =============================================================================


@main.command()
@click.argument("task_id", type=int)
@click.argument("agent_type")
@click.option("--user-id", "-u", type=int, default=None, help="User to notify")
@click.option("--force", "-f", is_flag=True, help="Start even if an agent is already running")
def run(task_id: int, agent_type: str, user_id: int | None, force: bool) -> None:
    """Run an agent phase and follow the implementation/review loop.

    TASK_ID: The task to work on
    AGENT_TYPE: planification, implementation or review
    """

    async def do_run() -> None:
        database = _database()
        notifier = PushNotifier(database)
        runner = AgentRunner(database, ClaudeConversationAdapter(), notifier)
        try:
            if not force:
                await runner.ensure_no_running_agent(task_id)
            try:
                started = await runner.start_agent_run(
                    task_id, agent_type, broadcast=_make_broadcast(), user_id=user_id
                )
            except ClaudeProcessError as exc:
                raise click.ClickException(str(exc)) from exc
            console.print(
                f"[green]Started {agent_type} agent[/green] run {started.agent_run.id}, "
                f"conversation {started.conversation.id}"
            )
            await runner.drain()
        finally:
            await notifier.aclose()
            await database.dispose()

    asyncio.run(do_run())


@main.command()
@click.argument("task_id", type=int)
def force_complete(task_id: int) -> None:
    """Mark a task's running agents as completed."""

    async def do_force() -> None:
        database = _database()
        runner = AgentRunner(database, ClaudeConversationAdapter())
        try:
            count = await runner.force_complete_running_agents(task_id)
        finally:
            await database.dispose()
        console.print(f'{{"taskId": {task_id}, "forceCompleted": {count}}}')

    asyncio.run(do_force())


@main.command()
@click.argument("task_id", type=int)
@click.option(
    "--force-complete", "force", is_flag=True, help="Also mark running agents as completed"
)
def complete_workflow(task_id: int, force: bool) -> None:
    """Mark a task's workflow as complete, stopping the agent loop.

    Review agents run this once the implementation is READY.
    """

    async def do_complete() -> None:
        database = _database()
        try:
            if force:
                runner = AgentRunner(database, ClaudeConversationAdapter())
                count = await runner.set_workflow_complete(task_id, True)
                console.print(f"Force-completed {count} running agent(s)")
            else:
                async with database.session() as session:
                    task = await db.get_task_by_id(session, task_id)
                    if task is None:
                        raise TaskNotFoundError(task_id)
                    if task.workflow_complete:
                        console.print(
                            f"[cyan]Task {task_id} workflow is already marked as complete[/cyan]"
                        )
                        return
                    await db.update_task(session, task_id, workflow_complete=True)
        finally:
            await database.dispose()
        console.print(f"[green]Workflow marked as complete for task {task_id}[/green]")

    asyncio.run(do_complete())


@main.command()
@click.argument("task_id", type=int)
def reopen_workflow(task_id: int) -> None:
    """Clear a task's workflow flag so the agent loop can run again."""

    async def do_reopen() -> None:
        database = _database()
        runner = AgentRunner(database, ClaudeConversationAdapter())
        try:
            await runner.set_workflow_complete(task_id, False)
        finally:
            await database.dispose()
        console.print(f"[green]Workflow reopened for task {task_id}[/green]")

    asyncio.run(do_reopen())


@main.command()
@click.argument("task_id", type=int)
def complete_plan(task_id: int) -> None:
    """Mark a task's planification as complete."""

    async def do_complete() -> None:
        database = _database()
        try:
            async with database.session() as session:
                task = await db.update_task(session, task_id, planification_complete=True)
        finally:
            await database.dispose()
        if task is None:
            raise TaskNotFoundError(task_id)
        console.print(f"[green]Planification marked as complete for task {task_id}[/green]")

    asyncio.run(do_complete())


@main.command()
@click.argument("task_id", type=int)
@click.argument("new_status", type=click.Choice([s.value for s in TaskStatus]))
def set_status(task_id: int, new_status: str) -> None:
    """Set a task's status."""

    async def do_update() -> None:
        database = _database()
        try:
            async with database.session() as session:
                task = await db.update_task(session, task_id, status=new_status)
        finally:
            await database.dispose()
        if task is None:
            raise TaskNotFoundError(task_id)
        console.print(f"[green]Task {task_id} status set to {new_status}[/green]")

    asyncio.run(do_update())


if __name__ == "__main__":
    main()
