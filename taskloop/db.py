"""Async database connection and operations for taskloop."""

from collections.abc import AsyncGenerator, Sequence
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from sqlalchemy import event, func, select
from sqlalchemy.engine import make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import joinedload

from .config import settings
from .errors import (
    SchemaNotInitializedError,
    is_schema_missing_error,
    schema_not_initialized_message,
)
from .models import (
    ACTIVE_RUN_STATUSES,
    AgentRun,
    AgentRunStatus,
    Base,
    Conversation,
    Project,
    Task,
    TaskStatus,
)

TASK_UPDATABLE_FIELDS = ("title", "status", "workflow_complete", "planification_complete")


def _enable_sqlite_foreign_keys(dbapi_connection: Any, connection_record: Any) -> None:
    # Cascades on tasks/conversations only fire with this pragma on.
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


class Database:
    """Owns the async engine and hands out sessions."""

    def __init__(self, url: str | None = None, *, echo: bool | None = None) -> None:
        self.url = url or settings.database_url
        self.engine: AsyncEngine = create_async_engine(
            self.url,
            echo=settings.database_echo if echo is None else echo,
            pool_pre_ping=True,
        )
        url = make_url(self.url)
        if url.get_backend_name() == "sqlite":
            if url.database and url.database != ":memory:":
                Path(url.database).expanduser().parent.mkdir(parents=True, exist_ok=True)
            event.listen(self.engine.sync_engine, "connect", _enable_sqlite_foreign_keys)
        self.session_factory = async_sessionmaker(self.engine, expire_on_commit=False)

    async def init_db(self) -> None:
        """Create all tables."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def dispose(self) -> None:
        await self.engine.dispose()

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession]:
        """Async context manager for database sessions."""
        async with self.session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception as exc:
                await session.rollback()
                if isinstance(exc, SQLAlchemyError) and is_schema_missing_error(exc):
                    raise SchemaNotInitializedError(
                        schema_not_initialized_message(exc)
                    ) from exc
                raise


# =============================================================================
# Project Operations
# =============================================================================


async def create_project(
    session: AsyncSession, user_id: int, name: str, repo_folder_path: str
) -> Project:
    """Create a new project."""
    project = Project(user_id=user_id, name=name, repo_folder_path=repo_folder_path)
    session.add(project)
    await session.flush()
    return project


async def get_project(session: AsyncSession, project_id: int) -> Project | None:
    result = await session.execute(select(Project).where(Project.id == project_id))
    return result.scalar_one_or_none()


async def list_projects(session: AsyncSession, user_id: int | None = None) -> list[Project]:
    query = select(Project).order_by(Project.updated_at.desc(), Project.id.desc())
    if user_id is not None:
        query = query.where(Project.user_id == user_id)
    result = await session.execute(query)
    return list(result.scalars().all())


async def delete_project(session: AsyncSession, project_id: int) -> bool:
    project = await get_project(session, project_id)
    if project is None:
        return False
    await session.delete(project)
    await session.flush()
    return True


# =============================================================================
# Task Operations
# =============================================================================


async def create_task(session: AsyncSession, project_id: int, title: str | None = None) -> Task:
    """Create a new task (status defaults to pending)."""
    task = Task(project_id=project_id, title=title, status=TaskStatus.PENDING.value)
    session.add(task)
    await session.flush()
    return task


async def get_task_by_id(session: AsyncSession, task_id: int) -> Task | None:
    """Get a task by its ID."""
    result = await session.execute(select(Task).where(Task.id == task_id))
    return result.scalar_one_or_none()


async def get_task_with_project(session: AsyncSession, task_id: int) -> Task | None:
    """Get a task with its project loaded."""
    result = await session.execute(
        select(Task).options(joinedload(Task.project)).where(Task.id == task_id)
    )
    return result.scalar_one_or_none()


async def list_tasks(
    session: AsyncSession,
    *,
    project_id: int | None = None,
    user_id: int | None = None,
    status: str | None = None,
    limit: int = 50,
) -> list[Task]:
    """List tasks, most recently updated first."""
    query = select(Task).options(joinedload(Task.project))
    if project_id is not None:
        query = query.where(Task.project_id == project_id)
    if user_id is not None:
        query = query.join(Project).where(Project.user_id == user_id)
    if status:
        query = query.where(Task.status == status)
    query = query.order_by(Task.updated_at.desc(), Task.id.desc()).limit(limit)
    result = await session.execute(query)
    return list(result.scalars().all())


async def count_tasks_for_user(session: AsyncSession, user_id: int, status: str) -> int:
    result = await session.execute(
        select(func.count(Task.id))
        .join(Project)
        .where(Project.user_id == user_id, Task.status == status)
    )
    return int(result.scalar_one())


async def update_task(session: AsyncSession, task_id: int, **fields: Any) -> Task | None:
    """Update allowed task fields. Returns None when the task does not exist."""
    unknown = set(fields) - set(TASK_UPDATABLE_FIELDS)
    if unknown:
        raise ValueError(f"Cannot update task fields: {', '.join(sorted(unknown))}")

    task = await get_task_by_id(session, task_id)
    if task is None:
        return None

    status = fields.get("status")
    if status is not None and status not in {s.value for s in TaskStatus}:
        valid = ", ".join(s.value for s in TaskStatus)
        raise ValueError(f"Invalid status: {status}. Must be one of: {valid}")

    for name, value in fields.items():
        if value is not None:
            setattr(task, name, value)
    task.updated_at = datetime.now(UTC)
    await session.flush()
    return task


async def delete_task(session: AsyncSession, task_id: int) -> bool:
    task = await get_task_by_id(session, task_id)
    if task is None:
        return False
    await session.delete(task)
    await session.flush()
    return True


# =============================================================================
# Conversation Operations
# =============================================================================


async def create_conversation(session: AsyncSession, task_id: int) -> Conversation:
    conversation = Conversation(task_id=task_id)
    session.add(conversation)
    await session.flush()
    return conversation


async def get_conversation(session: AsyncSession, conversation_id: int) -> Conversation | None:
    result = await session.execute(
        select(Conversation).where(Conversation.id == conversation_id)
    )
    return result.scalar_one_or_none()


async def list_conversations(session: AsyncSession, task_id: int) -> list[Conversation]:
    result = await session.execute(
        select(Conversation)
        .where(Conversation.task_id == task_id)
        .order_by(Conversation.created_at.desc(), Conversation.id.desc())
    )
    return list(result.scalars().all())


async def update_claude_session_id(
    session: AsyncSession, conversation_id: int, claude_session_id: str
) -> bool:
    conversation = await get_conversation(session, conversation_id)
    if conversation is None:
        return False
    conversation.claude_session_id = claude_session_id
    await session.flush()
    return True


# =============================================================================
# Agent Run Operations
# =============================================================================


async def create_agent_run(
    session: AsyncSession,
    task_id: int,
    agent_type: str,
    conversation_id: int | None = None,
) -> AgentRun:
    """Create an agent run in the running state."""
    agent_run = AgentRun(
        task_id=task_id,
        agent_type=str(agent_type),
        status=AgentRunStatus.RUNNING.value,
        conversation_id=conversation_id,
    )
    session.add(agent_run)
    await session.flush()
    return agent_run


async def get_agent_run(session: AsyncSession, agent_run_id: int) -> AgentRun | None:
    result = await session.execute(select(AgentRun).where(AgentRun.id == agent_run_id))
    return result.scalar_one_or_none()


async def get_agent_runs_for_task(session: AsyncSession, task_id: int) -> list[AgentRun]:
    """All runs for a task, newest first."""
    result = await session.execute(
        select(AgentRun)
        .where(AgentRun.task_id == task_id)
        .order_by(AgentRun.created_at.desc(), AgentRun.id.desc())
    )
    return list(result.scalars().all())


async def get_latest_agent_run(
    session: AsyncSession, task_id: int, agent_type: str
) -> AgentRun | None:
    result = await session.execute(
        select(AgentRun)
        .where(AgentRun.task_id == task_id, AgentRun.agent_type == str(agent_type))
        .order_by(AgentRun.created_at.desc(), AgentRun.id.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def get_active_agent_runs(session: AsyncSession, task_id: int) -> Sequence[AgentRun]:
    runs = await get_agent_runs_for_task(session, task_id)
    return [run for run in runs if run.status in ACTIVE_RUN_STATUSES]


async def link_conversation(
    session: AsyncSession, agent_run_id: int, conversation_id: int
) -> AgentRun | None:
    agent_run = await get_agent_run(session, agent_run_id)
    if agent_run is None:
        return None
    agent_run.conversation_id = conversation_id
    await session.flush()
    return agent_run


async def update_agent_run_status(
    session: AsyncSession, agent_run_id: int, status: str
) -> AgentRun | None:
    """Set a run's status; completed stamps completed_at, anything else clears it."""
    if status not in {s.value for s in AgentRunStatus}:
        valid = ", ".join(s.value for s in AgentRunStatus)
        raise ValueError(f"Invalid status: {status}. Must be one of: {valid}")

    agent_run = await get_agent_run(session, agent_run_id)
    if agent_run is None:
        return None

    agent_run.status = str(status)
    if status == AgentRunStatus.COMPLETED:
        agent_run.completed_at = datetime.now(UTC)
    else:
        agent_run.completed_at = None
    await session.flush()
    return agent_run


async def delete_agent_run(session: AsyncSession, agent_run_id: int) -> bool:
    agent_run = await get_agent_run(session, agent_run_id)
    if agent_run is None:
        return False
    await session.delete(agent_run)
    await session.flush()
    return True
