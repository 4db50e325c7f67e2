"""Error types and helpers for taskloop."""

from __future__ import annotations

import re
from typing import TYPE_CHECKING, Any

import click

if TYPE_CHECKING:
    from .models import AgentRun


class TaskloopError(click.ClickException):
    """Base class for errors surfaced to callers and rendered by the CLI."""


class TaskNotFoundError(TaskloopError):
    """Raised when a task id does not resolve to a task with its project."""

    def __init__(self, task_id: Any) -> None:
        super().__init__(f"Task {task_id} not found")
        self.task_id = task_id


class UnknownAgentTypeError(TaskloopError):
    """Raised for an agent type outside planification/implementation/review."""

    def __init__(self, agent_type: Any) -> None:
        super().__init__(f"Unknown agent type: {agent_type}")
        self.agent_type = agent_type


class AgentAlreadyRunningError(TaskloopError):
    """Raised when a task already has a running or pending agent run."""

    exit_code = 9

    def __init__(self, task_id: int, agent_run: AgentRun) -> None:
        super().__init__(
            f"Task {task_id} already has a {agent_run.agent_type} agent "
            f"running (run {agent_run.id})"
        )
        self.task_id = task_id
        self.agent_run = agent_run


class ClaudeProcessError(RuntimeError):
    """Raised when the Claude CLI fails before a session id is assigned."""


class SchemaNotInitializedError(TaskloopError):
    """Raised when the database tables have not been created."""


_PG_MISSING_RELATION_RE = re.compile(r'relation "(?P<table>[^"]+)" does not exist', re.IGNORECASE)
_SQLITE_MISSING_TABLE_RE = re.compile(r"no such table:\s*(?P<table>[A-Za-z0-9_]+)", re.IGNORECASE)


def _unwrap_exception_chain(exc: BaseException) -> list[BaseException]:
    chain: list[BaseException] = []
    current: BaseException | None = exc
    while current is not None and current not in chain:
        chain.append(current)
        current = current.__cause__ or current.__context__
    return chain


def missing_table_name(exc: BaseException) -> str | None:
    """Best-effort extraction of the missing table name from a DB exception."""
    for e in _unwrap_exception_chain(exc):
        message = str(e)
        match = _PG_MISSING_RELATION_RE.search(message) or _SQLITE_MISSING_TABLE_RE.search(message)
        if match:
            return match.group("table")
    return None


def is_schema_missing_error(exc: BaseException) -> bool:
    """Return True if the exception looks like a missing-table error."""
    if missing_table_name(exc):
        return True

    # Fallback for drivers that don't format errors consistently.
    for e in _unwrap_exception_chain(exc):
        message = str(e).lower()
        if "undefinedtableerror" in message:
            return True
    return False


def schema_not_initialized_message(exc: BaseException) -> str:
    table = missing_table_name(exc)
    table_hint = f" (missing table `{table}`)" if table else ""

    lines: list[str] = [
        f"Database schema is not initialized{table_hint}.",
        "Run: `taskloop init-db`",
        "Or validate with: `taskloop schema-check`",
    ]
    return "\n".join(lines)
