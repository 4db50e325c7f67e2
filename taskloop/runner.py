"""Agent run orchestration.

``AgentRunner`` starts one agent phase for a task, records it as an
``AgentRun`` and hands the turn to the conversation adapter. When a phase
ends successfully the runner chains ``implementation -> review ->
implementation`` until the task's ``workflow_complete`` flag is set.

The "one running agent per task" rule is a check-then-act over separate
sessions with no lock, so two concurrent starts can both pass the check.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Coroutine
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

from . import db
from .claude_client import ConversationStart, SessionCreatedFn, StreamingCompleteFn
from .config import settings
from .documentation import build_context_prompt, task_doc_relpath
from .errors import AgentAlreadyRunningError, TaskNotFoundError
from .events import BroadcastFn, EventType, emit
from .models import AgentRun, AgentRunStatus, AgentType, Conversation, TaskStatus
from .notifications import PushNotifier
from .prompts import message_for, parse_agent_type

logger = logging.getLogger(__name__)

# Phases that hand over to each other after a successful run.
NEXT_AGENT: dict[AgentType, AgentType] = {
    AgentType.IMPLEMENTATION: AgentType.REVIEW,
    AgentType.REVIEW: AgentType.IMPLEMENTATION,
}


class ConversationAdapter(Protocol):
    async def start_conversation(
        self,
        task_id: int,
        message: str,
        *,
        conversation_id: int,
        cwd: str | Path | None = None,
        broadcast: BroadcastFn | None = None,
        user_id: int | None = None,
        custom_system_prompt: str | None = None,
        permission_mode: str = "default",
        on_session_created: SessionCreatedFn | None = None,
        on_streaming_complete: StreamingCompleteFn | None = None,
    ) -> ConversationStart: ...

    @property
    def has_pending_streams(self) -> bool: ...

    async def drain(self) -> None: ...


@dataclass
class AgentRunStart:
    """What ``start_agent_run`` returns once the CLI has a session."""

    agent_run: AgentRun
    conversation: Conversation
    claude_session_id: str


@dataclass(frozen=True)
class _RunContext:
    task_id: int
    agent_run_id: int
    conversation_id: int
    agent_type: AgentType
    broadcast: BroadcastFn | None
    user_id: int | None


class AgentRunner:
    """Starts agent phases and chains implementation and review runs."""

    def __init__(
        self,
        database: db.Database,
        adapter: ConversationAdapter,
        notifier: PushNotifier | None = None,
        *,
        chain_delay: float | None = None,
        permission_mode: str | None = None,
    ) -> None:
        self._database = database
        self._adapter = adapter
        self._notifier = notifier
        self.chain_delay = chain_delay if chain_delay is not None else settings.chain_delay
        self.permission_mode = permission_mode or settings.permission_mode
        self._chains: set[asyncio.Task[None]] = set()
        self._background: set[asyncio.Task[None]] = set()

    @property
    def pending_chains(self) -> frozenset[asyncio.Task[None]]:
        return frozenset(self._chains)

    # -------------------------------------------------------------------------
    # Starting runs
    # -------------------------------------------------------------------------

    async def start_agent_run(
        self,
        task_id: int,
        agent_type: str | AgentType,
        *,
        broadcast: BroadcastFn | None = None,
        user_id: int | None = None,
    ) -> AgentRunStart:
        """Start one agent phase for a task.

        Raises TaskNotFoundError or UnknownAgentTypeError before anything is
        written. Storage and adapter errors after that propagate as they are;
        rows already written stay in place.
        """
        async with self._database.session() as session:
            task = await db.get_task_with_project(session, task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        agent = parse_agent_type(agent_type)
        repo_path = task.project.repo_folder_path

        if task.status == TaskStatus.PENDING:
            async with self._database.session() as session:
                await db.update_task(session, task_id, status=TaskStatus.IN_PROGRESS.value)
            logger.info("Task %s moved to in_progress", task_id)
            if user_id is not None and self._notifier is not None:
                self._run_in_background(
                    self._notifier.update_user_badge(user_id), f"badge update for user {user_id}"
                )

        async with self._database.session() as session:
            agent_run = await db.create_agent_run(session, task_id, agent)
        async with self._database.session() as session:
            conversation = await db.create_conversation(session, task_id)
        async with self._database.session() as session:
            linked = await db.link_conversation(session, agent_run.id, conversation.id)
        if linked is not None:
            agent_run = linked

        logger.info(
            "Starting %s agent for task %s (run %s, conversation %s)",
            agent,
            task_id,
            agent_run.id,
            conversation.id,
        )

        message = message_for(agent, task_doc_relpath(task_id), task_id)
        context_prompt = build_context_prompt(repo_path, task_id)

        ctx = _RunContext(
            task_id=task_id,
            agent_run_id=agent_run.id,
            conversation_id=conversation.id,
            agent_type=agent,
            broadcast=broadcast,
            user_id=user_id,
        )
        completed = False

        async def on_session_created(claude_session_id: str) -> None:
            async with self._database.session() as session:
                await db.update_claude_session_id(session, ctx.conversation_id, claude_session_id)
            await emit(
                broadcast,
                ctx.conversation_id,
                EventType.STREAMING_STARTED,
                taskId=task_id,
                conversationId=ctx.conversation_id,
                claudeSessionId=claude_session_id,
            )

        async def on_streaming_complete(claude_session_id: str, had_error: bool) -> None:
            nonlocal completed
            if completed:
                logger.debug("Ignoring repeated completion for run %s", ctx.agent_run_id)
                return
            completed = True
            await self._handle_completion(ctx, had_error)

        start = await self._adapter.start_conversation(
            task_id,
            message,
            conversation_id=conversation.id,
            cwd=repo_path,
            broadcast=broadcast,
            user_id=user_id,
            custom_system_prompt=context_prompt or None,
            permission_mode=self.permission_mode,
            on_session_created=on_session_created,
            on_streaming_complete=on_streaming_complete,
        )
        conversation.claude_session_id = start.claude_session_id
        return AgentRunStart(
            agent_run=agent_run,
            conversation=conversation,
            claude_session_id=start.claude_session_id,
        )

    # -------------------------------------------------------------------------
    # Completion and chaining
    # -------------------------------------------------------------------------

    async def _handle_completion(self, ctx: _RunContext, had_error: bool) -> None:
        status = AgentRunStatus.FAILED if had_error else AgentRunStatus.COMPLETED
        async with self._database.session() as session:
            await db.update_agent_run_status(session, ctx.agent_run_id, status.value)
        logger.info(
            "%s agent for task %s finished: run %s %s",
            ctx.agent_type,
            ctx.task_id,
            ctx.agent_run_id,
            status,
        )

        await emit(
            ctx.broadcast,
            ctx.conversation_id,
            EventType.STREAMING_ENDED,
            taskId=ctx.task_id,
            conversationId=ctx.conversation_id,
        )

        if ctx.user_id is not None and self._notifier is not None:
            self._run_in_background(
                self._notify_complete(self._notifier, ctx, ctx.user_id),
                f"completion notification for run {ctx.agent_run_id}",
            )

        if had_error or ctx.agent_type not in NEXT_AGENT:
            return

        async with self._database.session() as session:
            task = await db.get_task_by_id(session, ctx.task_id)
        if task is None:
            logger.info("Task %s no longer exists, not chaining", ctx.task_id)
            return
        if task.workflow_complete:
            logger.info("Workflow complete for task %s, stopping agent loop", ctx.task_id)
            return

        next_type = NEXT_AGENT[ctx.agent_type]
        chain = asyncio.create_task(
            self._chain(ctx.task_id, next_type, ctx.broadcast, ctx.user_id)
        )
        self._chains.add(chain)
        chain.add_done_callback(self._chains.discard)
        logger.info(
            "Scheduled %s agent for task %s in %ss", next_type, ctx.task_id, self.chain_delay
        )

    async def _chain(
        self,
        task_id: int,
        next_type: AgentType,
        broadcast: BroadcastFn | None,
        user_id: int | None,
    ) -> None:
        await asyncio.sleep(self.chain_delay)

        # The flag or another run may have changed during the delay.
        async with self._database.session() as session:
            task = await db.get_task_by_id(session, task_id)
        if task is None or task.workflow_complete:
            logger.info("Task %s finished during chain delay, not starting %s", task_id, next_type)
            return
        running = await self.get_running_agent_for_task(task_id)
        if running is not None:
            logger.info(
                "Task %s already has %s run %s active, not starting %s",
                task_id,
                running.agent_type,
                running.id,
                next_type,
            )
            return

        try:
            await self.start_agent_run(task_id, next_type, broadcast=broadcast, user_id=user_id)
        except Exception:
            logger.exception("Failed to start chained %s agent for task %s", next_type, task_id)
            await self._record_failed_run(task_id, next_type)

    async def _record_failed_run(self, task_id: int, agent_type: AgentType) -> None:
        try:
            async with self._database.session() as session:
                agent_run = await db.create_agent_run(session, task_id, agent_type)
                await db.update_agent_run_status(
                    session, agent_run.id, AgentRunStatus.FAILED.value
                )
        except Exception:
            logger.exception("Could not record failed %s run for task %s", agent_type, task_id)

    async def _notify_complete(
        self, notifier: PushNotifier, ctx: _RunContext, user_id: int
    ) -> None:
        async with self._database.session() as session:
            task = await db.get_task_with_project(session, ctx.task_id)
        await notifier.notify_claude_complete(
            user_id,
            task.title if task else None,
            ctx.task_id,
            ctx.conversation_id,
            project_id=task.project_id if task else None,
            agent_type=ctx.agent_type,
            workflow_complete=bool(task and task.workflow_complete),
        )

    def _run_in_background(self, coro: Coroutine[Any, Any, Any], description: str) -> None:
        async def runner() -> None:
            try:
                await coro
            except Exception:
                logger.exception("Background %s failed", description)

        background = asyncio.create_task(runner())
        self._background.add(background)
        background.add_done_callback(self._background.discard)

    # -------------------------------------------------------------------------
    # Queries and recovery
    # -------------------------------------------------------------------------

    async def get_running_agent_for_task(self, task_id: int) -> AgentRun | None:
        """Newest run in ``running`` or ``pending`` state, if any."""
        async with self._database.session() as session:
            active = await db.get_active_agent_runs(session, task_id)
        return active[0] if active else None

    async def ensure_no_running_agent(self, task_id: int) -> None:
        running = await self.get_running_agent_for_task(task_id)
        if running is not None:
            raise AgentAlreadyRunningError(task_id, running)

    async def force_complete_running_agents(self, task_id: int) -> int:
        """Mark every active run as completed. Does not chain or stop processes."""
        async with self._database.session() as session:
            active = await db.get_active_agent_runs(session, task_id)
            for agent_run in active:
                await db.update_agent_run_status(
                    session, agent_run.id, AgentRunStatus.COMPLETED.value
                )
        if active:
            logger.info("Force-completed %d running agent(s) for task %s", len(active), task_id)
        return len(active)

    async def set_workflow_complete(self, task_id: int, complete: bool = True) -> int:
        """Set the workflow flag. Completing it also force-completes active runs."""
        async with self._database.session() as session:
            task = await db.update_task(session, task_id, workflow_complete=complete)
        if task is None:
            raise TaskNotFoundError(task_id)
        if not complete:
            return 0
        return await self.force_complete_running_agents(task_id)

    async def drain(self) -> None:
        """Wait until no chain, background job or adapter stream is pending."""
        while True:
            pending = [*self._chains, *self._background]
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
            elif self._adapter.has_pending_streams:
                await self._adapter.drain()
            else:
                return
