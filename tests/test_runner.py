from pathlib import Path

import pytest

from taskloop import db
from taskloop.documentation import write_project_doc, write_task_doc
from taskloop.errors import AgentAlreadyRunningError, TaskNotFoundError, UnknownAgentTypeError
from taskloop.models import Project, Task
from taskloop.runner import AgentRunner

from fakes import BroadcastRecorder, FakeAdapter, FakeNotifier


def make_runner(
    database: db.Database,
    adapter: FakeAdapter,
    notifier: FakeNotifier | None = None,
    chain_delay: float = 0.01,
) -> AgentRunner:
    return AgentRunner(
        database,
        adapter,
        notifier,  # type: ignore[arg-type]
        chain_delay=chain_delay,
        permission_mode="bypassPermissions",
    )


async def runs_for(database: db.Database, task_id: int) -> list:
    async with database.session() as session:
        return await db.get_agent_runs_for_task(session, task_id)


async def reload_task(database: db.Database, task_id: int) -> Task | None:
    async with database.session() as session:
        return await db.get_task_by_id(session, task_id)


@pytest.mark.asyncio
async def test_start_agent_run_records_run_and_conversation(
    database: db.Database, task: Task, repo_path: Path, adapter: FakeAdapter
) -> None:
    runner = make_runner(database, adapter)

    started = await runner.start_agent_run(task.id, "implementation")

    assert started.claude_session_id == "sess-1"
    assert started.agent_run.status == "running"
    assert started.agent_run.agent_type == "implementation"
    assert started.agent_run.conversation_id == started.conversation.id
    assert started.agent_run.completed_at is None

    async with database.session() as session:
        conversation = await db.get_conversation(session, started.conversation.id)
    assert conversation is not None
    assert conversation.task_id == task.id
    assert conversation.claude_session_id == "sess-1"

    call = adapter.calls[0]
    assert call["task_id"] == task.id
    assert call["cwd"] == str(repo_path)
    assert call["conversation_id"] == started.conversation.id
    assert call["permission_mode"] == "bypassPermissions"
    assert call["custom_system_prompt"] is None
    assert f".claude-ui/tasks/task-{task.id}.md" in call["message"]
    assert call["message"].startswith("@agent-Implement")


@pytest.mark.asyncio
async def test_start_agent_run_passes_documentation_context(
    database: db.Database, task: Task, repo_path: Path, adapter: FakeAdapter
) -> None:
    write_project_doc(repo_path, "Project notes\n")
    write_task_doc(repo_path, task.id, "  Task plan  ")
    runner = make_runner(database, adapter)

    await runner.start_agent_run(task.id, "planification")

    assert adapter.calls[0]["custom_system_prompt"] == (
        "## Project Context\n\nProject notes\n\n---\n\n## Task Context\n\nTask plan"
    )


@pytest.mark.asyncio
async def test_pending_task_moves_to_in_progress(
    database: db.Database, task: Task, adapter: FakeAdapter, notifier: FakeNotifier
) -> None:
    runner = make_runner(database, adapter, notifier)

    await runner.start_agent_run(task.id, "planification", user_id=7)
    await runner.drain()

    refreshed = await reload_task(database, task.id)
    assert refreshed is not None
    assert refreshed.status == "in_progress"
    assert notifier.badge_updates == [7]


@pytest.mark.asyncio
@pytest.mark.parametrize("status", ["in_progress", "completed"])
async def test_non_pending_task_status_is_not_rewritten(
    database: db.Database,
    task: Task,
    adapter: FakeAdapter,
    notifier: FakeNotifier,
    monkeypatch: pytest.MonkeyPatch,
    status: str,
) -> None:
    async with database.session() as session:
        await db.update_task(session, task.id, status=status)

    calls: list[dict] = []
    original = db.update_task

    async def spy(session, task_id, **fields):  # type: ignore[no-untyped-def]
        calls.append(fields)
        return await original(session, task_id, **fields)

    monkeypatch.setattr(db, "update_task", spy)
    runner = make_runner(database, adapter, notifier)

    await runner.start_agent_run(task.id, "review", user_id=7)

    assert calls == []
    assert notifier.badge_updates == []
    refreshed = await reload_task(database, task.id)
    assert refreshed is not None
    assert refreshed.status == status


@pytest.mark.asyncio
async def test_missing_task_raises_without_writes(
    database: db.Database, task: Task, adapter: FakeAdapter
) -> None:
    runner = make_runner(database, adapter)

    with pytest.raises(TaskNotFoundError, match="Task 999 not found"):
        await runner.start_agent_run(999, "implementation")

    assert adapter.calls == []
    assert await runs_for(database, task.id) == []


@pytest.mark.asyncio
async def test_unknown_agent_type_raises_without_writes(
    database: db.Database, task: Task, adapter: FakeAdapter
) -> None:
    runner = make_runner(database, adapter)

    with pytest.raises(UnknownAgentTypeError, match="Unknown agent type: deploy"):
        await runner.start_agent_run(task.id, "deploy")

    assert adapter.calls == []
    assert await runs_for(database, task.id) == []
    refreshed = await reload_task(database, task.id)
    assert refreshed is not None
    assert refreshed.status == "pending"
    async with database.session() as session:
        assert await db.list_conversations(session, task.id) == []


@pytest.mark.asyncio
async def test_adapter_failure_propagates_and_leaves_run(
    database: db.Database, task: Task, adapter: FakeAdapter
) -> None:
    adapter.fail_with = RuntimeError("claude unavailable")
    runner = make_runner(database, adapter)

    with pytest.raises(RuntimeError, match="claude unavailable"):
        await runner.start_agent_run(task.id, "implementation")

    runs = await runs_for(database, task.id)
    assert len(runs) == 1
    assert runs[0].status == "running"
    assert runs[0].conversation_id is not None


@pytest.mark.asyncio
async def test_session_created_broadcasts_streaming_started(
    database: db.Database, task: Task, adapter: FakeAdapter, broadcast: BroadcastRecorder
) -> None:
    runner = make_runner(database, adapter)

    started = await runner.start_agent_run(task.id, "planification", broadcast=broadcast)

    conversation_id, payload = broadcast.events[0]
    assert conversation_id == started.conversation.id
    assert payload == {
        "type": "streaming-started",
        "taskId": task.id,
        "conversationId": started.conversation.id,
        "claudeSessionId": "sess-1",
    }


@pytest.mark.asyncio
async def test_successful_completion_marks_run_completed(
    database: db.Database, task: Task, adapter: FakeAdapter, broadcast: BroadcastRecorder
) -> None:
    runner = make_runner(database, adapter)
    started = await runner.start_agent_run(task.id, "planification", broadcast=broadcast)

    await adapter.complete()
    await runner.drain()

    async with database.session() as session:
        agent_run = await db.get_agent_run(session, started.agent_run.id)
    assert agent_run is not None
    assert agent_run.status == "completed"
    assert agent_run.completed_at is not None
    assert broadcast.of_type("streaming-ended") == [
        {"type": "streaming-ended", "taskId": task.id, "conversationId": started.conversation.id}
    ]
    # Planification never chains.
    assert len(adapter.calls) == 1


@pytest.mark.asyncio
async def test_failed_completion_marks_run_failed_and_does_not_chain(
    database: db.Database, task: Task, adapter: FakeAdapter, broadcast: BroadcastRecorder
) -> None:
    runner = make_runner(database, adapter)
    started = await runner.start_agent_run(task.id, "implementation", broadcast=broadcast)

    await adapter.complete(had_error=True)
    await runner.drain()

    async with database.session() as session:
        agent_run = await db.get_agent_run(session, started.agent_run.id)
    assert agent_run is not None
    assert agent_run.status == "failed"
    assert agent_run.completed_at is None
    assert len(broadcast.of_type("streaming-ended")) == 1
    assert len(adapter.calls) == 1


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("first", "expected_next", "prompt_prefix"),
    [
        ("implementation", "review", "@agent-Review"),
        ("review", "implementation", "@agent-Implement"),
    ],
)
async def test_successful_run_chains_next_agent(
    database: db.Database,
    task: Task,
    adapter: FakeAdapter,
    broadcast: BroadcastRecorder,
    first: str,
    expected_next: str,
    prompt_prefix: str,
) -> None:
    runner = make_runner(database, adapter)
    await runner.start_agent_run(task.id, first, broadcast=broadcast, user_id=None)

    await adapter.complete()
    assert len(runner.pending_chains) == 1
    await runner.drain()

    assert len(adapter.calls) == 2
    assert adapter.calls[1]["message"].startswith(prompt_prefix)
    assert adapter.calls[1]["broadcast"] is broadcast
    runs = await runs_for(database, task.id)
    assert [(r.agent_type, r.status) for r in runs] == [
        (expected_next, "running"),
        (first, "completed"),
    ]


@pytest.mark.asyncio
async def test_no_chain_when_workflow_already_complete(
    database: db.Database, task: Task, adapter: FakeAdapter
) -> None:
    runner = make_runner(database, adapter)
    await runner.start_agent_run(task.id, "review")
    async with database.session() as session:
        await db.update_task(session, task.id, workflow_complete=True)

    await adapter.complete()

    assert runner.pending_chains == frozenset()
    await runner.drain()
    assert len(adapter.calls) == 1


@pytest.mark.asyncio
async def test_no_chain_when_workflow_completes_during_delay(
    database: db.Database, task: Task, adapter: FakeAdapter
) -> None:
    runner = make_runner(database, adapter, chain_delay=0.05)
    await runner.start_agent_run(task.id, "implementation")

    await adapter.complete()
    assert len(runner.pending_chains) == 1
    async with database.session() as session:
        await db.update_task(session, task.id, workflow_complete=True)
    await runner.drain()

    assert len(adapter.calls) == 1
    assert len(await runs_for(database, task.id)) == 1


@pytest.mark.asyncio
async def test_no_chain_when_another_agent_starts_during_delay(
    database: db.Database, task: Task, adapter: FakeAdapter
) -> None:
    runner = make_runner(database, adapter, chain_delay=0.05)
    await runner.start_agent_run(task.id, "implementation")

    await adapter.complete()
    async with database.session() as session:
        manual = await db.create_agent_run(session, task.id, "planification")
    await runner.drain()

    assert len(adapter.calls) == 1
    running = await runner.get_running_agent_for_task(task.id)
    assert running is not None
    assert running.id == manual.id


@pytest.mark.asyncio
async def test_failed_chain_start_records_failed_run(
    database: db.Database, task: Task, adapter: FakeAdapter
) -> None:
    runner = make_runner(database, adapter)
    await runner.start_agent_run(task.id, "implementation")

    await adapter.complete()
    adapter.fail_with = RuntimeError("spawn failed")
    await runner.drain()

    runs = await runs_for(database, task.id)
    failed = [r for r in runs if r.status == "failed"]
    assert [r.agent_type for r in failed] == ["review"]
    assert failed[0].conversation_id is None


@pytest.mark.asyncio
async def test_duplicate_completion_is_ignored(
    database: db.Database, task: Task, adapter: FakeAdapter, broadcast: BroadcastRecorder
) -> None:
    runner = make_runner(database, adapter)
    await runner.start_agent_run(task.id, "implementation", broadcast=broadcast)

    await adapter.complete(0)
    await adapter.complete(0, had_error=True)
    await runner.drain()

    assert len(broadcast.of_type("streaming-ended")) == 1
    runs = await runs_for(database, task.id)
    assert [(r.agent_type, r.status) for r in runs] == [
        ("review", "running"),
        ("implementation", "completed"),
    ]


@pytest.mark.asyncio
async def test_completion_notifies_user(
    database: db.Database, task: Task, adapter: FakeAdapter, notifier: FakeNotifier
) -> None:
    runner = make_runner(database, adapter, notifier)
    started = await runner.start_agent_run(task.id, "planification", user_id=7)

    await adapter.complete()
    await runner.drain()

    assert len(notifier.completions) == 1
    completion = notifier.completions[0]
    assert completion["user_id"] == 7
    assert completion["args"] == ("Add login", task.id, started.conversation.id)
    assert completion["agent_type"] == "planification"
    assert completion["project_id"] == task.project_id
    assert completion["workflow_complete"] is False


@pytest.mark.asyncio
async def test_completion_without_user_does_not_notify(
    database: db.Database, task: Task, adapter: FakeAdapter, notifier: FakeNotifier
) -> None:
    runner = make_runner(database, adapter, notifier)
    await runner.start_agent_run(task.id, "planification")

    await adapter.complete()
    await runner.drain()

    assert notifier.completions == []
    assert notifier.badge_updates == []


@pytest.mark.asyncio
async def test_completion_without_notifier_still_finishes_run(
    database: db.Database, task: Task, adapter: FakeAdapter
) -> None:
    runner = make_runner(database, adapter)
    await runner.start_agent_run(task.id, "planification", user_id=7)

    await adapter.complete()
    await runner.drain()

    assert [run.status for run in await runs_for(database, task.id)] == ["completed"]


@pytest.mark.asyncio
async def test_get_running_agent_for_task_returns_newest_active(
    database: db.Database, task: Task, adapter: FakeAdapter
) -> None:
    runner = make_runner(database, adapter)
    assert await runner.get_running_agent_for_task(task.id) is None

    async with database.session() as session:
        older = await db.create_agent_run(session, task.id, "implementation")
        newer = await db.create_agent_run(session, task.id, "review")
        done = await db.create_agent_run(session, task.id, "review")
        await db.update_agent_run_status(session, done.id, "completed")

    running = await runner.get_running_agent_for_task(task.id)
    assert running is not None
    assert running.id == newer.id
    assert running.id != older.id


@pytest.mark.asyncio
async def test_ensure_no_running_agent_raises_conflict(
    database: db.Database, task: Task, adapter: FakeAdapter
) -> None:
    runner = make_runner(database, adapter)
    await runner.ensure_no_running_agent(task.id)
    started = await runner.start_agent_run(task.id, "implementation")

    with pytest.raises(AgentAlreadyRunningError) as exc_info:
        await runner.ensure_no_running_agent(task.id)
    assert exc_info.value.agent_run.id == started.agent_run.id
    assert exc_info.value.exit_code == 9


@pytest.mark.asyncio
async def test_force_complete_running_agents(
    database: db.Database, task: Task, adapter: FakeAdapter
) -> None:
    runner = make_runner(database, adapter)
    async with database.session() as session:
        await db.create_agent_run(session, task.id, "implementation")
        pending = await db.create_agent_run(session, task.id, "review")
        await db.update_agent_run_status(session, pending.id, "pending")
        failed = await db.create_agent_run(session, task.id, "review")
        await db.update_agent_run_status(session, failed.id, "failed")

    count = await runner.force_complete_running_agents(task.id)
    await runner.drain()

    assert count == 2
    statuses = sorted(r.status for r in await runs_for(database, task.id))
    assert statuses == ["completed", "completed", "failed"]
    assert all(
        r.completed_at is not None
        for r in await runs_for(database, task.id)
        if r.status == "completed"
    )
    assert adapter.calls == []
    assert await runner.force_complete_running_agents(task.id) == 0


@pytest.mark.asyncio
async def test_set_workflow_complete(
    database: db.Database, task: Task, adapter: FakeAdapter
) -> None:
    runner = make_runner(database, adapter)
    await runner.start_agent_run(task.id, "review")

    assert await runner.set_workflow_complete(task.id, True) == 1
    refreshed = await reload_task(database, task.id)
    assert refreshed is not None
    assert refreshed.workflow_complete is True
    assert await runner.get_running_agent_for_task(task.id) is None

    assert await runner.set_workflow_complete(task.id, False) == 0
    refreshed = await reload_task(database, task.id)
    assert refreshed is not None
    assert refreshed.workflow_complete is False

    with pytest.raises(TaskNotFoundError):
        await runner.set_workflow_complete(999, True)


@pytest.mark.asyncio
async def test_full_agent_loop(
    database: db.Database,
    project: Project,
    task: Task,
    adapter: FakeAdapter,
    broadcast: BroadcastRecorder,
    notifier: FakeNotifier,
) -> None:
    runner = make_runner(database, adapter, notifier)

    await runner.start_agent_run(task.id, "planification", broadcast=broadcast, user_id=7)
    await adapter.complete()
    await runner.drain()
    assert len(adapter.calls) == 1

    await runner.start_agent_run(task.id, "implementation", broadcast=broadcast, user_id=7)
    await adapter.complete()
    await runner.drain()
    assert adapter.calls[-1]["message"].startswith("@agent-Review")

    # The review agent signals READY before its turn ends.
    async with database.session() as session:
        await db.update_task(session, task.id, workflow_complete=True)
    await adapter.complete()
    await runner.drain()

    assert len(adapter.calls) == 3
    runs = await runs_for(database, task.id)
    assert [(r.agent_type, r.status) for r in runs] == [
        ("review", "completed"),
        ("implementation", "completed"),
        ("planification", "completed"),
    ]
    assert await runner.get_running_agent_for_task(task.id) is None
    assert len(broadcast.of_type("streaming-started")) == 3
    assert len(broadcast.of_type("streaming-ended")) == 3
    assert notifier.badge_updates == [7]
    assert [c["workflow_complete"] for c in notifier.completions] == [False, False, True]
