"""Conversation adapter that drives the Claude Code CLI in stream-json mode."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .config import settings
from .errors import ClaudeProcessError
from .events import BroadcastFn, EventType, emit

logger = logging.getLogger(__name__)

SessionCreatedFn = Callable[[str], Awaitable[None]]
StreamingCompleteFn = Callable[[str, bool], Awaitable[None]]

# stream-json lines carry whole tool results; asyncio's 64 KiB default is too small.
_STREAM_LIMIT = 16 * 1024 * 1024


@dataclass(frozen=True)
class ConversationStart:
    conversation_id: int
    claude_session_id: str


@dataclass
class ActiveSession:
    process: asyncio.subprocess.Process
    task_id: int
    conversation_id: int
    started_at: float = field(default_factory=time.monotonic)
    status: str = "active"


def parse_stream_line(raw_line: bytes) -> dict[str, Any] | None:
    """Decode one stream-json line; non-JSON output yields None."""
    line = raw_line.decode("utf-8", errors="replace").strip()
    if not line:
        return None
    try:
        message = json.loads(line)
    except json.JSONDecodeError:
        logger.debug("Ignoring non-JSON Claude output: %s", line[:200])
        return None
    return message if isinstance(message, dict) else None


def is_error_result(message: dict[str, Any]) -> bool:
    return message.get("type") == "result" and bool(message.get("is_error"))


class ClaudeConversationAdapter:
    """Starts Claude conversations and reports their lifecycle through callbacks.

    For each conversation ``on_session_created`` fires once when the CLI
    reports a session id, then ``on_streaming_complete`` fires once when the
    stream ends. If the CLI fails before a session id appears,
    ``start_conversation`` raises and neither callback fires.
    """

    def __init__(
        self,
        claude_cmd: str | None = None,
        *,
        session_timeout: float | None = None,
        stream_limit: int = _STREAM_LIMIT,
    ) -> None:
        self.claude_cmd = claude_cmd or settings.claude_cmd
        self.session_timeout = (
            session_timeout if session_timeout is not None else settings.session_timeout
        )
        self.stream_limit = stream_limit
        self._sessions: dict[str, ActiveSession] = {}
        self._streams: set[asyncio.Task[None]] = set()

    def build_command(
        self,
        message: str,
        *,
        permission_mode: str = "default",
        custom_system_prompt: str | None = None,
        resume_session_id: str | None = None,
    ) -> list[str]:
        command = [
            self.claude_cmd,
            "-p",
            message,
            "--output-format",
            "stream-json",
            "--verbose",
            "--permission-mode",
            permission_mode,
        ]
        if custom_system_prompt:
            command += ["--append-system-prompt", custom_system_prompt]
        if resume_session_id:
            command += ["--resume", resume_session_id]
        return command

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
        resume_session_id: str | None = None,
        on_session_created: SessionCreatedFn | None = None,
        on_streaming_complete: StreamingCompleteFn | None = None,
    ) -> ConversationStart:
        """Spawn the CLI and return once it reports a session id.

        The turn keeps streaming in a background task after this returns.
        """
        command = self.build_command(
            message,
            permission_mode=permission_mode,
            custom_system_prompt=custom_system_prompt,
            resume_session_id=resume_session_id,
        )
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(cwd) if cwd else None,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=self.stream_limit,
            )
        except FileNotFoundError as exc:
            raise ClaudeProcessError(f"Claude binary not found: {self.claude_cmd}") from exc

        logger.info(
            "Started Claude (pid %s) for task %s, conversation %s",
            process.pid,
            task_id,
            conversation_id,
        )

        session_ready: asyncio.Future[str] = asyncio.get_running_loop().create_future()
        announced = asyncio.Event()
        stream = asyncio.create_task(
            self._stream(
                process,
                task_id=task_id,
                conversation_id=conversation_id,
                broadcast=broadcast,
                session_ready=session_ready,
                announced=announced,
                on_session_created=on_session_created,
                on_streaming_complete=on_streaming_complete,
            )
        )
        self._streams.add(stream)
        stream.add_done_callback(self._streams.discard)

        try:
            claude_session_id = await asyncio.wait_for(
                asyncio.shield(session_ready), timeout=self.session_timeout
            )
        except TimeoutError as exc:
            # cancel() fails when the session id arrived as the timeout fired.
            if not session_ready.cancel():
                claude_session_id = session_ready.result()
            else:
                if process.returncode is None:
                    process.kill()
                raise ClaudeProcessError(
                    f"Session creation timeout after {self.session_timeout}s"
                ) from exc

        await announced.wait()
        return ConversationStart(
            conversation_id=conversation_id, claude_session_id=claude_session_id
        )

    async def _stream(
        self,
        process: asyncio.subprocess.Process,
        *,
        task_id: int,
        conversation_id: int,
        broadcast: BroadcastFn | None,
        session_ready: asyncio.Future[str],
        announced: asyncio.Event,
        on_session_created: SessionCreatedFn | None,
        on_streaming_complete: StreamingCompleteFn | None,
    ) -> None:
        if process.stdout is None or process.stderr is None:
            raise ClaudeProcessError("Claude process was started without output pipes")
        stderr_reader = asyncio.create_task(process.stderr.read())

        claude_session_id: str | None = None
        had_error = False

        try:
            async for raw_line in process.stdout:
                # A cancelled session_ready means the start timed out and was reported failed.
                if session_ready.cancelled():
                    continue
                message = parse_stream_line(raw_line)
                if message is None:
                    continue

                session_id = message.get("session_id")
                if claude_session_id is None and isinstance(session_id, str) and session_id:
                    claude_session_id = session_id
                    session_ready.set_result(session_id)
                    self._sessions[session_id] = ActiveSession(
                        process=process, task_id=task_id, conversation_id=conversation_id
                    )
                    if on_session_created is not None:
                        try:
                            await on_session_created(session_id)
                        except Exception:
                            logger.exception(
                                "Session-created handler failed for conversation %s",
                                conversation_id,
                            )
                    await emit(
                        broadcast,
                        conversation_id,
                        EventType.CONVERSATION_CREATED,
                        conversationId=conversation_id,
                        claudeSessionId=session_id,
                    )
                    announced.set()

                if is_error_result(message):
                    had_error = True

                await emit(broadcast, conversation_id, EventType.CLAUDE_RESPONSE, data=message)
        except Exception:
            had_error = True
            logger.exception("Failed reading Claude output for conversation %s", conversation_id)
            if process.returncode is None:
                process.kill()
            # wait() only returns once stdout reaches EOF.
            await process.stdout.read()
        finally:
            announced.set()

        return_code = await process.wait()
        stderr_output = (await stderr_reader).decode("utf-8", errors="replace").strip()
        if return_code != 0:
            had_error = True
            logger.warning(
                "Claude exited with code %s for conversation %s: %s",
                return_code,
                conversation_id,
                stderr_output,
            )

        if claude_session_id is None:
            if not session_ready.done():
                session_ready.set_exception(
                    ClaudeProcessError(
                        f"Claude exited with code {return_code} before creating a session: "
                        f"{stderr_output}"
                    )
                )
            return

        self._sessions.pop(claude_session_id, None)

        if had_error:
            await emit(
                broadcast,
                conversation_id,
                EventType.CLAUDE_ERROR,
                sessionId=claude_session_id,
                error=stderr_output or f"Claude exited with code {return_code}",
            )
        else:
            await emit(
                broadcast,
                conversation_id,
                EventType.CLAUDE_COMPLETE,
                sessionId=claude_session_id,
                exitCode=return_code,
            )

        if on_streaming_complete is not None:
            try:
                await on_streaming_complete(claude_session_id, had_error)
            except Exception:
                logger.exception(
                    "Streaming-complete handler failed for conversation %s", conversation_id
                )

    async def abort_session(self, session_id: str) -> bool:
        """Terminate the CLI behind a session. The stream then ends with an error."""
        active = self._sessions.get(session_id)
        if active is None:
            logger.info("Session %s not found", session_id)
            return False
        active.status = "aborted"
        if active.process.returncode is None:
            active.process.terminate()
        return True

    def is_session_active(self, session_id: str) -> bool:
        active = self._sessions.get(session_id)
        return active is not None and active.status == "active"

    def active_sessions(self) -> dict[str, ActiveSession]:
        return dict(self._sessions)

    def session_for_conversation(self, conversation_id: int) -> str | None:
        for session_id, active in self._sessions.items():
            if active.conversation_id == conversation_id:
                return session_id
        return None

    @property
    def has_pending_streams(self) -> bool:
        return bool(self._streams)

    async def drain(self) -> None:
        """Wait for every background stream to finish."""
        while self._streams:
            await asyncio.gather(*list(self._streams), return_exceptions=True)
