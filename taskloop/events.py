"""
Broadcast events emitted while an agent conversation streams.
"""

from __future__ import annotations

import inspect
import json
import logging
from collections.abc import Awaitable, Callable
from enum import StrEnum
from typing import Any

from redis.asyncio import Redis

logger = logging.getLogger(__name__)

BroadcastFn = Callable[[int, dict[str, Any]], Awaitable[None] | None]


class EventType(StrEnum):
    STREAMING_STARTED = "streaming-started"
    STREAMING_ENDED = "streaming-ended"

    CONVERSATION_CREATED = "conversation-created"
    SESSION_CREATED = "session-created"

    CLAUDE_RESPONSE = "claude-response"
    CLAUDE_COMPLETE = "claude-complete"
    CLAUDE_ERROR = "claude-error"


def conversation_channel(conversation_id: int) -> str:
    return f"channel:conversation:{conversation_id}"


async def emit(
    broadcast: BroadcastFn | None,
    conversation_id: int,
    event_type: EventType,
    **data: Any,
) -> None:
    """Send one event through ``broadcast``; handler errors are logged, not raised."""
    if broadcast is None:
        return
    payload = {"type": event_type.value, **data}
    try:
        result = broadcast(conversation_id, payload)
        if inspect.isawaitable(result):
            await result
    except Exception:
        logger.exception(
            "Broadcast handler failed for %s on conversation %s", event_type.value, conversation_id
        )


class RedisBroadcaster:
    """Publishes conversation events to Redis Pub/Sub as JSON."""

    def __init__(self, redis: Redis) -> None:
        self._redis = redis

    async def __call__(self, conversation_id: int, payload: dict[str, Any]) -> None:
        channel = conversation_channel(conversation_id)
        await self._redis.publish(channel, json.dumps(payload, default=str))
