"""
Task Agent Loop

This package drives Claude Code agents through a task's planification,
implementation and review phases, with SQLite- or PostgreSQL-backed state.
"""

__version__ = "0.1.0"

from taskloop.claude_client import ClaudeConversationAdapter, ConversationStart
from taskloop.config import Settings
from taskloop.db import Database
from taskloop.errors import (
    AgentAlreadyRunningError,
    ClaudeProcessError,
    TaskNotFoundError,
    UnknownAgentTypeError,
)
from taskloop.events import EventType, RedisBroadcaster
from taskloop.models import (
    AgentRun,
    AgentRunStatus,
    AgentType,
    Conversation,
    Project,
    Task,
    TaskStatus,
)
from taskloop.notifications import PushNotifier
from taskloop.runner import AgentRunner, AgentRunStart

__all__ = [
    # Version
    "__version__",
    # Models
    "AgentRun",
    "AgentRunStatus",
    "AgentType",
    "Conversation",
    "Project",
    "Task",
    "TaskStatus",
    # Orchestration
    "AgentRunner",
    "AgentRunStart",
    "ClaudeConversationAdapter",
    "ConversationStart",
    "Database",
    "EventType",
    "PushNotifier",
    "RedisBroadcaster",
    # Errors
    "AgentAlreadyRunningError",
    "ClaudeProcessError",
    "TaskNotFoundError",
    "UnknownAgentTypeError",
    # Config
    "Settings",
]
