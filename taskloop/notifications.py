"""Push notifications through the OneSignal REST API.

Two kinds of notification are sent:

- banner notifications when Claude finishes a turn (or a task's workflow
  completes);
- silent badge updates carrying the user's count of in-progress tasks.

Devices are linked to backend users with OneSignal's ``external_id`` alias.
Every public call returns ``None`` instead of raising when OneSignal is not
configured or the request fails.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from . import db
from .config import settings
from .models import AgentType, TaskStatus

logger = logging.getLogger(__name__)


def to_external_id(user_id: int | str) -> str:
    # OneSignal rejects bare numeric ids like "1".
    return f"user_{user_id}"


def build_deep_link(
    project_id: int | None,
    conversation_id: int,
    *,
    task_id: int | None = None,
    agent_id: int | None = None,
) -> str | None:
    if project_id and task_id:
        return f"claudeui://projects/{project_id}/tasks/{task_id}/chat/{conversation_id}"
    if project_id and agent_id:
        return f"claudeui://projects/{project_id}/agents/{agent_id}/chat/{conversation_id}"
    return None


class PushNotifier:
    """Sends banner and badge notifications for task progress."""

    def __init__(
        self,
        database: db.Database,
        *,
        app_id: str | None = None,
        rest_api_key: str | None = None,
        api_url: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._database = database
        self.app_id = app_id if app_id is not None else settings.onesignal_app_id
        self._rest_api_key = (
            rest_api_key if rest_api_key is not None else settings.onesignal_rest_api_key
        )
        self._client: httpx.AsyncClient | None = None
        self._api_url = (api_url or settings.onesignal_api_url).rstrip("/")
        self._timeout = timeout if timeout is not None else settings.notification_timeout
        self._transport = transport

    @property
    def is_configured(self) -> bool:
        return bool(self.app_id and self._rest_api_key)

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._api_url,
                timeout=httpx.Timeout(self._timeout),
                headers={"Authorization": f"Key {self._rest_api_key}"},
                transport=self._transport,
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _create_notification(self, body: dict[str, Any]) -> dict[str, Any] | None:
        try:
            response = await self._get_client().post("/notifications", json=body)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "OneSignal rejected notification (%s): %s",
                exc.response.status_code,
                exc.response.text,
            )
            return None
        except httpx.HTTPError as exc:
            logger.error("OneSignal request failed: %s", exc)
            return None
        return response.json()

    async def send_banner_notification(
        self,
        user_id: int | str,
        title: str,
        message: str,
        data: dict[str, Any] | None = None,
    ) -> dict[str, Any] | None:
        if not self.is_configured:
            logger.debug("OneSignal not configured, skipping banner notification")
            return None

        body = {
            "app_id": self.app_id,
            "headings": {"en": title},
            "contents": {"en": message},
            "include_aliases": {"external_id": [to_external_id(user_id)]},
            "target_channel": "push",
            "data": data or {},
            "ios_sound": "default",
            "ios_interruption_level": "active",
        }
        response = await self._create_notification(body)
        if response is not None:
            logger.info(
                "Banner notification sent to user %s: id=%s", user_id, response.get("id")
            )
        return response

    async def send_badge_update(
        self, user_id: int | str, badge_count: int
    ) -> dict[str, Any] | None:
        """Silent push that sets the app badge to ``badge_count``."""
        if not self.is_configured:
            logger.debug("OneSignal not configured, skipping badge update")
            return None

        body = {
            "app_id": self.app_id,
            "include_aliases": {"external_id": [to_external_id(user_id)]},
            "target_channel": "push",
            "content_available": True,
            "ios_badgeType": "SetTo",
            "ios_badgeCount": badge_count,
            "contents": {"en": ""},
        }
        response = await self._create_notification(body)
        if response is not None:
            logger.info("Badge update sent to user %s: count=%s", user_id, badge_count)
        return response

    async def get_in_progress_task_count(self, user_id: int) -> int:
        async with self._database.session() as session:
            return await db.count_tasks_for_user(session, user_id, TaskStatus.IN_PROGRESS.value)

    async def update_user_badge(self, user_id: int) -> dict[str, Any] | None:
        if not self.is_configured:
            return None
        count = await self.get_in_progress_task_count(user_id)
        return await self.send_badge_update(user_id, count)

    async def notify_claude_complete(
        self,
        user_id: int,
        task_title: str | None,
        task_id: int | None,
        conversation_id: int,
        *,
        project_id: int | None = None,
        agent_type: str | None = None,
        workflow_complete: bool = False,
        agent_id: int | None = None,
    ) -> dict[str, Any] | None:
        """Banner for a finished Claude turn.

        User turns and planification always notify. Implementation and
        review runs stay quiet while the loop continues and only notify
        once ``workflow_complete`` is set.
        """
        if agent_type in (AgentType.IMPLEMENTATION, AgentType.REVIEW) and not workflow_complete:
            logger.debug("Skipping notification for %s agent, loop continues", agent_type)
            return None

        if workflow_complete:
            title = "Task Workflow Complete"
            message = (
                f"Task ready for review: {task_title}"
                if task_title
                else "Task workflow complete, ready for review"
            )
        else:
            title = "Claude Response Ready"
            message = (
                f"Response ready for: {task_title}"
                if task_title
                else "Claude has finished responding"
            )

        return await self.send_banner_notification(
            user_id,
            title,
            message,
            {
                "type": "workflow_complete" if workflow_complete else "claude_complete",
                "taskId": str(task_id) if task_id else None,
                "agentId": str(agent_id) if agent_id else None,
                "conversationId": str(conversation_id),
                "projectId": str(project_id) if project_id else None,
                "deepLink": build_deep_link(
                    project_id, conversation_id, task_id=task_id, agent_id=agent_id
                ),
            },
        )
