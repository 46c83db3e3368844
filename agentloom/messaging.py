"""Agent-to-agent messages: direct sends, team broadcasts and threaded replies."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from .contracts import (
    AgentMessage,
    MessagePriority,
    MessageStatus,
    MessageType,
    utcnow,
)
from .errors import NotFoundError
from .persistence import OrchestrationRepository

logger = logging.getLogger(__name__)

DEFAULT_INBOX_LIMIT = 50


class AgentMessageBus:
    """Repository-backed mailbox for the agents of one workspace."""

    def __init__(self, repository: OrchestrationRepository, workspace_id: str = "default") -> None:
        self.repository = repository
        self.workspace_id = workspace_id

    async def send(
        self,
        subject: str,
        body: str = "",
        *,
        from_agent_id: Optional[str] = None,
        to_agent_id: Optional[str] = None,
        team_id: Optional[str] = None,
        message_type: MessageType = MessageType.CONTEXT,
        data: Optional[Dict[str, Any]] = None,
        priority: MessagePriority = MessagePriority.NORMAL,
        parent_message_id: Optional[str] = None,
    ) -> AgentMessage:
        """Store a message and return it.

        A reply inherits the thread of its parent; anything else starts a
        thread rooted at itself. Addressed messages are delivered on send.
        """
        message = AgentMessage(
            workspace_id=self.workspace_id,
            from_agent_id=from_agent_id,
            to_agent_id=to_agent_id,
            team_id=team_id,
            message_type=message_type,
            subject=subject,
            body=body,
            data=data or {},
            priority=priority,
            parent_message_id=parent_message_id,
        )
        message.thread_id = await self._thread_for(parent_message_id) or message.id
        if to_agent_id:
            message.status = MessageStatus.DELIVERED
            message.delivered_at = message.created_at
        await self.repository.save_message(message)
        logger.info(
            f"Message {message.id} ({message.message_type.value}) "
            f"from={from_agent_id} to={to_agent_id} team={team_id}"
        )
        return message

    async def broadcast(
        self,
        team_id: str,
        subject: str,
        body: str = "",
        *,
        from_agent_id: Optional[str] = None,
        message_type: MessageType = MessageType.CONTEXT,
        data: Optional[Dict[str, Any]] = None,
        priority: MessagePriority = MessagePriority.NORMAL,
    ) -> List[AgentMessage]:
        """Send one copy to every team member except the sender, on a shared thread."""
        team = await self.repository.get_team(team_id)
        if team is None:
            raise NotFoundError(f"Team {team_id} not found")
        if not team.members:
            logger.warning(f"Broadcast to team_id={team_id} skipped: team has no members")
            return []

        sent: List[AgentMessage] = []
        thread_id: Optional[str] = None
        for member in team.members:
            if member.agent_id == from_agent_id:
                continue
            message = AgentMessage(
                workspace_id=self.workspace_id,
                from_agent_id=from_agent_id,
                to_agent_id=member.agent_id,
                team_id=team_id,
                message_type=message_type,
                subject=subject,
                body=body,
                data=dict(data or {}),
                priority=priority,
                status=MessageStatus.DELIVERED,
            )
            message.delivered_at = message.created_at
            thread_id = thread_id or message.id
            message.thread_id = thread_id
            await self.repository.save_message(message)
            sent.append(message)

        logger.info(f"Broadcast to team_id={team_id} reached {len(sent)} members")
        return sent

    async def get_messages(
        self,
        agent_id: str,
        *,
        unread_only: bool = False,
        message_type: Optional[MessageType] = None,
        team_id: Optional[str] = None,
        since: Optional[datetime] = None,
        limit: int = DEFAULT_INBOX_LIMIT,
    ) -> List[AgentMessage]:
        """Return the most recent ``limit`` messages addressed to ``agent_id``, oldest first."""
        messages = await self.repository.list_messages(self.workspace_id, to_agent_id=agent_id)
        messages = [
            m
            for m in messages
            if (not unread_only or m.status in (MessageStatus.PENDING, MessageStatus.DELIVERED))
            and (message_type is None or m.message_type == message_type)
            and (team_id is None or m.team_id == team_id)
            and (since is None or m.created_at >= since)
        ]
        return messages[-limit:] if limit else messages

    async def unread_count(self, agent_id: str) -> int:
        return len(await self.get_messages(agent_id, unread_only=True, limit=0))

    async def get_thread(self, thread_id: str) -> List[AgentMessage]:
        return await self.repository.list_messages(self.workspace_id, thread_id=thread_id)

    async def mark_read(self, message_id: str) -> None:
        await self._set_status(message_id, MessageStatus.READ)

    async def acknowledge(self, message_id: str) -> None:
        await self._set_status(message_id, MessageStatus.PROCESSED)

    async def reply(
        self,
        message_id: str,
        from_agent_id: str,
        subject: str,
        body: str = "",
        *,
        data: Optional[Dict[str, Any]] = None,
        priority: MessagePriority = MessagePriority.NORMAL,
    ) -> AgentMessage:
        """Answer a message on its thread, addressed to the other party."""
        original = await self._own_message(message_id)
        to_agent_id = (
            original.to_agent_id
            if original.from_agent_id == from_agent_id
            else original.from_agent_id
        )
        return await self.send(
            subject,
            body,
            from_agent_id=from_agent_id,
            to_agent_id=to_agent_id,
            team_id=original.team_id,
            message_type=MessageType.RESULT,
            data=data,
            priority=priority,
            parent_message_id=original.id,
        )

    async def _own_message(self, message_id: str) -> AgentMessage:
        message = await self.repository.get_message(message_id)
        if message is None or message.workspace_id != self.workspace_id:
            raise NotFoundError(f"Message {message_id} not found")
        return message

    async def _thread_for(self, parent_message_id: Optional[str]) -> Optional[str]:
        if parent_message_id is None:
            return None
        parent = await self._own_message(parent_message_id)
        return parent.thread_id or parent.id

    async def _set_status(self, message_id: str, status: MessageStatus) -> None:
        message = await self._own_message(message_id)
        message.status = status
        if status == MessageStatus.READ:
            message.read_at = utcnow()
        await self.repository.save_message(message)
