"""Per-execution message channels shared by the agents working on one task."""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Deque, Dict, List, Optional, Set

from ..tasks.base import utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AgentMessage:
    channel: str
    sender: str
    topic: str
    payload: Any = None
    recipient: Optional[str] = None
    sent_at: datetime = field(default_factory=utc_now)


@dataclass
class _Channel:
    members: Set[str] = field(default_factory=set)
    subscribers: Dict[str, List[asyncio.Queue]] = field(default_factory=dict)
    history: Deque[AgentMessage] = field(default_factory=deque)


class AgentCommunicator:
    """Channels keyed by execution id.

    Every agent registered on a channel can publish findings that the others
    read back through ``history`` or receive live through ``subscribe``.
    """

    def __init__(self, history_size: int = 100) -> None:
        self.history_size = history_size
        self._channels: Dict[str, _Channel] = {}

    def register_channel(self, channel: str, agent_id: str) -> None:
        entry = self._channels.get(channel)
        if entry is None:
            entry = _Channel(history=deque(maxlen=self.history_size))
            self._channels[channel] = entry
            logger.debug("Opened channel %s", channel)
        entry.members.add(agent_id)

    def subscribe(self, channel: str, agent_id: str) -> asyncio.Queue:
        """Return a queue receiving every message visible to ``agent_id``."""

        self.register_channel(channel, agent_id)
        queue: asyncio.Queue = asyncio.Queue()
        self._channels[channel].subscribers.setdefault(agent_id, []).append(queue)
        return queue

    def publish(self, channel: str, sender: str, topic: str, payload: Any = None) -> AgentMessage:
        entry = self._require(channel)
        message = AgentMessage(channel=channel, sender=sender, topic=topic, payload=payload)
        entry.history.append(message)
        for agent_id, queues in entry.subscribers.items():
            if agent_id == sender:
                continue
            for queue in queues:
                queue.put_nowait(message)
        return message

    def send_direct(self, channel: str, sender: str, recipient: str, topic: str, payload: Any = None) -> AgentMessage:
        entry = self._require(channel)
        if recipient not in entry.members:
            raise KeyError(f"Agent {recipient} is not on channel {channel}")
        message = AgentMessage(channel=channel, sender=sender, topic=topic, payload=payload, recipient=recipient)
        entry.history.append(message)
        for queue in entry.subscribers.get(recipient, []):
            queue.put_nowait(message)
        return message

    def history(self, channel: str, topic: Optional[str] = None) -> List[AgentMessage]:
        entry = self._channels.get(channel)
        if entry is None:
            return []
        return [message for message in entry.history if topic is None or message.topic == topic]

    def members(self, channel: str) -> Set[str]:
        entry = self._channels.get(channel)
        return set(entry.members) if entry else set()

    def has_channel(self, channel: str) -> bool:
        return channel in self._channels

    def close_channel(self, channel: str) -> None:
        if self._channels.pop(channel, None) is not None:
            logger.debug("Closed channel %s", channel)

    def _require(self, channel: str) -> _Channel:
        try:
            return self._channels[channel]
        except KeyError:
            raise KeyError(f"Unknown channel {channel}") from None
