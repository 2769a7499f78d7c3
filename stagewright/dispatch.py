"""Delivery of stage tasks and coordinator notifications."""

from __future__ import annotations

import logging
import re
from typing import Protocol

from .constants import AGENT_TOPIC_PREFIX, DISPATCH_ERROR_SUMMARY_LIMIT
from .contracts import (
    AgentIdentity,
    DeliveryHandle,
    NotificationMessage,
    TaskMessage,
    TaskPayload,
)
from .errors import DispatchError, TransportError
from .transports import BaseTransport

logger = logging.getLogger(__name__)


class Dispatcher(Protocol):
    """Hands tasks to agents and posts plain messages to channels."""

    async def dispatch(self, agent: AgentIdentity, payload: TaskPayload) -> DeliveryHandle:
        """Deliver ``payload`` to ``agent``; raise ``DispatchError`` on failure."""

    async def notify(self, channel: str, message: str) -> None:
        """Post ``message`` to ``channel``."""


def agent_topic(runtime_agent_id: str) -> str:
    return f"{AGENT_TOPIC_PREFIX}.{runtime_agent_id}"


def session_key(agent: AgentIdentity, payload: TaskPayload) -> str:
    """Stable session key so retries of an operation reuse the agent session."""
    return (
        f"agent:{agent.runtime_agent_id}:wo:{payload.work_order_id}"
        f":op:{payload.operation_id}"
    )


_ERROR_PREFIX = re.compile(r"^(error:\s*)+", re.IGNORECASE)


def summarize_dispatch_error(error: object) -> str:
    """First meaningful line of an error, without ``error:`` prefixes, clamped."""
    text = str(error) if error is not None else ""
    lines = [line.strip() for line in text.splitlines() if line.strip()]
    line = next((ln for ln in lines if _ERROR_PREFIX.sub("", ln).strip()), "")
    line = _ERROR_PREFIX.sub("", line).strip() or "Unknown dispatch error"
    if len(line) > DISPATCH_ERROR_SUMMARY_LIMIT:
        line = line[: DISPATCH_ERROR_SUMMARY_LIMIT - 3].rstrip() + "..."
    return line


class TransportDispatcher(Dispatcher):
    """Publish tasks to ``agent.<runtime id>`` topics on a transport."""

    def __init__(self, transport: BaseTransport) -> None:
        self._transport = transport

    async def dispatch(self, agent: AgentIdentity, payload: TaskPayload) -> DeliveryHandle:
        topic = agent_topic(agent.runtime_agent_id)
        message = TaskMessage(
            correlation_id=payload.work_order_id,
            agent_id=agent.id,
            session_key=session_key(agent, payload),
            payload=payload,
        )
        try:
            await self._transport.publish(topic, message)
        except (TransportError, OSError) as exc:
            raise DispatchError(f"Failed to publish to {topic}: {exc}") from exc
        logger.debug(f"Published {payload.kind.value} task {message.message_id} to {topic}")
        return DeliveryHandle(
            channel=topic, message_id=message.message_id, session_key=message.session_key
        )

    async def notify(self, channel: str, message: str) -> None:
        envelope = NotificationMessage(correlation_id=channel, channel=channel, text=message)
        try:
            await self._transport.publish(channel, envelope)
        except (TransportError, OSError) as exc:
            raise DispatchError(f"Failed to notify {channel}: {exc}") from exc
