"""Reference worker that executes tasks published for one agent."""

from __future__ import annotations

import inspect
import logging
from collections import deque
from typing import Awaitable, Callable, Optional, Union

from .constants import COMPLETIONS_TOPIC, RECENT_HISTORY_SIZE
from .contracts import CompletionMessage, ResultStatus, StageResult, TaskMessage, TaskPayload
from .dispatch import agent_topic
from .engine import LeaseManager
from .errors import LeaseConflictError, OperationNotActiveError
from .transports import BaseTransport

logger = logging.getLogger(__name__)

TaskHandler = Callable[[TaskPayload], Union[StageResult, Awaitable[StageResult]]]


class StageWorker:
    """Subscribe to ``agent.<runtime id>`` and answer each task with a completion.

    When a :class:`LeaseManager` is given the operation is claimed before the
    handler runs and released afterwards.
    """

    def __init__(
        self,
        transport: BaseTransport,
        runtime_agent_id: str,
        handler: TaskHandler,
        leases: Optional[LeaseManager] = None,
        worker_id: Optional[str] = None,
        history: int = RECENT_HISTORY_SIZE,
    ) -> None:
        self._transport = transport
        self._runtime_agent_id = runtime_agent_id
        self._handler = handler
        self._leases = leases
        self.worker_id = worker_id or runtime_agent_id
        self.handled: deque[str] = deque(maxlen=history)
        self.handled_count = 0

    async def start(self, lifespan: Optional[float] = None) -> None:
        async for raw_message, message in self._transport.subscribe(
            agent_topic(self._runtime_agent_id), TaskMessage, lifespan=lifespan
        ):
            await self._handle(message)
            await self._transport.ack(raw_message)

    async def _handle(self, message: TaskMessage) -> None:
        payload = message.payload
        if self._leases is not None:
            try:
                await self._leases.claim(payload.operation_id, self.worker_id)
            except (LeaseConflictError, OperationNotActiveError) as exc:
                logger.warning(f"Skipping task {message.message_id}: {exc}")
                return

        try:
            result = self._handler(payload)
            if inspect.isawaitable(result):
                result = await result
        except Exception as exc:
            logger.exception(f"Handler failed for operation {payload.operation_id}")
            result = StageResult(status=ResultStatus.REJECTED, feedback=str(exc))

        result = result.model_copy(
            update={
                "worker_id": self.worker_id if self._leases is not None else result.worker_id,
                "completion_token": result.completion_token or message.message_id,
            }
        )
        await self._transport.publish(
            COMPLETIONS_TOPIC,
            CompletionMessage(
                correlation_id=message.correlation_id,
                operation_id=payload.operation_id,
                result=result,
            ),
        )
        self.handled.append(payload.operation_id)
        self.handled_count += 1
        logger.info(
            f"Agent {self._runtime_agent_id} answered {payload.kind.value} "
            f"'{payload.stage_ref}' with {result.status.value}"
        )
