"""Intake of worker completions into the stage engine."""

from __future__ import annotations

import hashlib
import json
import logging
from collections import deque
from typing import Literal, Optional

from pydantic import BaseModel

from .constants import COMPLETIONS_TOPIC, RECENT_HISTORY_SIZE
from .contracts import CompletionMessage, StageResult
from .engine import StageEngine, TransitionOutcome
from .errors import DuplicateCompletionError, StagewrightError
from .transports import BaseTransport

logger = logging.getLogger(__name__)


class IngestionOutcome(BaseModel):
    status: Literal["applied", "duplicate"]
    operation_id: str
    completion_token: str
    outcome: Optional[TransitionOutcome] = None


def derive_completion_token(operation_id: str, result: StageResult) -> str:
    """Deterministic token for results delivered without one."""
    body = result.model_dump(mode="json", exclude={"completion_token", "worker_id"})
    canonical = json.dumps(
        {"operationId": operation_id, "result": body}, sort_keys=True, default=str
    )
    return hashlib.sha256(canonical.encode()).hexdigest()


class CompletionIngestor:
    """Applies worker results exactly once per completion token."""

    def __init__(self, engine: StageEngine) -> None:
        self._engine = engine

    async def ingest(self, operation_id: str, result: StageResult) -> IngestionOutcome:
        token = result.completion_token or derive_completion_token(operation_id, result)
        result = result.model_copy(update={"completion_token": token})
        try:
            outcome = await self._engine.advance_on_completion(operation_id, result)
        except DuplicateCompletionError:
            logger.info(f"Ignoring duplicate completion {token} for operation {operation_id}")
            return IngestionOutcome(
                status="duplicate", operation_id=operation_id, completion_token=token
            )
        return IngestionOutcome(
            status="applied",
            operation_id=operation_id,
            completion_token=token,
            outcome=outcome,
        )


class CompletionListener:
    """Feeds completion messages from a transport into a :class:`CompletionIngestor`."""

    def __init__(
        self,
        transport: BaseTransport,
        ingestor: CompletionIngestor,
        topic: str = COMPLETIONS_TOPIC,
        history: int = RECENT_HISTORY_SIZE,
    ) -> None:
        self._transport = transport
        self._ingestor = ingestor
        self._topic = topic
        # only the most recent outcomes are kept
        self.processed: deque[IngestionOutcome] = deque(maxlen=history)
        self.processed_count = 0

    async def start(self, lifespan: Optional[float] = None) -> None:
        """Consume completions until ``lifespan`` seconds have passed."""
        async for raw_message, message in self._transport.subscribe(
            self._topic, CompletionMessage, lifespan=lifespan
        ):
            try:
                outcome = await self._ingestor.ingest(message.operation_id, message.result)
            except StagewrightError as exc:
                # rejected completions are dropped; redelivery would fail the same way
                logger.error(
                    f"Completion {message.message_id} for operation "
                    f"{message.operation_id} rejected: {exc}"
                )
                await self._transport.ack(raw_message)
                continue
            self.processed.append(outcome)
            self.processed_count += 1
            await self._transport.ack(raw_message)
