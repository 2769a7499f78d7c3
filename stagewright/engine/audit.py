"""Writers for the audit trail and the side records of a work order.

Every writer takes the caller's unit of work and never commits on its own,
so audit rows land or vanish together with the transition they describe.
"""

from __future__ import annotations

import json
from typing import Any, Dict, Optional

from ..constants import SYSTEM_ACTOR
from ..contracts import DeliveryHandle, TaskPayload
from ..persistence.models import Activity, Approval, Artifact, Operation, Receipt
from ..persistence.repository import UnitOfWork


def _dump(payload: Optional[Dict[str, Any]]) -> Optional[str]:
    if payload is None:
        return None
    return json.dumps(payload, default=str, sort_keys=True)


async def record_activity(
    uow: UnitOfWork,
    activity_type: str,
    work_order_id: str,
    summary: str,
    payload: Optional[Dict[str, Any]] = None,
    *,
    actor: str = SYSTEM_ACTOR,
    actor_type: str = "system",
    actor_agent_id: Optional[str] = None,
) -> Activity:
    activity = Activity(
        type=activity_type,
        actor=actor,
        actor_type=actor_type,
        actor_agent_id=actor_agent_id,
        entity_type="work_order",
        entity_id=work_order_id,
        summary=summary,
        payload_json=_dump(payload),
    )
    await uow.append_activity(activity)
    return activity


async def record_approval(
    uow: UnitOfWork,
    operation: Operation,
    approval_type: str,
    status: str,
    question: str,
    feedback: Optional[str] = None,
    resolved_by: Optional[str] = None,
) -> Approval:
    approval = Approval(
        work_order_id=operation.work_order_id,
        operation_id=operation.id,
        type=approval_type,
        status=status,
        question=question,
        feedback=feedback,
        resolved_by=resolved_by,
    )
    await uow.add_approval(approval)
    return approval


async def record_dispatch_receipt(
    uow: UnitOfWork, operation: Operation, payload: TaskPayload, handle: DeliveryHandle
) -> Receipt:
    receipt = Receipt(
        work_order_id=operation.work_order_id,
        operation_id=operation.id,
        kind="dispatch",
        command_name=f"dispatch:{payload.kind.value}",
        command_args_json=_dump({"stageRef": payload.stage_ref, "channel": handle.channel}),
        exit_code=0,
        parsed_json=handle.model_dump_json(),
        started_at=handle.delivered_at,
        ended_at=handle.delivered_at,
    )
    await uow.add_receipt(receipt)
    return receipt


async def record_artifacts(
    uow: UnitOfWork,
    operation: Operation,
    references: list[str],
    created_by: Optional[str] = None,
) -> list[Artifact]:
    """Store one artifact per reference; URLs become links, the rest files."""
    artifacts = []
    for ref in references:
        ref = ref.strip()
        if not ref:
            continue
        is_link = ref.startswith(("http://", "https://"))
        artifact = Artifact(
            work_order_id=operation.work_order_id,
            operation_id=operation.id,
            type="link" if is_link else "file",
            title=ref.rstrip("/").rsplit("/", 1)[-1] or ref,
            path_or_url=ref,
            created_by=created_by,
        )
        await uow.add_artifact(artifact)
        artifacts.append(artifact)
    return artifacts
