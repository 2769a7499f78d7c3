"""Rule-based workflow selection for work orders."""

from __future__ import annotations

import logging
from typing import Iterable, List, Optional, Set

from ..errors import ConfigurationError, WorkflowNotFoundError
from .models import SelectionConfig, SelectionRequest, SelectionRule, WorkflowSelection

logger = logging.getLogger(__name__)

FALLBACK_DEFAULT_WORKFLOW_IDS = ("cc_greenfield_project", "greenfield_project")


def _normalize(value: Optional[str]) -> str:
    return (value or "").strip().lower()


def _keyword_match(text: str, keywords: List[str]) -> bool:
    if not keywords:
        return True
    normalized = _normalize(text)
    if not normalized:
        return False
    return any(_normalize(k) and _normalize(k) in normalized for k in keywords)


def _tag_overlap(tags: Set[str], tags_any: List[str]) -> bool:
    if not tags_any:
        return True
    return any(_normalize(tag) in tags for tag in tags_any if _normalize(tag))


def rule_matches(rule: SelectionRule, request: SelectionRequest) -> bool:
    """Return True when every clause present on ``rule`` holds for ``request``."""
    if rule.priority:
        allowed = {p.strip().upper() for p in rule.priority}
        if _normalize(request.priority).upper() not in allowed:
            return False
    tags = {_normalize(t) for t in request.tags if _normalize(t)}
    return (
        _tag_overlap(tags, rule.tags_any)
        and _keyword_match(request.title, rule.title_keywords_any)
        and _keyword_match(request.goal, rule.goal_keywords_any)
    )


def order_rules_by_precedence(rules: List[SelectionRule]) -> List[SelectionRule]:
    """Order rules so that each one comes before every rule it ``precedes``.

    Rules without a precedence relationship keep their declared order.
    """
    ids = [rule.id for rule in rules]
    if len(set(ids)) != len(ids):
        raise ConfigurationError("Selection rule ids must be unique")

    by_id = {rule.id: rule for rule in rules}
    incoming = {rule.id: 0 for rule in rules}
    for rule in rules:
        for target in rule.precedes:
            if target not in by_id:
                raise ConfigurationError(
                    f"Selection rule '{rule.id}' precedes unknown rule '{target}'"
                )
            incoming[target] += 1

    ordered: List[SelectionRule] = []
    remaining = list(rules)
    while remaining:
        ready = next((r for r in remaining if incoming[r.id] == 0), None)
        if ready is None:
            cycle = ", ".join(r.id for r in remaining)
            raise ConfigurationError(f"Selection rule precedence cycle among: {cycle}")
        remaining.remove(ready)
        ordered.append(ready)
        for target in ready.precedes:
            incoming[target] -= 1
    return ordered


def normalize_selection(
    selection: SelectionConfig, workflow_ids: Iterable[str]
) -> SelectionConfig:
    """Drop rules for missing workflows, fix the default and order the rules."""
    known = set(workflow_ids)
    if not known:
        raise ConfigurationError("No workflows configured")

    default_id = selection.default_workflow_id
    if default_id not in known:
        default_id = next(
            (wid for wid in FALLBACK_DEFAULT_WORKFLOW_IDS if wid in known),
            sorted(known)[0],
        )
        logger.warning(
            f"Default workflow {selection.default_workflow_id!r} is not defined; using {default_id!r}"
        )

    kept = []
    for rule in selection.rules:
        if rule.workflow_id not in known:
            logger.warning(
                f"Ignoring selection rule {rule.id!r}: unknown workflow {rule.workflow_id!r}"
            )
            continue
        kept.append(rule)
    kept_ids = {rule.id for rule in kept}
    kept = [
        rule.model_copy(update={"precedes": [t for t in rule.precedes if t in kept_ids]})
        for rule in kept
    ]
    return SelectionConfig(
        default_workflow_id=default_id, rules=order_rules_by_precedence(kept)
    )


def select_workflow(
    selection: SelectionConfig,
    workflow_ids: Iterable[str],
    request: SelectionRequest,
    requested_workflow_id: Optional[str] = None,
) -> WorkflowSelection:
    """Pick a workflow: explicit request, else the first matching rule, else default.

    ``selection`` is expected to be normalized already.
    """
    known = set(workflow_ids)
    requested = _normalize(requested_workflow_id)
    if requested:
        if requested not in known:
            raise WorkflowNotFoundError(requested)
        return WorkflowSelection(workflow_id=requested, reason="explicit")

    for rule in selection.rules:
        if rule_matches(rule, request):
            return WorkflowSelection(
                workflow_id=rule.workflow_id, reason="rule", matched_rule_id=rule.id
            )
    return WorkflowSelection(workflow_id=selection.default_workflow_id, reason="default")
