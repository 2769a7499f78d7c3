"""Stage-transition engine."""

from __future__ import annotations

from .engine import StageEngine, Transition, TransitionOutcome
from .leases import LeaseManager, LeaseReaper
from .loops import parse_story_batch

__all__ = [
    "LeaseManager",
    "LeaseReaper",
    "StageEngine",
    "Transition",
    "TransitionOutcome",
    "parse_story_batch",
]
