"""Capability domains ("stations") that agents are grouped under."""

from __future__ import annotations

from enum import Enum


class Station(str, Enum):
    STRATEGIC = "strategic"
    ORCHESTRATION = "orchestration"
    SPEC = "spec"
    BUILD = "build"
    QA = "qa"
    SECURITY = "security"
    OPS = "ops"
    SHIP = "ship"
    COMPOUND = "compound"
    UPDATE = "update"


_KEYWORD_STATIONS = (
    ("review", Station.QA),
    ("security", Station.SECURITY),
    ("ops", Station.OPS),
    ("deploy", Station.OPS),
    ("plan", Station.SPEC),
    ("research", Station.SPEC),
    ("spec", Station.SPEC),
    ("ship", Station.SHIP),
    ("build", Station.BUILD),
    ("ui", Station.BUILD),
    ("content", Station.BUILD),
)


def station_for_capability(capability_ref: str) -> Station:
    """Map a stage capability reference onto the station that serves it.

    Review capabilities always land on QA, even ``ui_review``.
    """
    ref = capability_ref.strip().lower()
    for station in Station:
        if ref == station.value:
            return station
    for keyword, station in _KEYWORD_STATIONS:
        if keyword in ref:
            return station
    return Station.BUILD
