"""Shared domain models for CrowdSafe services."""
from .incident import (
    CrowdLevel,
    RiskLevel,
    ObservationStatus,
    AIStatus,
    AIInsight,
    ObservationImage,
    Observation,
)
from .waypoint import (
    WaypointCategory,
    Coordinates,
    Waypoint,
)

__all__ = [
    "CrowdLevel",
    "RiskLevel",
    "ObservationStatus",
    "AIStatus",
    "AIInsight",
    "ObservationImage",
    "Observation",
    "WaypointCategory",
    "Coordinates",
    "Waypoint",
]
