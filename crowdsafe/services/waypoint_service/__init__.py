"""Waypoint Service: the event's navigable graph.

Provides:
- WaypointGraph: bounded breadth-first corridor enumeration used as
  evacuation-route context for enrichment
- WaypointRegistry: admin management of waypoints, directed connections
  and the event boundary polygon
"""

from .graph import WaypointGraph, PATH_SEPARATOR
from .registry import WaypointRegistry, EVENT_CONFIG_ID

__all__ = [
    "WaypointGraph",
    "PATH_SEPARATOR",
    "WaypointRegistry",
    "EVENT_CONFIG_ID",
]
