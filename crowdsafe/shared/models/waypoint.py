"""Waypoint domain models.

Waypoints are the named nodes of the event's navigable graph. Connections
are directed and stored on the source waypoint only.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Tuple


class WaypointCategory(Enum):
    """Kind of physical location a waypoint marks."""
    ENTRY = "ENTRY"
    EXIT = "EXIT"
    POI = "POI"
    JUNCTION = "JUNCTION"
    MEDICAL = "MEDICAL"
    STAGE = "STAGE"
    BATHROOM = "BATHROOM"


@dataclass(frozen=True)
class Coordinates:
    lat: float
    lng: float

    def to_document(self) -> Dict[str, float]:
        return {"lat": self.lat, "lng": self.lng}


@dataclass(frozen=True)
class Waypoint:
    """Snapshot of a waypoint document."""
    waypoint_id: str
    name: str
    category: WaypointCategory
    coordinates: Coordinates
    assigned_emails: Tuple[str, ...] = ()
    connected_to: Tuple[str, ...] = ()  # Outgoing edges, creation order
    created_at: Optional[str] = None

    @classmethod
    def from_document(cls, waypoint_id: str, data: Dict[str, Any]) -> "Waypoint":
        """Build a Waypoint from a raw store document.

        Repeated connection ids collapse to their first occurrence.
        """
        coords = data.get("coordinates") or {}
        connected = tuple(dict.fromkeys(data.get("connectedTo") or ()))

        return cls(
            waypoint_id=waypoint_id,
            name=data.get("name") or "Unknown",
            category=WaypointCategory(data.get("type", WaypointCategory.POI.value)),
            coordinates=Coordinates(
                lat=float(coords.get("lat", 0.0)),
                lng=float(coords.get("lng", 0.0)),
            ),
            assigned_emails=tuple(data.get("assignedEmails") or ()),
            connected_to=connected,
            created_at=data.get("createdAt"),
        )
