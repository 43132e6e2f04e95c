"""Waypoint registry - admin management of waypoints and the event boundary.

Connection toggles use array-union/array-remove so concurrent admins
editing different edges of the same waypoint never clobber each other.
Deleting a waypoint leaves inbound edges on other waypoints untouched;
the graph skips them as dangling.
"""
import json
import logging
from typing import Any, Dict, Iterable, List, Optional, Sequence

from crowdsafe.shared.database import (
    SERVER_TIMESTAMP,
    SETTINGS,
    WAYPOINTS,
    ArrayRemove,
    ArrayUnion,
    DocumentStore,
    NotFoundError,
)
from crowdsafe.shared.models import Coordinates, Waypoint, WaypointCategory
from crowdsafe.shared.utils import hash_pii

logger = logging.getLogger(__name__)

EVENT_CONFIG_ID = "event_config"
MIN_BOUNDARY_POINTS = 3


class WaypointRegistry:
    """Create, edit, link and delete waypoints; store the event boundary."""

    def __init__(self, store: DocumentStore):
        self.store = store

    async def get(self, waypoint_id: str) -> Waypoint:
        """Read one waypoint.

        Raises:
            NotFoundError: If the waypoint does not exist
        """
        snapshot = await self.store.get(WAYPOINTS, waypoint_id)
        if snapshot is None:
            raise NotFoundError(f"Waypoint {waypoint_id} not found")
        return Waypoint.from_document(snapshot.id, snapshot.data)

    async def list_waypoints(self) -> List[Waypoint]:
        snapshots = await self.store.query(WAYPOINTS)
        return [Waypoint.from_document(s.id, s.data) for s in snapshots]

    async def create_waypoint(
        self,
        name: str,
        category: WaypointCategory,
        coordinates: Coordinates,
        assigned_emails: Iterable[str] = (),
    ) -> str:
        """Create a waypoint with no connections.

        Returns:
            Store-assigned waypoint id
        """
        if not name or not name.strip():
            raise ValueError("Waypoint name required")

        waypoint_id = await self.store.add(WAYPOINTS, {
            "name": name.strip(),
            "type": category.value,
            "coordinates": coordinates.to_document(),
            "assignedEmails": list(dict.fromkeys(assigned_emails)),
            "connectedTo": [],
            "createdAt": SERVER_TIMESTAMP,
        })

        logger.info(
            "WAYPOINT_CREATED",
            extra={"waypoint_id": waypoint_id, "category": category.value}
        )
        return waypoint_id

    async def update_waypoint(
        self,
        waypoint_id: str,
        name: Optional[str] = None,
        category: Optional[WaypointCategory] = None,
        assigned_emails: Optional[Iterable[str]] = None,
    ) -> None:
        """Edit name, category or volunteer assignment.

        Raises:
            NotFoundError: If the waypoint does not exist
        """
        changes: Dict[str, Any] = {}
        if name is not None:
            changes["name"] = name.strip()
        if category is not None:
            changes["type"] = category.value
        if assigned_emails is not None:
            changes["assignedEmails"] = list(dict.fromkeys(assigned_emails))
        if not changes:
            return

        await self.store.update(WAYPOINTS, waypoint_id, changes)
        logger.info(
            "WAYPOINT_UPDATED",
            extra={"waypoint_id": waypoint_id, "fields": sorted(changes)}
        )

    async def toggle_connection(self, from_id: str, to_id: str) -> bool:
        """Add the directed edge from -> to, or remove it if present.

        Returns:
            True if the edge exists after the call

        Raises:
            ValueError: On a self-link
            NotFoundError: If the source waypoint does not exist
        """
        if from_id == to_id:
            raise ValueError("A waypoint cannot connect to itself")

        source = await self.get(from_id)
        connected = to_id not in source.connected_to
        change = ArrayUnion((to_id,)) if connected else ArrayRemove((to_id,))
        await self.store.update(WAYPOINTS, from_id, {"connectedTo": change})

        logger.info(
            "WAYPOINT_CONNECTION_TOGGLED",
            extra={"from_id": from_id, "to_id": to_id, "connected": connected}
        )
        return connected

    async def delete_waypoint(self, waypoint_id: str) -> bool:
        """Delete a waypoint. Inbound edges elsewhere are not pruned."""
        deleted = await self.store.delete(WAYPOINTS, waypoint_id)
        logger.info(
            "WAYPOINT_DELETED",
            extra={"waypoint_id": waypoint_id, "deleted": deleted}
        )
        return deleted

    async def assigned_waypoint(self, volunteer_email: str) -> Optional[Waypoint]:
        """First waypoint (by creation) the volunteer is assigned to."""
        assigned = [
            w for w in await self.list_waypoints()
            if volunteer_email in w.assigned_emails
        ]
        if not assigned:
            logger.debug(
                "VOLUNTEER_UNASSIGNED",
                extra={"volunteer_hash": hash_pii(volunteer_email)}
            )
            return None
        return min(assigned, key=lambda w: w.created_at or "")

    async def save_boundary(self, points: Sequence[Coordinates]) -> Dict[str, Any]:
        """Store the event boundary polygon.

        The ring is closed by repeating the first point. The GeoJSON is
        serialized to a string because nested arrays are not storable in
        every document backend.

        Returns:
            The GeoJSON Feature that was stored

        Raises:
            ValueError: With fewer than 3 points
        """
        if len(points) < MIN_BOUNDARY_POINTS:
            raise ValueError(f"Boundary needs at least {MIN_BOUNDARY_POINTS} points")

        ring = [[p.lng, p.lat] for p in points]
        ring.append(list(ring[0]))
        feature = {
            "type": "Feature",
            "properties": {},
            "geometry": {"type": "Polygon", "coordinates": [ring]},
        }

        await self.store.set(SETTINGS, EVENT_CONFIG_ID, {"boundaryJson": json.dumps(feature)})
        logger.info("EVENT_BOUNDARY_SAVED", extra={"points": len(points)})
        return feature

    async def load_boundary(self) -> Optional[Dict[str, Any]]:
        """Read the event boundary; None if unset or unparseable."""
        snapshot = await self.store.get(SETTINGS, EVENT_CONFIG_ID)
        if snapshot is None or not snapshot.get("boundaryJson"):
            return None
        try:
            return json.loads(snapshot.get("boundaryJson"))
        except (TypeError, ValueError) as e:
            logger.error("EVENT_BOUNDARY_PARSE_FAILED", extra={"error": str(e)})
            return None
