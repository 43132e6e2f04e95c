"""Waypoint graph - evacuation-route reachability.

The graph is rebuilt from the latest waypoint snapshot on every use and
never cached across enrichment runs. Edges are directed (``connectedTo``
on the source waypoint) and the graph may contain cycles; traversal is
bounded by hop count so it always terminates.
"""
import logging
from collections import deque
from typing import Dict, Iterable, List, Optional

from crowdsafe.shared.database import DocumentSnapshot
from crowdsafe.shared.models import Waypoint

logger = logging.getLogger(__name__)

PATH_SEPARATOR = " → "


class WaypointGraph:
    """In-memory directed graph of waypoints."""

    def __init__(self, waypoints: Iterable[Waypoint]):
        self._waypoints: Dict[str, Waypoint] = {w.waypoint_id: w for w in waypoints}

    @classmethod
    def from_snapshots(cls, snapshots: Iterable[DocumentSnapshot]) -> "WaypointGraph":
        """Build the graph from a waypoint collection snapshot.

        Documents that fail to parse are left out, so edges pointing at
        them are treated as dangling.
        """
        waypoints = []
        for snapshot in snapshots:
            try:
                waypoints.append(Waypoint.from_document(snapshot.id, snapshot.data))
            except (TypeError, ValueError) as e:
                logger.warning(
                    "WAYPOINT_SNAPSHOT_SKIPPED",
                    extra={"waypoint_id": snapshot.id, "error": str(e)}
                )
        return cls(waypoints)

    def __contains__(self, waypoint_id: object) -> bool:
        return waypoint_id in self._waypoints

    def __len__(self) -> int:
        return len(self._waypoints)

    def get(self, waypoint_id: str) -> Optional[Waypoint]:
        return self._waypoints.get(waypoint_id)

    def neighbors(self, waypoint_id: str) -> List[str]:
        """Outgoing connections that resolve to a known waypoint."""
        waypoint = self._waypoints.get(waypoint_id)
        if waypoint is None:
            return []
        return [t for t in waypoint.connected_to if t in self._waypoints]

    def find_paths(self, start_id: str, max_depth: int = 2) -> List[List[str]]:
        """Enumerate every directed walk of 1..max_depth hops from start_id.

        Breadth-first: each edge traversal is recorded as a walk when it is
        discovered, so shorter prefixes appear alongside longer walks.
        Dangling edges are skipped.

        Args:
            start_id: Waypoint to start from
            max_depth: Maximum hop count

        Returns:
            Walks as lists of waypoint ids; empty when the start is unknown,
            has no usable outgoing edges, or max_depth < 1
        """
        if max_depth < 1 or start_id not in self._waypoints:
            return []

        paths: List[List[str]] = []
        queue = deque([[start_id]])
        while queue:
            walk = queue.popleft()
            if len(walk) - 1 >= max_depth:
                continue
            for next_id in self.neighbors(walk[-1]):
                extended = walk + [next_id]
                paths.append(extended)
                queue.append(extended)
        return paths

    def name_of(self, waypoint_id: str) -> str:
        waypoint = self._waypoints.get(waypoint_id)
        return waypoint.name if waypoint else "Unknown"

    def describe_path(self, path: List[str]) -> str:
        """Render a walk with display names, e.g. "Gate A → Food Court"."""
        return PATH_SEPARATOR.join(self.name_of(waypoint_id) for waypoint_id in path)
