"""Observation lifecycle - the human workflow state machine.

    NEW -> PENDING -> ACKNOWLEDGED -> RESOLVED
    NEW | PENDING -> RESOLVED            (expiration, sweeper only)

Every transition is a single-document conditional update on ``status``.
Other clients write the same documents concurrently, so a transition that
finds the observation already moved on is a harmless no-op: it is
reported in the TransitionResult and logged at DEBUG, never raised.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional, Tuple

from crowdsafe.services.audit_service import AuditAction, AuditLogger, AuditWriteError
from crowdsafe.shared.database import (
    OBSERVATIONS,
    SERVER_TIMESTAMP,
    DocumentStore,
    NotFoundError,
)
from crowdsafe.shared.models import (
    AIStatus,
    CrowdLevel,
    Observation,
    ObservationImage,
    ObservationStatus,
)
from crowdsafe.shared.utils import format_timestamp, hash_pii, utcnow

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"
EXPIRY_MESSAGE = "Auto-resolved by system timer"

# No-op reason for any transition attempted on a resolved observation
ALREADY_RESOLVED = "ALREADY_RESOLVED"

# Statuses the sweeper may force-resolve. ACKNOWLEDGED is excluded: an
# acknowledged incident is being handled and must not be closed silently.
EXPIRABLE_STATUSES: Tuple[str, ...] = (
    ObservationStatus.NEW.value,
    ObservationStatus.PENDING.value,
)


class InvalidTransitionError(ValueError):
    """Transition requested without the data its guard requires."""
    pass


@dataclass(frozen=True)
class TransitionResult:
    """Outcome of a lifecycle transition attempt."""
    observation_id: str
    applied: bool
    status: ObservationStatus
    reason: Optional[str] = None  # Why it was a no-op


def expiry_changes(now: datetime) -> Dict[str, Any]:
    """Field changes the sweeper writes when force-resolving."""
    return {
        "status": ObservationStatus.RESOLVED.value,
        "resolvedBy": SYSTEM_ACTOR,
        "resolvedAt": format_timestamp(now),
    }


class ObservationLifecycle:
    """Applies workflow transitions to observations in the shared store."""

    def __init__(
        self,
        store: DocumentStore,
        audit_logger: AuditLogger,
        ttl_minutes: int = 10,
        clock: Callable[[], datetime] = utcnow,
    ):
        """Initialize lifecycle with dependencies.

        Args:
            store: Shared document store
            audit_logger: Audit trail writer
            ttl_minutes: Minutes before a new observation may expire
            clock: Source of the current time
        """
        self.store = store
        self.audit_logger = audit_logger
        self.ttl = timedelta(minutes=ttl_minutes)
        self.clock = clock

        logger.info("OBSERVATION_LIFECYCLE_INITIALIZED", extra={"ttl_minutes": ttl_minutes})

    async def get(self, observation_id: str) -> Observation:
        """Read one observation.

        Raises:
            NotFoundError: If the observation does not exist
        """
        snapshot = await self.store.get(OBSERVATIONS, observation_id)
        if snapshot is None:
            raise NotFoundError(f"Observation {observation_id} not found")
        return Observation.from_document(snapshot.id, snapshot.data)

    async def submit(
        self,
        waypoint_id: str,
        volunteer_email: str,
        crowd_level: CrowdLevel,
        message: Optional[str] = None,
        image: Optional[ObservationImage] = None,
    ) -> str:
        """Create a NEW observation awaiting enrichment.

        Args:
            waypoint_id: Waypoint the volunteer is reporting from
            volunteer_email: Reporting volunteer
            crowd_level: Reported density
            message: Optional field note
            image: Optional compressed image preview

        Returns:
            Store-assigned observation id

        Raises:
            InvalidTransitionError: Without a waypoint or volunteer identity
        """
        if not waypoint_id:
            raise InvalidTransitionError("Observation requires a waypoint")
        if not volunteer_email:
            raise InvalidTransitionError("Observation requires a volunteer identity")

        now = self.clock()
        document: Dict[str, Any] = {
            "waypointId": waypoint_id,
            "volunteerEmail": volunteer_email,
            "crowdLevel": crowd_level.value,
            "message": (message or "").strip(),
            "status": ObservationStatus.NEW.value,
            "aiStatus": AIStatus.PENDING.value,
            "createdAt": SERVER_TIMESTAMP,
            "expiresAt": format_timestamp(now + self.ttl),
        }
        if image is not None:
            document["imageBase64"] = image.base64
            document["imageWidth"] = image.width
            document["imageHeight"] = image.height

        observation_id = await self.store.add(OBSERVATIONS, document)

        logger.info(
            "OBSERVATION_SUBMITTED",
            extra={
                "observation_id": observation_id,
                "waypoint_id": waypoint_id,
                "crowd_level": crowd_level.value,
                "volunteer_hash": hash_pii(volunteer_email),
                "has_image": image is not None,
            }
        )
        return observation_id

    async def send_instruction(
        self,
        observation_id: str,
        instruction: str,
        admin_email: str,
    ) -> TransitionResult:
        """Admin sends an instruction: NEW|PENDING -> PENDING.

        Re-sending while PENDING replaces the instruction. On a RESOLVED
        observation nothing is written and the result carries
        reason ALREADY_RESOLVED.

        Raises:
            InvalidTransitionError: On empty instruction or missing admin
            NotFoundError: If the observation does not exist
        """
        instruction = (instruction or "").strip()
        if not instruction:
            raise InvalidTransitionError("Instruction text required")
        if not admin_email:
            raise InvalidTransitionError("Authenticated admin required")

        return await self._transition(
            observation_id,
            allowed_from=(ObservationStatus.NEW, ObservationStatus.PENDING),
            target=ObservationStatus.PENDING,
            changes={
                "instruction": instruction,
                "adminEmail": admin_email,
                "updatedAt": SERVER_TIMESTAMP,
            },
            action=AuditAction.ADMIN_SENT,
            actor=admin_email,
            message=instruction,
        )

    async def acknowledge(self, observation_id: str, volunteer_email: str) -> TransitionResult:
        """Volunteer acknowledges the instruction: PENDING -> ACKNOWLEDGED."""
        if not volunteer_email:
            raise InvalidTransitionError("Volunteer identity required")

        return await self._transition(
            observation_id,
            allowed_from=(ObservationStatus.PENDING,),
            target=ObservationStatus.ACKNOWLEDGED,
            changes={"updatedAt": SERVER_TIMESTAMP},
            action=AuditAction.VOLUNTEER_ACK,
            actor=volunteer_email,
        )

    async def resolve(self, observation_id: str, resolved_by: str) -> TransitionResult:
        """Admin confirms resolution: ACKNOWLEDGED -> RESOLVED."""
        if not resolved_by:
            raise InvalidTransitionError("Resolver identity required")

        return await self._transition(
            observation_id,
            allowed_from=(ObservationStatus.ACKNOWLEDGED,),
            target=ObservationStatus.RESOLVED,
            changes={
                "resolvedBy": resolved_by,
                "resolvedAt": SERVER_TIMESTAMP,
            },
            action=AuditAction.RESOLVED,
            actor=resolved_by,
        )

    async def _transition(
        self,
        observation_id: str,
        allowed_from: Tuple[ObservationStatus, ...],
        target: ObservationStatus,
        changes: Dict[str, Any],
        action: AuditAction,
        actor: str,
        message: Optional[str] = None,
    ) -> TransitionResult:
        applied = await self.store.update(
            OBSERVATIONS,
            observation_id,
            {**changes, "status": target.value},
            precondition={"status": tuple(s.value for s in allowed_from)},
        )

        if not applied:
            current = await self.get(observation_id)
            reason = (
                ALREADY_RESOLVED if current.is_resolved
                else f"STATUS_{current.status.value}"
            )
            logger.debug(
                "OBSERVATION_TRANSITION_NOOP",
                extra={
                    "observation_id": observation_id,
                    "target": target.value,
                    "current": current.status.value,
                    "reason": reason,
                }
            )
            return TransitionResult(observation_id, False, current.status, reason)

        logger.info(
            "OBSERVATION_TRANSITIONED",
            extra={
                "observation_id": observation_id,
                "status": target.value,
                "action": action.value,
                "actor_hash": hash_pii(actor),
            }
        )

        try:
            await self.audit_logger.append(observation_id, action, actor, message)
        except AuditWriteError:
            # State change stands; the trail is best-effort
            pass

        return TransitionResult(observation_id, True, target)
