"""Audit logger - append-only trail of observation state changes.

Every state-changing action on an observation emits one entry. Entries are
immutable once written; there is no update or delete path. Appends never
read first, so redundant calls are safe (they may duplicate entries, which
is accepted for a diagnostic trail).
"""
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

from crowdsafe.shared.database import (
    AUDIT_LOGS,
    SERVER_TIMESTAMP,
    DocumentSnapshot,
    DocumentStore,
    FieldFilter,
    StoreError,
)
from crowdsafe.shared.utils import hash_pii

logger = logging.getLogger(__name__)


class AuditAction(Enum):
    """Actions recorded in the audit trail."""
    AI_SUGGESTED = "AI_SUGGESTED"
    ADMIN_SENT = "ADMIN_SENT"
    VOLUNTEER_ACK = "VOLUNTEER_ACK"
    RESOLVED = "RESOLVED"
    EXPIRED = "EXPIRED"


class AuditWriteError(StoreError):
    """The store rejected an audit append."""
    pass


@dataclass(frozen=True)
class AuditEntry:
    """Immutable audit log entry."""
    entry_id: str
    observation_id: str
    action: AuditAction
    actor_email: str
    message: Optional[str] = None
    created_at: Optional[str] = None  # Assigned by the store

    @classmethod
    def from_snapshot(cls, snapshot: DocumentSnapshot) -> "AuditEntry":
        return cls(
            entry_id=snapshot.id,
            observation_id=snapshot.get("observationId"),
            action=AuditAction(snapshot.get("action")),
            actor_email=snapshot.get("actorEmail", ""),
            message=snapshot.get("message"),
            created_at=snapshot.get("createdAt"),
        )


class AuditLogger:
    """Appends audit entries to the shared store."""

    def __init__(self, store: DocumentStore):
        """Initialize audit logger.

        Args:
            store: Shared document store
        """
        self.store = store

        logger.info("AUDIT_LOGGER_INITIALIZED")

    async def append(
        self,
        observation_id: str,
        action: AuditAction,
        actor_email: str,
        message: Optional[str] = None,
    ) -> str:
        """Append one audit entry.

        Args:
            observation_id: Observation the action applied to
            action: Action being recorded
            actor_email: Who performed it ("system" for automated actions)
            message: Optional free text (instruction, summary, reason)

        Returns:
            Store-assigned entry id

        Raises:
            AuditWriteError: If the store rejects the write

        Logs:
            - AUDIT_ENTRY_CREATED: After entry is stored
            - AUDIT_APPEND_FAILED: When the store rejects it
        """
        document: Dict[str, Any] = {
            "observationId": observation_id,
            "action": action.value,
            "actorEmail": actor_email,
            "createdAt": SERVER_TIMESTAMP,
        }
        if message:
            document["message"] = message

        try:
            entry_id = await self.store.add(AUDIT_LOGS, document)
        except StoreError as e:
            logger.error(
                "AUDIT_APPEND_FAILED",
                extra={
                    "observation_id": observation_id,
                    "action": action.value,
                    "error": str(e),
                }
            )
            raise AuditWriteError(f"Failed to append {action.value} for {observation_id}: {e}") from e

        logger.info(
            "AUDIT_ENTRY_CREATED",
            extra={
                "entry_id": entry_id,
                "observation_id": observation_id,
                "action": action.value,
                "actor_hash": hash_pii(actor_email),
            }
        )
        return entry_id

    async def entries_for(self, observation_id: str) -> List[AuditEntry]:
        """Read the trail for one observation, oldest first."""
        snapshots = await self.store.query(
            AUDIT_LOGS, [FieldFilter("observationId", "==", observation_id)]
        )
        entries = [AuditEntry.from_snapshot(s) for s in snapshots]
        return sorted(entries, key=lambda e: e.created_at or "")
