"""Expiration sweeper - auto-resolves stale unattended observations.

Runs on a fixed cadence independent of any UI client. Each run flips every
NEW or PENDING observation past its ``expiresAt`` to RESOLVED in one atomic
batch, then appends one EXPIRED audit entry per flipped observation.
Audit appends are independent concurrent writes: a failed append is logged
and never rolls back the status flips.
"""
import asyncio
import logging
from datetime import datetime
from typing import Callable, Optional

from crowdsafe.services.audit_service import AuditAction, AuditLogger
from crowdsafe.services.incident_service import (
    EXPIRABLE_STATUSES,
    EXPIRY_MESSAGE,
    SYSTEM_ACTOR,
    expiry_changes,
)
from crowdsafe.shared.database import OBSERVATIONS, DocumentStore, FieldFilter
from crowdsafe.shared.utils import format_timestamp, utcnow

logger = logging.getLogger(__name__)


class ExpirationSweeper:
    """Resolves expired observations that nobody acknowledged."""

    def __init__(
        self,
        store: DocumentStore,
        audit_logger: AuditLogger,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.audit_logger = audit_logger
        self.clock = clock

    async def sweep(self, now: Optional[datetime] = None) -> int:
        """Run one expiration pass.

        Args:
            now: Cutoff time; defaults to the clock

        Returns:
            Number of observations resolved by this pass

        Raises:
            StoreError: If the query or the batch commit fails

        Logs:
            - SWEEP_NOTHING_EXPIRED: Zero matches
            - SWEEP_COMPLETED: After the batch commits
            - SWEEP_AUDIT_PARTIAL_FAILURE: When some EXPIRED appends fail
        """
        now = now or self.clock()
        expired = await self.store.query(
            OBSERVATIONS,
            [
                FieldFilter("status", "in", EXPIRABLE_STATUSES),
                FieldFilter("expiresAt", "<=", format_timestamp(now)),
            ],
        )

        if not expired:
            logger.info("SWEEP_NOTHING_EXPIRED", extra={"cutoff": format_timestamp(now)})
            return 0

        batch = self.store.batch()
        changes = expiry_changes(now)
        for snapshot in expired:
            # Acknowledged since the query ran: skipped, not overwritten
            batch.update(
                OBSERVATIONS,
                snapshot.id,
                changes,
                precondition={"status": EXPIRABLE_STATUSES},
            )
        resolved = await batch.commit()

        logger.info(
            "SWEEP_COMPLETED",
            extra={
                "matched": len(expired),
                "resolved": len(resolved),
                "skipped": len(expired) - len(resolved),
            }
        )

        results = await asyncio.gather(
            *(
                self.audit_logger.append(
                    observation_id, AuditAction.EXPIRED, SYSTEM_ACTOR, EXPIRY_MESSAGE
                )
                for observation_id in resolved
            ),
            return_exceptions=True,
        )
        failures = [r for r in results if isinstance(r, Exception)]
        if failures:
            logger.error(
                "SWEEP_AUDIT_PARTIAL_FAILURE",
                extra={
                    "failed": len(failures),
                    "resolved": len(resolved),
                    "error": str(failures[0]),
                }
            )

        return len(resolved)

    async def run_forever(
        self,
        interval_seconds: float = 300,
        stop_event: Optional[asyncio.Event] = None,
    ) -> None:
        """Sweep every ``interval_seconds`` until ``stop_event`` is set.

        A failing tick is logged and the next tick retries.
        """
        stop_event = stop_event or asyncio.Event()
        logger.info("SWEEPER_STARTED", extra={"interval_seconds": interval_seconds})

        while not stop_event.is_set():
            try:
                await self.sweep()
            except Exception as e:
                logger.error(
                    "SWEEP_FAILED",
                    extra={"error": str(e), "error_type": type(e).__name__}
                )

            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval_seconds)
            except asyncio.TimeoutError:
                pass

        logger.info("SWEEPER_STOPPED")
