"""Enrichment trigger dispatch.

Every connected client sees every observation snapshot, so many of them may
try to start enrichment for the same record. The dispatcher keeps a
process-local ledger of ids it has already dispatched to avoid redundant
work within one process. The ledger is an optimization only: it is lost on
restart, and the pipeline's claim is what guarantees a single execution.
"""
import asyncio
import logging
from typing import Iterable, List, Optional, Set

from crowdsafe.shared.database import OBSERVATIONS, DocumentSnapshot, DocumentStore
from crowdsafe.shared.models import Observation

from .pipeline import EnrichmentOutcome, EnrichmentPipeline

logger = logging.getLogger(__name__)


class EnrichmentDispatcher:
    """Schedules pipeline runs for eligible observations."""

    def __init__(self, pipeline: EnrichmentPipeline):
        self.pipeline = pipeline
        self._ledger: Set[str] = set()
        self._tasks: Set[asyncio.Task] = set()

    def __contains__(self, observation_id: object) -> bool:
        return observation_id in self._ledger

    def on_snapshot(self, snapshots: Iterable[DocumentSnapshot]) -> List[str]:
        """Dispatch every eligible observation in a delivered snapshot.

        Eligible: not RESOLVED, aiStatus absent or PENDING, not yet in the
        ledger. Repeated delivery of the same snapshot dispatches nothing new.

        Must be called from inside a running event loop.

        Returns:
            Ids dispatched by this call
        """
        dispatched = []
        for snapshot in snapshots:
            try:
                observation = Observation.from_document(snapshot.id, snapshot.data)
            except ValueError as e:
                logger.warning(
                    "OBSERVATION_SNAPSHOT_SKIPPED",
                    extra={"observation_id": snapshot.id, "error": str(e)}
                )
                continue

            if observation.is_resolved or not observation.awaits_enrichment:
                continue
            if self._dispatch(observation.observation_id):
                dispatched.append(observation.observation_id)
        return dispatched

    def trigger(self, observation_id: str) -> bool:
        """Explicit client-initiated trigger for one observation.

        Returns:
            True if a run was dispatched, False if already in the ledger
        """
        return self._dispatch(observation_id)

    def _dispatch(self, observation_id: str) -> bool:
        if observation_id in self._ledger:
            return False
        self._ledger.add(observation_id)

        task = asyncio.get_running_loop().create_task(self.pipeline.process(observation_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

        logger.debug("ENRICHMENT_DISPATCHED", extra={"observation_id": observation_id})
        return True

    async def watch(self, store: DocumentStore, stop_event: Optional[asyncio.Event] = None) -> None:
        """Consume the observations subscription until stopped or cancelled."""
        logger.info("ENRICHMENT_WATCH_STARTED")
        stream = store.watch(OBSERVATIONS)
        try:
            async for snapshots in stream:
                dispatched = self.on_snapshot(snapshots)
                if dispatched:
                    logger.info("ENRICHMENT_BATCH_DISPATCHED", extra={"count": len(dispatched)})
                if stop_event is not None and stop_event.is_set():
                    break
        finally:
            await stream.aclose()
        logger.info("ENRICHMENT_WATCH_STOPPED")

    async def drain(self) -> List[EnrichmentOutcome]:
        """Wait for every in-flight run and return their outcomes."""
        outcomes: List[EnrichmentOutcome] = []
        while self._tasks:
            pending = list(self._tasks)
            outcomes.extend(await asyncio.gather(*pending))
            self._tasks.difference_update(pending)
        return outcomes
