"""Enrichment worker entry point.

Subscribes to the observations collection and enriches every eligible
record. Safe to run alongside other workers and UI-driven triggers: the
pipeline's claim guarantees one execution per observation.
"""
import asyncio
import logging
import os

from crowdsafe.services.audit_service import AuditLogger
from crowdsafe.shared.config import EngineConfig
from crowdsafe.shared.database import create_document_store
from crowdsafe.shared.utils import configure_pii_salt

from .dispatcher import EnrichmentDispatcher
from .pipeline import create_enrichment_pipeline

logger = logging.getLogger(__name__)


async def run_worker(engine_config: EngineConfig) -> None:
    store = create_document_store(engine_config.store_backend)
    pipeline = create_enrichment_pipeline(store, AuditLogger(store), engine_config)
    dispatcher = EnrichmentDispatcher(pipeline)

    try:
        await dispatcher.watch(store)
    finally:
        await dispatcher.drain()
        await store.close()


def main() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    configure_pii_salt(os.getenv("PII_HASH_SALT", "default_dev_salt_change_in_production_32chars"))

    engine_config = EngineConfig.from_env()
    logger.info("ENRICHMENT_WORKER_STARTING", extra={"store_backend": engine_config.store_backend})
    try:
        asyncio.run(run_worker(engine_config))
    except KeyboardInterrupt:
        logger.info("ENRICHMENT_WORKER_STOPPED")


if __name__ == "__main__":
    main()
