"""Sweeper entry points.

``scheduled_sweep`` is the scheduled-trigger handler (one pass per
invocation, e.g. a 5-minute EventBridge rule). ``main`` runs the sweeper as
a long-lived process on its own cadence.
"""
import asyncio
import logging
import os
from typing import Any, Dict

from crowdsafe.services.audit_service import AuditLogger
from crowdsafe.shared.config import EngineConfig
from crowdsafe.shared.database import DocumentStore, create_document_store
from crowdsafe.shared.utils import configure_pii_salt

from .sweeper import ExpirationSweeper

logger = logging.getLogger(__name__)


async def sweep_once(store: DocumentStore) -> int:
    sweeper = ExpirationSweeper(store, AuditLogger(store))
    try:
        return await sweeper.sweep()
    finally:
        await store.close()


def scheduled_sweep(event: Dict[str, Any], context: Any) -> Dict[str, int]:
    """Scheduled-trigger handler.

    Args:
        event: Trigger payload (unused)
        context: Runtime context (unused)

    Returns:
        {"resolved": <count>}
    """
    configure_pii_salt(os.getenv("PII_HASH_SALT", "default_dev_salt_change_in_production_32chars"))
    engine_config = EngineConfig.from_env()

    resolved = asyncio.run(sweep_once(create_document_store(engine_config.store_backend)))

    logger.info("SCHEDULED_SWEEP_COMPLETED", extra={"resolved": resolved})
    return {"resolved": resolved}


async def run_sweeper(engine_config: EngineConfig) -> None:
    store = create_document_store(engine_config.store_backend)
    sweeper = ExpirationSweeper(store, AuditLogger(store))
    try:
        await sweeper.run_forever(engine_config.sweep_interval_seconds)
    finally:
        await store.close()


def main() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    configure_pii_salt(os.getenv("PII_HASH_SALT", "default_dev_salt_change_in_production_32chars"))

    engine_config = EngineConfig.from_env()
    try:
        asyncio.run(run_sweeper(engine_config))
    except KeyboardInterrupt:
        logger.info("SWEEPER_INTERRUPTED")


if __name__ == "__main__":
    main()
