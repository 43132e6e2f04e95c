"""Shared document store for CrowdSafe services.

Provides the async DocumentStore contract, an in-memory adapter for
development and tests, and a PostgreSQL adapter with connection pooling.
"""
import logging

from .connection import (
    DatabaseConfig,
    ConnectionManager,
    get_connection_manager,
)
from .store import (
    ArrayRemove,
    ArrayUnion,
    DELETE_FIELD,
    SERVER_TIMESTAMP,
    DocumentSnapshot,
    DocumentStore,
    FieldFilter,
    InMemoryDocumentStore,
    NotFoundError,
    StoreError,
    WriteBatch,
)
from .postgres_store import PostgresDocumentStore

logger = logging.getLogger(__name__)

# Collection names
OBSERVATIONS = "observations"
WAYPOINTS = "waypoints"
AUDIT_LOGS = "auditLogs"
SETTINGS = "settings"


def create_document_store(backend: str = "memory") -> DocumentStore:
    """Build the configured store adapter.

    Args:
        backend: "memory" or "postgres"

    Raises:
        ValueError: If backend is unknown
    """
    if backend == "memory":
        logger.warning("DOCUMENT_STORE_IN_MEMORY", extra={"action": "state_lost_on_restart"})
        return InMemoryDocumentStore()
    if backend == "postgres":
        store = PostgresDocumentStore(get_connection_manager())
        store.ensure_schema()
        return store
    raise ValueError(f"Unsupported store backend: {backend}")


__all__ = [
    "DatabaseConfig",
    "ConnectionManager",
    "get_connection_manager",
    "ArrayRemove",
    "ArrayUnion",
    "DELETE_FIELD",
    "SERVER_TIMESTAMP",
    "DocumentSnapshot",
    "DocumentStore",
    "FieldFilter",
    "InMemoryDocumentStore",
    "NotFoundError",
    "StoreError",
    "WriteBatch",
    "PostgresDocumentStore",
    "create_document_store",
    "OBSERVATIONS",
    "WAYPOINTS",
    "AUDIT_LOGS",
    "SETTINGS",
]
