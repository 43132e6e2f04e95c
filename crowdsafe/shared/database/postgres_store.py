"""PostgreSQL adapter for the document store.

All collections live in one ``documents`` table keyed by
(collection, id) with a JSONB body. Preconditions are evaluated under
``SELECT ... FOR UPDATE`` so a conditional update is a real
compare-and-set across processes. A row trigger emits ``pg_notify`` on
every change, which backs ``watch``.

psycopg2 is synchronous; every call runs in a worker thread so the event
loop only suspends on store I/O.
"""
import asyncio
import logging
from typing import Any, AsyncIterator, List, Mapping, Optional, Sequence, Tuple

from psycopg2.extras import Json

from crowdsafe.shared.utils.timestamps import format_timestamp, utcnow
from .connection import ConnectionManager
from .store import (
    DocumentSnapshot,
    DocumentStore,
    FieldFilter,
    NotFoundError,
    PendingUpdate,
    Precondition,
    StoreError,
    apply_changes,
    new_document_id,
    precondition_holds,
    resolve_sentinels,
)

logger = logging.getLogger(__name__)

NOTIFY_CHANNEL = "documents_changed"

SCHEMA = """
CREATE TABLE IF NOT EXISTS documents (
    collection TEXT NOT NULL,
    id TEXT NOT NULL,
    data JSONB NOT NULL,
    PRIMARY KEY (collection, id)
);

CREATE OR REPLACE FUNCTION notify_document_change() RETURNS trigger AS $$
BEGIN
    PERFORM pg_notify('documents_changed', COALESCE(NEW.collection, OLD.collection));
    RETURN NULL;
END;
$$ LANGUAGE plpgsql;

DROP TRIGGER IF EXISTS documents_notify ON documents;
CREATE TRIGGER documents_notify
    AFTER INSERT OR UPDATE OR DELETE ON documents
    FOR EACH ROW EXECUTE FUNCTION notify_document_change();
"""

_ORDERING_OPERATORS = ("<", "<=", ">", ">=")


def filter_clause(f: FieldFilter) -> Tuple[str, List[Any]]:
    """Translate a FieldFilter into a SQL fragment and its parameters.

    String values compare on the text form of the field with byte-order
    collation, which keeps stored timestamps in chronological order.
    Other values compare as JSONB (equality) or numerically (ordering).
    """
    if f.op == "in":
        values = [v for v in f.value if v is not None]
        clause = "data->>%s = ANY(%s)"
        params: List[Any] = [f.field, [str(v) for v in values]]
        if None in f.value:
            clause = f"({clause} OR data->>%s IS NULL)"
            params.append(f.field)
        return clause, params

    if f.op == "==":
        if f.value is None:
            return "data->>%s IS NULL", [f.field]
        if isinstance(f.value, str):
            return "data->>%s = %s", [f.field, f.value]
        return "data->%s = %s", [f.field, Json(f.value)]

    if isinstance(f.value, str):
        return f'data->>%s {f.op} %s COLLATE "C"', [f.field, f.value]
    return f"(data->>%s)::numeric {f.op} %s", [f.field, f.value]


class PostgresDocumentStore(DocumentStore):
    """Document store backed by a single PostgreSQL table."""

    def __init__(self, connection_manager: ConnectionManager):
        """Initialize the adapter.

        Args:
            connection_manager: Pooled connection manager
        """
        self.connection_manager = connection_manager
        logger.info(
            "POSTGRES_STORE_INITIALIZED",
            extra={"database": connection_manager.config.database}
        )

    def ensure_schema(self) -> None:
        """Create the documents table and change trigger if missing."""
        with self.connection_manager.transaction() as conn:
            with conn.cursor() as cur:
                cur.execute(SCHEMA)
        logger.info("POSTGRES_STORE_SCHEMA_READY")

    async def _run(self, fn, *args):
        try:
            return await asyncio.to_thread(fn, *args)
        except StoreError:
            raise
        except Exception as e:
            logger.error(
                "POSTGRES_STORE_OPERATION_FAILED",
                extra={"operation": fn.__name__, "error": str(e)}
            )
            raise StoreError(f"{fn.__name__} failed: {e}") from e

    # -- reads -------------------------------------------------------------

    def _get_sync(self, collection: str, doc_id: str) -> Optional[DocumentSnapshot]:
        with self.connection_manager.transaction() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT data FROM documents WHERE collection = %s AND id = %s",
                    (collection, doc_id),
                )
                row = cur.fetchone()
        if row is None:
            return None
        return DocumentSnapshot(doc_id, row[0])

    def _query_sync(
        self,
        collection: str,
        filters: Sequence[FieldFilter],
    ) -> List[DocumentSnapshot]:
        clauses = ["collection = %s"]
        params: List[Any] = [collection]
        for f in filters:
            clause, clause_params = filter_clause(f)
            clauses.append(clause)
            params.extend(clause_params)

        with self.connection_manager.transaction() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"SELECT id, data FROM documents WHERE {' AND '.join(clauses)} ORDER BY id",
                    params,
                )
                rows = cur.fetchall()
        return [DocumentSnapshot(row[0], row[1]) for row in rows]

    async def get(self, collection: str, doc_id: str) -> Optional[DocumentSnapshot]:
        return await self._run(self._get_sync, collection, doc_id)

    async def query(
        self,
        collection: str,
        filters: Sequence[FieldFilter] = (),
    ) -> List[DocumentSnapshot]:
        return await self._run(self._query_sync, collection, tuple(filters))

    # -- writes ------------------------------------------------------------

    def _upsert_sync(self, collection: str, doc_id: str, data: Mapping[str, Any]) -> None:
        body = resolve_sentinels(data, format_timestamp(utcnow()))
        with self.connection_manager.transaction() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO documents (collection, id, data)
                    VALUES (%s, %s, %s)
                    ON CONFLICT (collection, id) DO UPDATE SET data = EXCLUDED.data
                    """,
                    (collection, doc_id, Json(body)),
                )

    @staticmethod
    def _apply_locked(cur, write: PendingUpdate, timestamp: str) -> Optional[bool]:
        """Apply one update under a row lock.

        Returns:
            None if the document is missing, else whether it was written
        """
        cur.execute(
            "SELECT data FROM documents WHERE collection = %s AND id = %s FOR UPDATE",
            (write.collection, write.doc_id),
        )
        row = cur.fetchone()
        if row is None:
            return None
        if not precondition_holds(row[0], write.precondition):
            return False
        cur.execute(
            "UPDATE documents SET data = %s WHERE collection = %s AND id = %s",
            (Json(apply_changes(row[0], write.changes, timestamp)), write.collection, write.doc_id),
        )
        return True

    def _update_sync(self, write: PendingUpdate) -> bool:
        with self.connection_manager.transaction() as conn:
            with conn.cursor() as cur:
                applied = self._apply_locked(cur, write, format_timestamp(utcnow()))
        if applied is None:
            raise NotFoundError(f"{write.collection}/{write.doc_id} not found")
        return applied

    def _delete_sync(self, collection: str, doc_id: str) -> bool:
        with self.connection_manager.transaction() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "DELETE FROM documents WHERE collection = %s AND id = %s",
                    (collection, doc_id),
                )
                return cur.rowcount > 0

    def _commit_batch_sync(self, writes: Sequence[PendingUpdate]) -> List[str]:
        timestamp = format_timestamp(utcnow())
        applied: List[str] = []
        with self.connection_manager.transaction() as conn:
            with conn.cursor() as cur:
                for write in writes:
                    if self._apply_locked(cur, write, timestamp):
                        applied.append(write.doc_id)
        return applied

    async def add(self, collection: str, data: Mapping[str, Any]) -> str:
        doc_id = new_document_id()
        await self._run(self._upsert_sync, collection, doc_id, data)
        return doc_id

    async def set(self, collection: str, doc_id: str, data: Mapping[str, Any]) -> None:
        await self._run(self._upsert_sync, collection, doc_id, data)

    async def update(
        self,
        collection: str,
        doc_id: str,
        changes: Mapping[str, Any],
        precondition: Optional[Precondition] = None,
    ) -> bool:
        write = PendingUpdate(collection, doc_id, dict(changes), precondition)
        return await self._run(self._update_sync, write)

    async def delete(self, collection: str, doc_id: str) -> bool:
        return await self._run(self._delete_sync, collection, doc_id)

    async def _commit_batch(self, writes: Sequence[PendingUpdate]) -> List[str]:
        return await self._run(self._commit_batch_sync, tuple(writes))

    # -- subscriptions -----------------------------------------------------

    def _listen_sync(self):
        conn = self.connection_manager.dedicated_connection()
        with conn.cursor() as cur:
            cur.execute(f"LISTEN {NOTIFY_CHANNEL}")
        return conn

    async def watch(
        self,
        collection: str,
        filters: Sequence[FieldFilter] = (),
    ) -> AsyncIterator[List[DocumentSnapshot]]:
        conn = await self._run(self._listen_sync)
        loop = asyncio.get_running_loop()
        changed = asyncio.Event()

        def _on_readable():
            conn.poll()
            while conn.notifies:
                notify = conn.notifies.pop(0)
                if notify.payload == collection:
                    changed.set()

        loop.add_reader(conn.fileno(), _on_readable)
        logger.info("POSTGRES_WATCH_STARTED", extra={"collection": collection})
        try:
            yield await self.query(collection, filters)
            while True:
                await changed.wait()
                changed.clear()
                yield await self.query(collection, filters)
        finally:
            loop.remove_reader(conn.fileno())
            conn.close()
            logger.info("POSTGRES_WATCH_STOPPED", extra={"collection": collection})

    async def close(self) -> None:
        self.connection_manager.close()
