"""Document store capability shared by all CrowdSafe services.

The coordination engine treats the replicated store as a capability:
collections of JSON documents with push subscriptions, conditional field
updates and atomic multi-document batches. Adapters implement the
``DocumentStore`` contract; services never talk to a backend directly.

Conditional updates take a precondition mapping ``field -> allowed values``.
``None`` in the allowed values matches a missing or null field.
"""
import asyncio
import copy
import logging
import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import (
    Any,
    AsyncIterator,
    Callable,
    Dict,
    List,
    Mapping,
    Optional,
    Sequence,
    Tuple,
)

from crowdsafe.shared.utils.timestamps import format_timestamp, utcnow

logger = logging.getLogger(__name__)

Precondition = Mapping[str, Tuple[Any, ...]]


class StoreError(Exception):
    """Base exception for store errors."""
    pass


class NotFoundError(StoreError):
    """Document does not exist."""
    pass


class _ServerTimestamp:
    def __repr__(self) -> str:
        return "SERVER_TIMESTAMP"


class _DeleteField:
    def __repr__(self) -> str:
        return "DELETE_FIELD"


# Replaced with the store's clock at write time
SERVER_TIMESTAMP = _ServerTimestamp()

# Removes the field from the document
DELETE_FIELD = _DeleteField()


@dataclass(frozen=True)
class ArrayUnion:
    """Append values not already present, preserving order."""
    values: Tuple[Any, ...]


@dataclass(frozen=True)
class ArrayRemove:
    """Remove every occurrence of the values."""
    values: Tuple[Any, ...]


_COMPARATORS: Dict[str, Callable[[Any, Any], bool]] = {
    "<": lambda a, b: a < b,
    "<=": lambda a, b: a <= b,
    ">": lambda a, b: a > b,
    ">=": lambda a, b: a >= b,
}


@dataclass(frozen=True)
class FieldFilter:
    """Query filter on a single top-level field."""
    field: str
    op: str
    value: Any

    def __post_init__(self):
        if self.op not in ("==", "in") and self.op not in _COMPARATORS:
            raise ValueError(f"Unsupported filter operator: {self.op}")

    def matches(self, data: Mapping[str, Any]) -> bool:
        actual = data.get(self.field)
        if self.op == "==":
            return actual == self.value
        if self.op == "in":
            return actual in self.value
        if actual is None:
            return False
        try:
            return _COMPARATORS[self.op](actual, self.value)
        except TypeError:
            return False


@dataclass(frozen=True)
class DocumentSnapshot:
    """Point-in-time copy of one document."""
    id: str
    data: Dict[str, Any] = field(default_factory=dict)

    def get(self, key: str, default: Any = None) -> Any:
        return self.data.get(key, default)


def precondition_holds(data: Mapping[str, Any], precondition: Optional[Precondition]) -> bool:
    """Check a precondition against current document data."""
    if not precondition:
        return True
    return all(data.get(name) in allowed for name, allowed in precondition.items())


def resolve_sentinels(data: Mapping[str, Any], timestamp: str) -> Dict[str, Any]:
    """Replace SERVER_TIMESTAMP in a full document about to be written."""
    return {
        key: timestamp if value is SERVER_TIMESTAMP else copy.deepcopy(value)
        for key, value in data.items()
        if value is not DELETE_FIELD
    }


def apply_changes(
    data: Mapping[str, Any],
    changes: Mapping[str, Any],
    timestamp: str,
) -> Dict[str, Any]:
    """Merge field changes into document data, honouring sentinels.

    Args:
        data: Current document data (not mutated)
        changes: Top-level field changes
        timestamp: Value substituted for SERVER_TIMESTAMP

    Returns:
        New document data
    """
    updated = copy.deepcopy(dict(data))
    for key, value in changes.items():
        if value is DELETE_FIELD:
            updated.pop(key, None)
        elif value is SERVER_TIMESTAMP:
            updated[key] = timestamp
        elif isinstance(value, ArrayUnion):
            current = list(updated.get(key) or [])
            current.extend(v for v in value.values if v not in current)
            updated[key] = current
        elif isinstance(value, ArrayRemove):
            updated[key] = [v for v in (updated.get(key) or []) if v not in value.values]
        else:
            updated[key] = copy.deepcopy(value)
    return updated


def new_document_id() -> str:
    return uuid.uuid4().hex[:20]


@dataclass(frozen=True)
class PendingUpdate:
    """One queued write inside a WriteBatch."""
    collection: str
    doc_id: str
    changes: Mapping[str, Any]
    precondition: Optional[Precondition] = None


class WriteBatch:
    """Atomic group of conditional updates.

    Either every eligible write lands or none does. A write whose document
    is missing or whose precondition fails is skipped rather than aborting
    the batch; ``commit`` reports which documents were actually written.
    """

    def __init__(self, store: "DocumentStore"):
        self._store = store
        self._writes: List[PendingUpdate] = []
        self._committed = False

    def update(
        self,
        collection: str,
        doc_id: str,
        changes: Mapping[str, Any],
        precondition: Optional[Precondition] = None,
    ) -> "WriteBatch":
        self._writes.append(PendingUpdate(collection, doc_id, dict(changes), precondition))
        return self

    def __len__(self) -> int:
        return len(self._writes)

    async def commit(self) -> List[str]:
        """Commit the batch.

        Returns:
            Ids of documents written, in queue order

        Raises:
            StoreError: If the batch was already committed or the backend failed
        """
        if self._committed:
            raise StoreError("Batch already committed")
        self._committed = True
        if not self._writes:
            return []
        return await self._store._commit_batch(self._writes)


class DocumentStore(ABC):
    """Async document store contract."""

    @abstractmethod
    async def get(self, collection: str, doc_id: str) -> Optional[DocumentSnapshot]:
        """Read one document; None if missing."""
        pass

    @abstractmethod
    async def query(
        self,
        collection: str,
        filters: Sequence[FieldFilter] = (),
    ) -> List[DocumentSnapshot]:
        """Read every document matching all filters."""
        pass

    @abstractmethod
    async def add(self, collection: str, data: Mapping[str, Any]) -> str:
        """Create a document with a store-assigned id and return the id."""
        pass

    @abstractmethod
    async def set(self, collection: str, doc_id: str, data: Mapping[str, Any]) -> None:
        """Create or replace a document."""
        pass

    @abstractmethod
    async def update(
        self,
        collection: str,
        doc_id: str,
        changes: Mapping[str, Any],
        precondition: Optional[Precondition] = None,
    ) -> bool:
        """Conditionally update fields of one document.

        Returns:
            True if written, False if the precondition did not hold

        Raises:
            NotFoundError: If the document does not exist
        """
        pass

    @abstractmethod
    async def delete(self, collection: str, doc_id: str) -> bool:
        """Delete a document; False if it was already gone."""
        pass

    @abstractmethod
    def watch(
        self,
        collection: str,
        filters: Sequence[FieldFilter] = (),
    ) -> AsyncIterator[List[DocumentSnapshot]]:
        """Push subscription.

        Yields the full matching snapshot immediately, then again after
        every change to the collection. Bursts of changes may coalesce into
        a single delivery.
        """
        pass

    @abstractmethod
    async def _commit_batch(self, writes: Sequence[PendingUpdate]) -> List[str]:
        pass

    def batch(self) -> WriteBatch:
        return WriteBatch(self)

    async def close(self) -> None:
        """Release backend resources."""
        return None


class InMemoryDocumentStore(DocumentStore):
    """Process-local store for development and tests.

    Critical sections never await, so a plain lock keeps compare-and-set
    semantics across event loops and threads.
    """

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self.clock = clock
        self._collections: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._watchers: Dict[str, List[asyncio.Queue]] = {}
        self._lock = threading.Lock()

        logger.info("IN_MEMORY_STORE_INITIALIZED")

    def _timestamp(self) -> str:
        return format_timestamp(self.clock())

    def _collection(self, name: str) -> Dict[str, Dict[str, Any]]:
        return self._collections.setdefault(name, {})

    def _notify(self, collection: str) -> None:
        for queue in list(self._watchers.get(collection, ())):
            queue.put_nowait(collection)

    def _snapshot(
        self,
        collection: str,
        filters: Sequence[FieldFilter],
    ) -> List[DocumentSnapshot]:
        with self._lock:
            return [
                DocumentSnapshot(doc_id, copy.deepcopy(data))
                for doc_id, data in self._collection(collection).items()
                if all(f.matches(data) for f in filters)
            ]

    async def get(self, collection: str, doc_id: str) -> Optional[DocumentSnapshot]:
        with self._lock:
            data = self._collection(collection).get(doc_id)
            if data is None:
                return None
            return DocumentSnapshot(doc_id, copy.deepcopy(data))

    async def query(
        self,
        collection: str,
        filters: Sequence[FieldFilter] = (),
    ) -> List[DocumentSnapshot]:
        return self._snapshot(collection, filters)

    async def add(self, collection: str, data: Mapping[str, Any]) -> str:
        doc_id = new_document_id()
        with self._lock:
            self._collection(collection)[doc_id] = resolve_sentinels(data, self._timestamp())
        self._notify(collection)
        return doc_id

    async def set(self, collection: str, doc_id: str, data: Mapping[str, Any]) -> None:
        with self._lock:
            self._collection(collection)[doc_id] = resolve_sentinels(data, self._timestamp())
        self._notify(collection)

    async def update(
        self,
        collection: str,
        doc_id: str,
        changes: Mapping[str, Any],
        precondition: Optional[Precondition] = None,
    ) -> bool:
        with self._lock:
            documents = self._collection(collection)
            current = documents.get(doc_id)
            if current is None:
                raise NotFoundError(f"{collection}/{doc_id} not found")
            if not precondition_holds(current, precondition):
                return False
            documents[doc_id] = apply_changes(current, changes, self._timestamp())
        self._notify(collection)
        return True

    async def delete(self, collection: str, doc_id: str) -> bool:
        with self._lock:
            removed = self._collection(collection).pop(doc_id, None)
        if removed is None:
            return False
        self._notify(collection)
        return True

    async def _commit_batch(self, writes: Sequence[PendingUpdate]) -> List[str]:
        applied: List[str] = []
        touched = set()
        with self._lock:
            timestamp = self._timestamp()
            staged: Dict[Tuple[str, str], Dict[str, Any]] = {}
            for write in writes:
                key = (write.collection, write.doc_id)
                current = staged.get(key, self._collection(write.collection).get(write.doc_id))
                if current is None or not precondition_holds(current, write.precondition):
                    continue
                staged[key] = apply_changes(current, write.changes, timestamp)
                applied.append(write.doc_id)
            for (collection, doc_id), data in staged.items():
                self._collection(collection)[doc_id] = data
                touched.add(collection)
        for collection in touched:
            self._notify(collection)
        return applied

    async def watch(
        self,
        collection: str,
        filters: Sequence[FieldFilter] = (),
    ) -> AsyncIterator[List[DocumentSnapshot]]:
        queue: asyncio.Queue = asyncio.Queue()
        self._watchers.setdefault(collection, []).append(queue)
        try:
            yield self._snapshot(collection, filters)
            while True:
                await queue.get()
                while not queue.empty():
                    queue.get_nowait()
                yield self._snapshot(collection, filters)
        finally:
            self._watchers[collection].remove(queue)
