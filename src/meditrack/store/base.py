"""Document store contract: collections, live subscriptions, atomic batches.

A collection is addressed by its full path string (see
:mod:`meditrack.scope`). Documents are JSON-compatible dicts keyed by an
opaque id. Snapshots list a collection's documents in insertion order.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Any, NamedTuple, Protocol

logger = logging.getLogger(__name__)


class StoreError(Exception):
    """Raised when the backing store rejects an operation."""


class DocumentNotFoundError(StoreError):
    """Raised when updating a document that does not exist."""

    def __init__(self, collection: str, doc_id: str):
        self.collection = collection
        self.doc_id = doc_id
        super().__init__(f"Document not found: {collection}/{doc_id}")


class Document(NamedTuple):
    """A stored document with its id attached."""

    id: str
    data: dict[str, Any]


SnapshotCallback = Callable[[list[Document]], None]
ErrorCallback = Callable[[Exception], None]


class Subscription:
    """Handle for one live query over a collection.

    ``cancel()`` is synchronous. Once cancelled, the subscription never
    delivers again, even if a snapshot was already in flight.
    """

    def __init__(
        self,
        collection: str,
        on_snapshot: SnapshotCallback,
        on_error: ErrorCallback | None = None,
    ) -> None:
        self.collection = collection
        self._on_snapshot = on_snapshot
        self._on_error = on_error
        self.active = True

    def cancel(self) -> None:
        self.active = False

    def deliver(self, docs: list[Document]) -> None:
        if self.active:
            self._on_snapshot(docs)

    def fail(self, exc: Exception) -> None:
        if not self.active:
            return
        if self._on_error is None:
            logger.error("Unhandled subscription error on %s: %s", self.collection, exc)
            return
        self._on_error(exc)


class BatchOp(NamedTuple):
    action: str  # "update" or "delete"
    collection: str
    doc_id: str
    fields: dict[str, Any] | None = None


class WriteBatch:
    """Staged writes committed all-or-nothing by the owning store."""

    def __init__(self, commit: Callable[[list[BatchOp]], Awaitable[None]]) -> None:
        self._commit = commit
        self._ops: list[BatchOp] = []
        self._committed = False

    @property
    def ops(self) -> list[BatchOp]:
        return list(self._ops)

    def update(self, collection: str, doc_id: str, fields: dict[str, Any]) -> WriteBatch:
        self._ops.append(BatchOp("update", collection, doc_id, dict(fields)))
        return self

    def delete(self, collection: str, doc_id: str) -> WriteBatch:
        self._ops.append(BatchOp("delete", collection, doc_id))
        return self

    def __len__(self) -> int:
        return len(self._ops)

    async def commit(self) -> None:
        if self._committed:
            raise StoreError("Batch already committed")
        self._committed = True
        await self._commit(list(self._ops))


class DocumentStore(Protocol):
    """Protocol for document store backends."""

    async def open(self) -> None:
        """Prepare the backend (schema, listener connections)."""
        ...

    async def close(self) -> None:
        """Cancel all subscriptions and release backend resources."""
        ...

    async def add(self, collection: str, data: dict[str, Any]) -> str:
        """Create a document with a generated id and return the id."""
        ...

    async def update(self, collection: str, doc_id: str, fields: dict[str, Any]) -> None:
        """Shallow-merge *fields* into an existing document.

        Raises:
            DocumentNotFoundError: If the document does not exist
        """
        ...

    async def list(self, collection: str) -> list[Document]:
        """Return every document of *collection* in insertion order."""
        ...

    def batch(self) -> WriteBatch:
        """Start a batch of writes committed atomically."""
        ...

    def subscribe(
        self,
        collection: str,
        on_snapshot: SnapshotCallback,
        on_error: ErrorCallback | None = None,
    ) -> Subscription:
        """Open a live query: an initial snapshot, then one per committed change."""
        ...

    async def flush(self) -> None:
        """Wait until every in-flight snapshot delivery has run."""
        ...
