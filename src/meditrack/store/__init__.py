"""Document store abstraction with in-memory and PostgreSQL backends."""

from meditrack.store.base import (
    Document,
    DocumentNotFoundError,
    DocumentStore,
    StoreError,
    Subscription,
    WriteBatch,
)
from meditrack.store.memory import MemoryDocumentStore

__all__ = [
    "Document",
    "DocumentNotFoundError",
    "DocumentStore",
    "MemoryDocumentStore",
    "StoreError",
    "Subscription",
    "WriteBatch",
]
