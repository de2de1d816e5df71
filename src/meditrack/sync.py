"""Live mirrors of the active profile's five record collections."""

from __future__ import annotations

import logging
from collections.abc import Callable

from pydantic import ValidationError

from meditrack.models import RecordKind, ScopedRecord
from meditrack.scope import ScopePaths
from meditrack.state import Event, RecordsFailed, RecordsLoaded
from meditrack.store.base import Document, DocumentStore, Subscription

logger = logging.getLogger(__name__)


def parse_records(kind: RecordKind, docs: list[Document]) -> tuple[ScopedRecord, ...]:
    """Validate raw documents, skipping (and logging) any that do not fit the model."""
    records: list[ScopedRecord] = []
    for doc in docs:
        try:
            records.append(kind.parse(doc.id, doc.data))
        except ValidationError as exc:
            logger.warning("Skipping malformed %s document %s: %s", kind.value, doc.id, exc)
    return tuple(records)


class ScopedCollectionSync:
    """Holds exactly one generation of subscriptions, bound to one profile.

    ``switch()`` cancels the previous generation before opening the next, so
    two profiles' subscriptions are never live at the same time. Snapshots
    are tagged with the profile id they were read for.
    """

    def __init__(self, store: DocumentStore, dispatch: Callable[[Event], None]) -> None:
        self._store = store
        self._dispatch = dispatch
        self._paths: ScopePaths | None = None
        self._profile_id: str | None = None
        self._subscriptions: dict[RecordKind, Subscription] = {}

    @property
    def profile_id(self) -> str | None:
        return self._profile_id

    def bind(self, paths: ScopePaths) -> None:
        self._paths = paths

    def switch(self, profile_id: str | None) -> None:
        """Tear down the current subscriptions and open five for *profile_id*."""
        self.close()
        self._profile_id = profile_id
        if profile_id is None or self._paths is None:
            return
        for kind in RecordKind:
            self._subscriptions[kind] = self._subscribe(kind, profile_id)
        logger.debug("Opened %d live queries for profile %s", len(self._subscriptions), profile_id)

    def close(self) -> None:
        for sub in self._subscriptions.values():
            sub.cancel()
        self._subscriptions.clear()
        self._profile_id = None

    def _subscribe(self, kind: RecordKind, profile_id: str) -> Subscription:
        assert self._paths is not None
        collection = self._paths.records(profile_id, kind)

        def on_snapshot(docs: list[Document]) -> None:
            self._dispatch(RecordsLoaded(kind, profile_id, parse_records(kind, docs)))

        def on_error(exc: Exception) -> None:
            logger.error("Live query for %s failed: %s", collection, exc)
            self._dispatch(RecordsFailed(kind, profile_id, f"Could not load {kind.value}."))

        return self._store.subscribe(collection, on_snapshot, on_error)
