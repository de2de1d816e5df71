"""The single write path for profile-scoped data.

Every operation needs an established identity and an active profile; without
them it does nothing. Backing-store failures are caught here, logged, and
turned into an ``ErrorRaised`` event. Nothing is written to the in-memory
mirrors: they change only when the live queries redeliver.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any, NamedTuple

from pydantic import BaseModel
from pydantic_core import to_jsonable_python

from meditrack.core.telemetry import mutation_span
from meditrack.models import DoseLog, Medicine, Profile, RecordKind
from meditrack.scope import ScopePaths
from meditrack.state import AppState, ErrorRaised, Event, View, ViewChanged
from meditrack.storage.blobs import BlobStore
from meditrack.store.base import DocumentStore

logger = logging.getLogger(__name__)

# Keys the caller may never write on update.
_IMMUTABLE_KEYS = frozenset({"id", "createdAt"})


class PrescriptionUpload(NamedTuple):
    data: bytes
    file_name: str
    content_type: str = "application/octet-stream"


def utcnow() -> datetime:
    return datetime.now(UTC)


def document_fields(model: type[BaseModel], payload: dict[str, Any]) -> dict[str, Any]:
    """Rename *payload* keys to their stored (camelCase) names, dropping immutable keys."""
    generator = model.model_config.get("alias_generator")
    fields: dict[str, Any] = {}
    for key, value in payload.items():
        stored = key
        info = model.model_fields.get(key)
        if info is not None:
            stored = info.alias or (generator(key) if callable(generator) else key)
        if stored not in _IMMUTABLE_KEYS:
            fields[stored] = value
    return fields


class MutationGateway:
    """Create/update, take-dose and cascading profile delete."""

    def __init__(
        self,
        store: DocumentStore,
        deployment_id: str,
        get_state: Callable[[], AppState],
        dispatch: Callable[[Event], None],
        blobs: BlobStore | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._deployment_id = deployment_id
        self._get_state = get_state
        self._dispatch = dispatch
        self._blobs = blobs
        self._clock = clock

    def _scope(self) -> tuple[ScopePaths, str] | None:
        state = self._get_state()
        if state.identity is None or state.active_profile_id is None:
            return None
        return ScopePaths(self._deployment_id, state.identity), state.active_profile_id

    def paths(self) -> ScopePaths | None:
        identity = self._get_state().identity
        if identity is None:
            return None
        return ScopePaths(self._deployment_id, identity)

    # -- profiles ----------------------------------------------------------

    async def create_profile(self, name: str, relationship: str) -> str | None:
        """Write a new Profile document and return its id.

        Only the identity is required here: the first profile is created
        before any profile can be active.
        """
        paths = self.paths()
        if paths is None:
            return None
        profile = Profile(name=name, relationship=relationship)
        with mutation_span("create_profile"):
            return await self._store.add(paths.profiles(), profile.to_document())

    async def delete_profile(self, profile_id: str) -> bool:
        """Delete a profile and every record it owns in one atomic batch.

        All five collections are enumerated first; the deletes of every
        record plus the profile document are then committed together. On
        any failure nothing is deleted and the error is surfaced.

        Prescription files in blob storage are not part of the batch and
        stay behind; a medicine's ``prescriptionUrl`` is the only handle on
        them.
        """
        scope = self._scope()
        if scope is None:
            return False
        paths, _ = scope

        try:
            with mutation_span("delete_profile", profile_id=profile_id) as span:
                batch = self._store.batch()
                for kind in RecordKind:
                    collection = paths.records(profile_id, kind)
                    for doc in await self._store.list(collection):
                        batch.delete(collection, doc.id)
                batch.delete(paths.profiles(), profile_id)
                span.set_attribute("meditrack.batch_size", len(batch))
                await batch.commit()
        except Exception:
            logger.exception("Error deleting profile %s", profile_id)
            self._dispatch(ErrorRaised("Failed to delete profile."))
            return False

        logger.info("Deleted profile %s (%d documents)", profile_id, len(batch))
        self._dispatch(ViewChanged(View.DASHBOARD))
        return True

    # -- scoped records ----------------------------------------------------

    async def save(
        self,
        kind: RecordKind | str,
        payload: dict[str, Any],
        record_id: str | None = None,
    ) -> str | None:
        """Create a record (no *record_id*) or update one in place.

        Creation stamps ``createdAt``; updates never touch it. Returns the
        record id on success, ``None`` on failure or when no profile is
        active.
        """
        scope = self._scope()
        if scope is None:
            return None
        paths, profile_id = scope
        kind = RecordKind(kind)
        collection = paths.records(profile_id, kind)

        try:
            with mutation_span("save_record", kind=kind.value, record_id=record_id):
                if record_id is None:
                    record = kind.model.model_validate(
                        {**document_fields(kind.model, payload), "createdAt": self._clock()}
                    )
                    record_id = await self._store.add(collection, record.to_document())
                else:
                    fields = await self._update_fields(kind, collection, record_id, payload)
                    await self._store.update(collection, record_id, fields)
        except Exception:
            logger.exception("Error saving to %s", kind.value)
            self._dispatch(ErrorRaised(f"Failed to save {kind.label}."))
            return None

        self._dispatch(ViewChanged(View.DASHBOARD))
        return record_id

    async def _current_document(
        self, kind: RecordKind, collection: str, record_id: str
    ) -> dict[str, Any] | None:
        """Stored fields of *record_id*: from the mirror, else read from the store."""
        mirrored = next((r for r in self._get_state().mirror(kind) if r.id == record_id), None)
        if mirrored is not None:
            return mirrored.model_dump(by_alias=True, exclude={"id"})
        stored = next((d for d in await self._store.list(collection) if d.id == record_id), None)
        return stored.data if stored is not None else None

    async def _update_fields(
        self, kind: RecordKind, collection: str, record_id: str, payload: dict[str, Any]
    ) -> dict:
        fields = document_fields(kind.model, payload)
        current = await self._current_document(kind, collection, record_id)
        if current is None:
            # Missing record: the store rejects the update.
            return to_jsonable_python(fields)

        # Validate the merged record so updates obey the same rules as creates;
        # a dosage change also resizes the stored times.
        merged = kind.model.model_validate({**current, **fields, "id": record_id}).to_document()
        if kind is RecordKind.MEDICINES and "dosage" in fields:
            fields["times"] = merged["times"]
        return {key: merged[key] for key in fields if key in merged}

    async def take_dose(self, medicine: Medicine) -> bool:
        """Decrement stock by one, then append a dose log.

        No-op when stock is not positive. The two writes are sequential and
        not atomic: a failure after the decrement leaves the decrement in
        place. Failures are logged only.
        """
        scope = self._scope()
        if scope is None or medicine.stock <= 0:
            return False
        paths, profile_id = scope

        try:
            with mutation_span("take_dose", medicine_id=medicine.id):
                await self._store.update(
                    paths.records(profile_id, RecordKind.MEDICINES),
                    medicine.id,
                    {"stock": medicine.stock - 1},
                )
                now = self._clock()
                log = DoseLog(
                    medicine_id=medicine.id,
                    medicine_name=medicine.name,
                    taken_at=now,
                    created_at=now,
                )
                await self._store.add(
                    paths.records(profile_id, RecordKind.MEDICINE_LOGS), log.to_document()
                )
        except Exception:
            logger.exception("Error taking dose of %s", medicine.id)
            return False
        return True

    # -- attachments -------------------------------------------------------

    async def upload_prescription(self, upload: PrescriptionUpload) -> str | None:
        """Store a prescription file under the active profile and return its locator."""
        scope = self._scope()
        if scope is None or self._blobs is None:
            return None
        paths, profile_id = scope
        stamp = int(self._clock().timestamp() * 1000)
        try:
            key = paths.prescription(profile_id, f"{stamp}_{upload.file_name}")
            with mutation_span("upload_prescription"):
                return await self._blobs.put(
                    upload.data, key=key, content_type=upload.content_type
                )
        except Exception:
            logger.exception("Prescription upload failed for %s", upload.file_name)
            self._dispatch(ErrorRaised("Failed to upload prescription."))
            return None
