"""Dashboard controller: wires session, profiles, live mirrors and writes.

The controller owns the current :class:`AppState`. Every component reports
through :meth:`Dashboard.dispatch`, which runs the pure reducer, reacts to an
active-profile change by switching the live queries (synchronously, so no
stale scope stays subscribed), and then notifies watchers.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any

from meditrack.config import DEFAULT_DEPLOYMENT_ID
from meditrack.core.logging import set_identity_context
from meditrack.gateway import MutationGateway, PrescriptionUpload, utcnow
from meditrack.models import Medicine, RecordKind
from meditrack.profiles import ProfileDirectory, ProfileLimitError
from meditrack.scope import ScopePaths
from meditrack.session import AuthError, IdentityProvider, SessionManager
from meditrack.state import (
    AppState,
    ErrorDismissed,
    ErrorRaised,
    Event,
    InitFailed,
    ProfileSelected,
    SessionFailed,
    SessionReady,
    View,
    ViewChanged,
    reduce,
)
from meditrack.storage.blobs import BlobStore
from meditrack.store.base import DocumentStore
from meditrack.sync import ScopedCollectionSync

logger = logging.getLogger(__name__)

Watcher = Callable[[AppState], None]


class Dashboard:
    """Client-side health dashboard over a live document store."""

    def __init__(
        self,
        store: DocumentStore,
        identity_provider: IdentityProvider,
        *,
        deployment_id: str = DEFAULT_DEPLOYMENT_ID,
        token: str | None = None,
        blobs: BlobStore | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.state = AppState()
        self._store = store
        self._identity_provider = identity_provider
        self._deployment_id = deployment_id
        self._watchers: list[Watcher] = []

        self.session = SessionManager(identity_provider, token)
        self.sync = ScopedCollectionSync(store, self.dispatch)
        self.gateway = MutationGateway(
            store, deployment_id, self.get_state, self.dispatch, blobs=blobs, clock=clock
        )
        self.directory = ProfileDirectory(store, self.gateway, self.get_state, self.dispatch)

    # -- state plumbing ----------------------------------------------------

    def get_state(self) -> AppState:
        return self.state

    def watch(self, watcher: Watcher) -> Callable[[], None]:
        """Call *watcher* with every new state. Returns an unwatch function."""
        self._watchers.append(watcher)
        return lambda: self._watchers.remove(watcher)

    def dispatch(self, event: Event) -> None:
        previous = self.state
        self.state = reduce(previous, event)
        if self.state.active_profile_id != previous.active_profile_id:
            self.sync.switch(self.state.active_profile_id)
        if self.state is previous:
            return
        for watcher in list(self._watchers):
            watcher(self.state)

    # -- lifecycle ---------------------------------------------------------

    async def start(self) -> None:
        """Initialize the backends, authenticate, and subscribe to profiles.

        Initialization and authentication failures are fatal: they end the
        loading state with a blocking error and are not retried.
        """
        try:
            await self._store.open()
            await self._identity_provider.open()
        except Exception:
            logger.exception("Initialization error")
            self.dispatch(InitFailed("Could not initialize the application."))
            return

        try:
            identity = await self.session.start()
        except AuthError:
            self.dispatch(SessionFailed("Failed to authenticate."))
            return

        set_identity_context(identity)
        self.dispatch(SessionReady(identity))
        paths = ScopePaths(self._deployment_id, identity)
        self.sync.bind(paths)
        self.directory.open(paths)

    async def close(self) -> None:
        self.directory.close()
        self.sync.close()
        await self._store.close()

    async def settle(self) -> AppState:
        """Wait for in-flight snapshots to be applied and return the state."""
        await self._store.flush()
        return self.state

    # -- presentation actions ----------------------------------------------

    def set_view(self, view: View | str) -> None:
        self.dispatch(ViewChanged(View(view)))

    def dismiss_error(self) -> None:
        self.dispatch(ErrorDismissed())

    def select_profile(self, profile_id: str) -> None:
        self.dispatch(ProfileSelected(profile_id))

    async def add_profile(self, name: str, relationship: str) -> str | None:
        try:
            return await self.directory.add(name, relationship)
        except ProfileLimitError as exc:
            self.dispatch(ErrorRaised(str(exc)))
        except Exception:
            logger.exception("Error adding profile")
            self.dispatch(ErrorRaised("Failed to add profile."))
        return None

    async def delete_profile(self, profile_id: str) -> bool:
        return await self.gateway.delete_profile(profile_id)

    async def save_record(
        self,
        kind: RecordKind | str,
        payload: dict[str, Any],
        record_id: str | None = None,
    ) -> str | None:
        return await self.gateway.save(kind, payload, record_id)

    async def add_medicine(
        self,
        payload: dict[str, Any],
        prescription: PrescriptionUpload | None = None,
    ) -> str | None:
        """Save a new medicine, uploading its prescription first when given.

        A failed upload aborts the save.
        """
        payload = dict(payload)
        if prescription is not None:
            url = await self.gateway.upload_prescription(prescription)
            if url is None:
                return None
            payload["prescriptionUrl"] = url
        return await self.gateway.save(RecordKind.MEDICINES, payload)

    async def take_dose(self, medicine: Medicine | str) -> bool:
        """Take one dose of a mirrored medicine (given as record or id)."""
        if isinstance(medicine, str):
            found = next((m for m in self.state.medicines if m.id == medicine), None)
            if found is None:
                logger.warning("Medicine %s is not in the active profile", medicine)
                return False
            medicine = found
        return await self.gateway.take_dose(medicine)

    async def attach_prescription(
        self, medicine_id: str, prescription: PrescriptionUpload
    ) -> str | None:
        """Upload a prescription for an existing medicine and link it.

        Returns the stored locator, or ``None`` when the upload or the
        update failed.
        """
        url = await self.gateway.upload_prescription(prescription)
        if url is None:
            return None
        saved = await self.gateway.save(
            RecordKind.MEDICINES, {"prescription_url": url}, record_id=medicine_id
        )
        return url if saved is not None else None
