"""Profile directory: the live list of profiles owned by the identity."""

from __future__ import annotations

import logging
from collections.abc import Callable

from pydantic import ValidationError

from meditrack.gateway import MutationGateway
from meditrack.models import MAX_PROFILES, Profile
from meditrack.scope import ScopePaths
from meditrack.state import AppState, Event, ProfileCreated, ProfilesFailed, ProfilesLoaded
from meditrack.store.base import Document, DocumentStore, Subscription

logger = logging.getLogger(__name__)


class ProfileLimitError(Exception):
    """Raised when adding a profile would exceed MAX_PROFILES."""

    def __init__(self, limit: int = MAX_PROFILES):
        self.limit = limit
        super().__init__(f"You can add a maximum of {limit} profiles.")


def parse_profiles(docs: list[Document]) -> tuple[Profile, ...]:
    profiles: list[Profile] = []
    for doc in docs:
        try:
            profiles.append(Profile.model_validate({**doc.data, "id": doc.id}))
        except ValidationError as exc:
            logger.warning("Skipping malformed profile %s: %s", doc.id, exc)
    return tuple(profiles)


class ProfileDirectory:
    """Mirrors the profile collection and adds profiles.

    Active-profile repair happens in the reducer
    (:func:`meditrack.state.select_active_profile`) on every delivered list.
    """

    def __init__(
        self,
        store: DocumentStore,
        gateway: MutationGateway,
        get_state: Callable[[], AppState],
        dispatch: Callable[[Event], None],
    ) -> None:
        self._store = store
        self._gateway = gateway
        self._get_state = get_state
        self._dispatch = dispatch
        self._subscription: Subscription | None = None

    def open(self, paths: ScopePaths) -> None:
        self.close()
        self._subscription = self._store.subscribe(
            paths.profiles(), self._on_snapshot, self._on_error
        )

    def close(self) -> None:
        if self._subscription is not None:
            self._subscription.cancel()
            self._subscription = None

    def _on_snapshot(self, docs: list[Document]) -> None:
        self._dispatch(ProfilesLoaded(parse_profiles(docs)))

    def _on_error(self, exc: Exception) -> None:
        logger.error("Error fetching profiles: %s", exc)
        self._dispatch(ProfilesFailed("Could not load profiles."))

    async def add(self, name: str, relationship: str) -> str | None:
        """Create a profile and make it active.

        Raises:
            ProfileLimitError: If MAX_PROFILES profiles already exist; nothing is written
        """
        if len(self._get_state().profiles) >= MAX_PROFILES:
            raise ProfileLimitError()
        profile_id = await self._gateway.create_profile(name, relationship)
        if profile_id is not None:
            self._dispatch(ProfileCreated(profile_id))
        return profile_id
