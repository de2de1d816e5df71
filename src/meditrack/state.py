"""Application state and its pure transition function.

All UI-visible state lives in one frozen :class:`AppState`. Components never
mutate it; they emit events and :func:`reduce` computes the next state.
"""

from __future__ import annotations

import enum
from collections.abc import Sequence
from dataclasses import dataclass, field, replace
from typing import Any

from meditrack.models import Profile, RecordKind, ScopedRecord
from meditrack.session import SessionStatus


class View(enum.StrEnum):
    """View selector values understood by the presentation layer."""

    DASHBOARD = "dashboard"
    ADD_MEDICINE = "addMedicine"
    HISTORY = "history"
    PROFILES = "profiles"
    APPOINTMENTS = "appointments"
    HEALTH_METRICS = "healthMetrics"
    EXPORT = "export"


def _empty_records() -> dict[RecordKind, tuple[ScopedRecord, ...]]:
    return {kind: () for kind in RecordKind}


@dataclass(frozen=True)
class AppState:
    status: SessionStatus = SessionStatus.PENDING
    identity: str | None = None
    profiles: tuple[Profile, ...] = ()
    active_profile_id: str | None = None
    records: dict[RecordKind, tuple[ScopedRecord, ...]] = field(default_factory=_empty_records)
    view: View = View.DASHBOARD
    error: str | None = None
    loading: bool = True
    fatal: bool = False

    @property
    def active_profile(self) -> Profile | None:
        return self.profile(self.active_profile_id)

    def profile(self, profile_id: str | None) -> Profile | None:
        return next((p for p in self.profiles if p.id == profile_id), None)

    def mirror(self, kind: RecordKind | str) -> tuple[Any, ...]:
        return self.records[RecordKind(kind)]

    @property
    def medicines(self) -> tuple[Any, ...]:
        return self.records[RecordKind.MEDICINES]

    @property
    def dose_logs(self) -> tuple[Any, ...]:
        return self.records[RecordKind.MEDICINE_LOGS]

    @property
    def appointments(self) -> tuple[Any, ...]:
        return self.records[RecordKind.APPOINTMENTS]

    @property
    def blood_pressure(self) -> tuple[Any, ...]:
        return self.records[RecordKind.BLOOD_PRESSURE]

    @property
    def blood_sugar(self) -> tuple[Any, ...]:
        return self.records[RecordKind.BLOOD_SUGAR]


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SessionReady:
    identity: str


@dataclass(frozen=True)
class SessionFailed:
    message: str


@dataclass(frozen=True)
class InitFailed:
    message: str


@dataclass(frozen=True)
class ProfilesLoaded:
    profiles: tuple[Profile, ...]


@dataclass(frozen=True)
class ProfilesFailed:
    message: str


@dataclass(frozen=True)
class ProfileSelected:
    profile_id: str | None


@dataclass(frozen=True)
class ProfileCreated:
    """A profile was just written; it may not be in the profile list yet."""

    profile_id: str


@dataclass(frozen=True)
class RecordsLoaded:
    kind: RecordKind
    profile_id: str
    records: tuple[ScopedRecord, ...]


@dataclass(frozen=True)
class RecordsFailed:
    kind: RecordKind
    profile_id: str
    message: str


@dataclass(frozen=True)
class ViewChanged:
    view: View


@dataclass(frozen=True)
class ErrorRaised:
    message: str


@dataclass(frozen=True)
class ErrorDismissed:
    pass


Event = (
    SessionReady
    | SessionFailed
    | InitFailed
    | ProfilesLoaded
    | ProfilesFailed
    | ProfileSelected
    | ProfileCreated
    | RecordsLoaded
    | RecordsFailed
    | ViewChanged
    | ErrorRaised
    | ErrorDismissed
)


# ---------------------------------------------------------------------------
# Reducers
# ---------------------------------------------------------------------------


def select_active_profile(current: str | None, profiles: Sequence[Profile]) -> str | None:
    """Return the active profile id after the profile list changes.

    - empty list: no selection
    - nothing selected, or the selected id is gone: the first profile
    - otherwise the current selection is kept
    """
    if not profiles:
        return None
    if current is None or all(p.id != current for p in profiles):
        return profiles[0].id
    return current


def _with_active(state: AppState, profile_id: str | None) -> AppState:
    if profile_id == state.active_profile_id:
        return state
    return replace(state, active_profile_id=profile_id, records=_empty_records())


def reduce(state: AppState, event: Event) -> AppState:
    """Compute the state that follows *event*. Pure; never mutates *state*."""
    if isinstance(event, SessionReady):
        if state.status is not SessionStatus.PENDING:
            return state
        return replace(state, status=SessionStatus.READY, identity=event.identity)

    if isinstance(event, SessionFailed):
        return replace(
            state, status=SessionStatus.FAILED, error=event.message, loading=False, fatal=True
        )

    if isinstance(event, InitFailed):
        return replace(state, error=event.message, loading=False, fatal=True)

    if isinstance(event, ProfilesLoaded):
        profiles = tuple(event.profiles)
        next_state = replace(state, profiles=profiles, loading=False)
        active = select_active_profile(state.active_profile_id, profiles)
        return _with_active(next_state, active)

    if isinstance(event, ProfilesFailed):
        return replace(state, error=event.message, loading=False)

    if isinstance(event, ProfileSelected):
        if event.profile_id is not None and state.profile(event.profile_id) is None:
            return state
        return replace(_with_active(state, event.profile_id), view=View.DASHBOARD)

    if isinstance(event, ProfileCreated):
        return replace(_with_active(state, event.profile_id), view=View.DASHBOARD)

    if isinstance(event, RecordsLoaded):
        if event.profile_id != state.active_profile_id:
            return state
        updated = dict(state.records)
        updated[event.kind] = tuple(event.records)
        return replace(state, records=updated)

    if isinstance(event, RecordsFailed):
        if event.profile_id != state.active_profile_id:
            return state
        return replace(state, error=event.message)

    if isinstance(event, ViewChanged):
        return replace(state, view=View(event.view))

    if isinstance(event, ErrorRaised):
        return replace(state, error=event.message)

    if isinstance(event, ErrorDismissed):
        if state.fatal or state.error is None:
            return state
        return replace(state, error=None)

    raise TypeError(f"Unknown event: {event!r}")
