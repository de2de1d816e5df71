"""Hierarchical document paths for one deployment and identity.

Layout::

    /artifacts/{deployment_id}/users/{identity}/profiles
    /artifacts/{deployment_id}/users/{identity}/profiles/{profile_id}/{collection}
    /artifacts/{deployment_id}/users/{identity}/profiles/{profile_id}/prescriptions/{file}
"""

from __future__ import annotations

from dataclasses import dataclass

from meditrack.models import RecordKind


def _check_segment(value: str, what: str) -> str:
    if not value or "/" in value:
        raise ValueError(f"Invalid {what}: {value!r}")
    return value


@dataclass(frozen=True)
class ScopePaths:
    """Builds the collection paths owned by one authenticated identity."""

    deployment_id: str
    identity: str

    def __post_init__(self) -> None:
        _check_segment(self.deployment_id, "deployment id")
        _check_segment(self.identity, "identity")

    @property
    def root(self) -> str:
        return f"/artifacts/{self.deployment_id}/users/{self.identity}"

    def profiles(self) -> str:
        return f"{self.root}/profiles"

    def profile(self, profile_id: str) -> str:
        return f"{self.profiles()}/{_check_segment(profile_id, 'profile id')}"

    def records(self, profile_id: str, kind: RecordKind) -> str:
        return f"{self.profile(profile_id)}/{RecordKind(kind).value}"

    def prescription(self, profile_id: str, file_name: str) -> str:
        return f"{self.profile(profile_id)}/prescriptions/{_check_segment(file_name, 'file name')}"
