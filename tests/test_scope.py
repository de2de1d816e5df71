"""Tests for meditrack.scope path construction."""

from __future__ import annotations

import pytest

from meditrack.models import RecordKind
from meditrack.scope import ScopePaths

pytestmark = pytest.mark.unit


@pytest.fixture
def paths() -> ScopePaths:
    return ScopePaths("default-health-dashboard", "uid-1")


def test_profiles_collection(paths):
    assert paths.profiles() == "/artifacts/default-health-dashboard/users/uid-1/profiles"


def test_record_collection(paths):
    assert paths.records("p1", RecordKind.MEDICINE_LOGS) == (
        "/artifacts/default-health-dashboard/users/uid-1/profiles/p1/medicineLogs"
    )


def test_record_collection_accepts_string_kind(paths):
    assert paths.records("p1", "bloodSugarReadings").endswith("/p1/bloodSugarReadings")


def test_prescription_path(paths):
    assert paths.prescription("p1", "1700000000000_rx.pdf") == (
        "/artifacts/default-health-dashboard/users/uid-1/profiles/p1/prescriptions/"
        "1700000000000_rx.pdf"
    )


def test_every_record_collection_is_under_its_profile(paths):
    for kind in RecordKind:
        assert paths.records("p1", kind).startswith(paths.profile("p1") + "/")


@pytest.mark.parametrize("bad", ["", "a/b"])
def test_rejects_bad_identity(bad):
    with pytest.raises(ValueError, match="Invalid identity"):
        ScopePaths("app", bad)


def test_rejects_bad_profile_id(paths):
    with pytest.raises(ValueError, match="Invalid profile id"):
        paths.records("../p2", RecordKind.MEDICINES)


def test_rejects_file_name_with_separator(paths):
    with pytest.raises(ValueError, match="Invalid file name"):
        paths.prescription("p1", "dir/rx.pdf")
