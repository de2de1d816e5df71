"""Tests for the mutation gateway: saves, take-dose, cascading profile delete, uploads."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest

from meditrack.gateway import PrescriptionUpload, document_fields
from meditrack.models import DoseLog, Medicine, RecordKind
from meditrack.reports import upcoming_appointment
from meditrack.state import View
from meditrack.store import StoreError

pytestmark = pytest.mark.unit

ASPIRIN = {"name": "Aspirin", "doctor": "Smith", "stock": 10, "dosage": "Once a day"}


@pytest.fixture
async def profile_id(make_profile) -> str:
    return await make_profile("Alice", "Self")


def _collection(dashboard, profile_id: str, kind: RecordKind) -> str:
    return dashboard.gateway.paths().records(profile_id, kind)


async def _stored(dashboard, store, profile_id: str, kind: RecordKind) -> list:
    return await store.list(_collection(dashboard, profile_id, kind))


async def _add_medicine(dashboard, **overrides) -> Medicine:
    medicine_id = await dashboard.save_record(RecordKind.MEDICINES, {**ASPIRIN, **overrides})
    assert medicine_id is not None
    await dashboard.settle()
    return next(m for m in dashboard.state.medicines if m.id == medicine_id)


def test_document_fields_renames_and_strips_immutable_keys():
    fields = document_fields(
        DoseLog,
        {"medicine_name": "Aspirin", "takenAt": "x", "id": "d1", "created_at": "y"},
    )
    assert fields == {"medicineName": "Aspirin", "takenAt": "x"}


# ---------------------------------------------------------------------------
# Preconditions
# ---------------------------------------------------------------------------


class TestPreconditions:
    async def test_save_without_active_profile_is_noop(self, dashboard, store):
        assert await dashboard.save_record(RecordKind.MEDICINES, ASPIRIN) is None
        assert dashboard.state.error is None
        assert dashboard.state.medicines == ()

    async def test_take_dose_without_active_profile_is_noop(self, dashboard):
        medicine = Medicine(id="m1", name="Aspirin", doctor="Smith", stock=3)
        assert await dashboard.gateway.take_dose(medicine) is False

    async def test_delete_without_active_profile_is_noop(self, dashboard):
        assert await dashboard.delete_profile("p1") is False
        assert dashboard.state.error is None


# ---------------------------------------------------------------------------
# Create / update
# ---------------------------------------------------------------------------


class TestSave:
    async def test_create_stamps_created_at(self, dashboard, clock, profile_id):
        medicine = await _add_medicine(dashboard)
        assert medicine.created_at == clock.now
        assert medicine.times == ["08:00"]
        assert dashboard.state.view is View.DASHBOARD

    async def test_create_appointment(self, dashboard, profile_id):
        when = datetime(2026, 4, 2, 10, 30, tzinfo=UTC)
        appointment_id = await dashboard.save_record(
            "appointments", {"doctor": "Jones", "date": when}
        )
        await dashboard.settle()
        [appointment] = dashboard.state.appointments
        assert appointment.id == appointment_id
        assert appointment.date == when

    async def test_create_ignores_caller_created_at(self, dashboard, clock, profile_id):
        reading_id = await dashboard.save_record(
            RecordKind.BLOOD_PRESSURE,
            {"systolic": 120, "diastolic": 80, "createdAt": "1999-01-01T00:00:00Z"},
        )
        await dashboard.settle()
        [reading] = dashboard.state.blood_pressure
        assert reading.id == reading_id
        assert reading.created_at == clock.now

    async def test_update_leaves_created_at(self, dashboard, store, clock, profile_id):
        medicine = await _add_medicine(dashboard)
        original = (await _stored(dashboard, store, profile_id, RecordKind.MEDICINES))[0]
        clock.advance(days=3)

        await dashboard.save_record(
            RecordKind.MEDICINES,
            {"doctor": "Patel", "createdAt": "2030-01-01T00:00:00Z", "id": "other"},
            record_id=medicine.id,
        )
        [doc] = await _stored(dashboard, store, profile_id, RecordKind.MEDICINES)
        assert doc.id == medicine.id
        assert doc.data["doctor"] == "Patel"
        assert doc.data["createdAt"] == original.data["createdAt"]

    async def test_dosage_change_resyncs_times(self, dashboard, store, profile_id):
        medicine = await _add_medicine(dashboard)
        await dashboard.save_record(
            RecordKind.MEDICINES, {"dosage": "Twice a day"}, record_id=medicine.id
        )
        [doc] = await _stored(dashboard, store, profile_id, RecordKind.MEDICINES)
        assert doc.data["dosage"] == "Twice a day"
        assert doc.data["times"] == ["08:00", "08:00"]

    async def test_dosage_change_before_mirror_catches_up(self, dashboard, store, profile_id):
        medicine_id = await dashboard.save_record(RecordKind.MEDICINES, ASPIRIN)
        assert dashboard.state.medicines == ()
        await dashboard.save_record(
            RecordKind.MEDICINES, {"dosage": "Twice a day"}, record_id=medicine_id
        )
        [doc] = await _stored(dashboard, store, profile_id, RecordKind.MEDICINES)
        assert doc.data["dosage"] == "Twice a day"
        assert doc.data["times"] == ["08:00", "08:00"]
        assert doc.data["name"] == "Aspirin"

    async def test_times_update_before_mirror_catches_up(self, dashboard, store, profile_id):
        medicine_id = await dashboard.save_record(
            RecordKind.MEDICINES, {**ASPIRIN, "dosage": "Twice a day"}
        )
        await dashboard.save_record(
            RecordKind.MEDICINES, {"times": ["06:00"]}, record_id=medicine_id
        )
        [doc] = await _stored(dashboard, store, profile_id, RecordKind.MEDICINES)
        assert doc.data["times"] == ["06:00", "08:00"]

    async def test_naive_appointment_date_stored_as_utc(self, dashboard, store, profile_id):
        await dashboard.save_record(
            RecordKind.APPOINTMENTS, {"doctor": "Jones", "date": datetime(2026, 4, 2, 10, 30)}
        )
        await dashboard.save_record(
            RecordKind.APPOINTMENTS,
            {"doctor": "Lee", "date": datetime(2026, 4, 1, 8, 0, tzinfo=UTC)},
        )
        await dashboard.settle()
        [doc, _] = await _stored(dashboard, store, profile_id, RecordKind.APPOINTMENTS)
        assert doc.data["date"] == "2026-04-02T10:30:00Z"
        march = datetime(2026, 3, 1, tzinfo=UTC)
        assert upcoming_appointment(dashboard.state.appointments, march).doctor == "Lee"

    async def test_dosage_decrease_truncates_times(self, dashboard, store, profile_id):
        medicine = await _add_medicine(dashboard, dosage="Twice a day", times=["07:00", "19:00"])
        await dashboard.save_record(
            RecordKind.MEDICINES, {"dosage": "Once a day"}, record_id=medicine.id
        )
        [doc] = await _stored(dashboard, store, profile_id, RecordKind.MEDICINES)
        assert doc.data["times"] == ["07:00"]

    async def test_update_writes_only_given_fields(self, dashboard, store, profile_id):
        medicine = await _add_medicine(dashboard)
        await dashboard.save_record(RecordKind.MEDICINES, {"stock": 25}, record_id=medicine.id)
        await dashboard.settle()
        [updated] = dashboard.state.medicines
        assert updated.stock == 25
        assert updated.name == "Aspirin"

    async def test_invalid_create_surfaces_error(self, dashboard, store, profile_id):
        assert await dashboard.save_record(RecordKind.MEDICINES, {**ASPIRIN, "stock": -5}) is None
        assert dashboard.state.error == "Failed to save medicine."
        assert await _stored(dashboard, store, profile_id, RecordKind.MEDICINES) == []

    async def test_update_missing_record_surfaces_error(self, dashboard, profile_id):
        dashboard.set_view("addMedicine")
        result = await dashboard.save_record(
            RecordKind.APPOINTMENTS, {"doctor": "Jones"}, record_id="missing"
        )
        assert result is None
        assert dashboard.state.error == "Failed to save appointment."
        assert dashboard.state.view is View.ADD_MEDICINE

    async def test_store_failure_surfaces_error(self, dashboard, store, profile_id, monkeypatch):
        async def failing_add(collection, data):
            raise StoreError("quota exceeded")

        monkeypatch.setattr(store, "add", failing_add)
        result = await dashboard.save_record(RecordKind.BLOOD_SUGAR, {"value": 110})
        assert result is None
        assert dashboard.state.error == "Failed to save blood sugar reading."

    async def test_mirrors_change_only_through_snapshots(self, dashboard, profile_id):
        await dashboard.save_record(RecordKind.MEDICINES, ASPIRIN)
        assert dashboard.state.medicines == ()
        await dashboard.settle()
        assert len(dashboard.state.medicines) == 1


# ---------------------------------------------------------------------------
# Take dose
# ---------------------------------------------------------------------------


class TestTakeDose:
    async def test_decrements_stock_and_logs(self, dashboard, clock, profile_id):
        medicine = await _add_medicine(dashboard, stock=3)
        clock.advance(hours=1)
        assert await dashboard.take_dose(medicine) is True
        await dashboard.settle()

        [after] = dashboard.state.medicines
        assert after.stock == 2
        [log] = dashboard.state.dose_logs
        assert log.medicine_id == medicine.id
        assert log.medicine_name == "Aspirin"
        assert log.taken_at == clock.now
        assert log.created_at == clock.now

    async def test_accepts_medicine_id(self, dashboard, profile_id):
        medicine = await _add_medicine(dashboard, stock=1)
        assert await dashboard.take_dose(medicine.id) is True
        await dashboard.settle()
        assert dashboard.state.medicines[0].stock == 0

    async def test_unknown_medicine_id(self, dashboard, profile_id):
        assert await dashboard.take_dose("missing") is False

    async def test_out_of_stock_is_noop(self, dashboard, store, profile_id):
        medicine = await _add_medicine(dashboard, stock=0)
        assert await dashboard.take_dose(medicine) is False
        await dashboard.settle()
        assert dashboard.state.medicines[0].stock == 0
        assert await _stored(dashboard, store, profile_id, RecordKind.MEDICINE_LOGS) == []

    async def test_failure_is_logged_not_surfaced(
        self, dashboard, store, profile_id, monkeypatch, caplog
    ):
        medicine = await _add_medicine(dashboard, stock=3)

        async def failing_update(collection, doc_id, fields):
            raise StoreError("unavailable")

        monkeypatch.setattr(store, "update", failing_update)
        assert await dashboard.take_dose(medicine) is False
        assert dashboard.state.error is None
        assert "Error taking dose" in caplog.text
        assert await _stored(dashboard, store, profile_id, RecordKind.MEDICINE_LOGS) == []

    async def test_log_failure_keeps_decrement(self, dashboard, store, profile_id, monkeypatch):
        medicine = await _add_medicine(dashboard, stock=3)

        async def failing_add(collection, data):
            raise StoreError("unavailable")

        monkeypatch.setattr(store, "add", failing_add)
        assert await dashboard.take_dose(medicine) is False
        [doc] = await _stored(dashboard, store, profile_id, RecordKind.MEDICINES)
        assert doc.data["stock"] == 2
        assert await _stored(dashboard, store, profile_id, RecordKind.MEDICINE_LOGS) == []


# ---------------------------------------------------------------------------
# Cascading delete
# ---------------------------------------------------------------------------


class TestDeleteProfile:
    async def _populate(self, dashboard, clock) -> None:
        medicine = await _add_medicine(dashboard, stock=5)
        await dashboard.take_dose(medicine)
        await dashboard.save_record(
            RecordKind.APPOINTMENTS, {"doctor": "Jones", "date": clock.now}
        )
        await dashboard.save_record(RecordKind.BLOOD_PRESSURE, {"systolic": 130, "diastolic": 85})
        await dashboard.save_record(RecordKind.BLOOD_SUGAR, {"value": 99, "type": "Random"})
        await dashboard.settle()

    async def test_removes_profile_and_every_record(
        self, dashboard, store, clock, profile_id
    ):
        await self._populate(dashboard, clock)
        for kind in RecordKind:
            assert await _stored(dashboard, store, profile_id, kind) != []

        dashboard.set_view("profiles")
        assert await dashboard.delete_profile(profile_id) is True
        await dashboard.settle()

        for kind in RecordKind:
            assert await _stored(dashboard, store, profile_id, kind) == []
        assert await store.list(dashboard.gateway.paths().profiles()) == []
        state = dashboard.state
        assert state.active_profile_id is None
        assert state.view is View.DASHBOARD
        assert all(records == () for records in state.records.values())
        assert store.live_subscriptions(dashboard.gateway.paths().profile(profile_id)) == []

    async def test_other_profiles_untouched(self, dashboard, store, clock, make_profile):
        alice = await make_profile("Alice")
        await self._populate(dashboard, clock)
        bob = await make_profile("Bob")
        await _add_medicine(dashboard)

        dashboard.select_profile(alice)
        await dashboard.settle()
        assert await dashboard.delete_profile(alice) is True
        await dashboard.settle()

        assert dashboard.state.active_profile_id == bob
        assert len(await _stored(dashboard, store, bob, RecordKind.MEDICINES)) == 1
        assert [m.name for m in dashboard.state.medicines] == ["Aspirin"]

    async def test_commit_failure_deletes_nothing(
        self, dashboard, store, clock, profile_id, monkeypatch
    ):
        await self._populate(dashboard, clock)

        async def failing_commit(ops):
            raise StoreError("transaction aborted")

        monkeypatch.setattr(store, "_commit_batch", failing_commit)
        assert await dashboard.delete_profile(profile_id) is False
        await dashboard.settle()

        assert dashboard.state.error == "Failed to delete profile."
        for kind in RecordKind:
            assert await _stored(dashboard, store, profile_id, kind) != []
        assert len(await store.list(dashboard.gateway.paths().profiles())) == 1
        assert dashboard.state.active_profile_id == profile_id

    async def test_enumeration_failure_deletes_nothing(
        self, dashboard, store, clock, profile_id, monkeypatch
    ):
        await self._populate(dashboard, clock)
        real_list = store.list
        listed: list[str] = []

        async def flaky_list(collection):
            listed.append(collection)
            if collection.endswith(RecordKind.APPOINTMENTS.value):
                raise StoreError("connection reset")
            return await real_list(collection)

        monkeypatch.setattr(store, "list", flaky_list)
        assert await dashboard.delete_profile(profile_id) is False
        monkeypatch.undo()
        await dashboard.settle()

        assert len(listed) == 3
        assert dashboard.state.error == "Failed to delete profile."
        for kind in RecordKind:
            assert await _stored(dashboard, store, profile_id, kind) != []
        assert len(await store.list(dashboard.gateway.paths().profiles())) == 1
        assert dashboard.state.active_profile_id == profile_id
        assert len(dashboard.state.medicines) == 1


# ---------------------------------------------------------------------------
# Prescription attachments
# ---------------------------------------------------------------------------


class TestPrescriptions:
    async def test_add_medicine_with_prescription(
        self, dashboard, blob_store, clock, profile_id
    ):
        upload = PrescriptionUpload(b"%PDF-1.4", "rx.pdf", "application/pdf")
        medicine_id = await dashboard.add_medicine(ASPIRIN, upload)
        await dashboard.settle()

        [medicine] = dashboard.state.medicines
        assert medicine.id == medicine_id
        stamp = int(clock.now.timestamp() * 1000)
        prefix = dashboard.gateway.paths().profile(profile_id).lstrip("/")
        assert medicine.prescription_url == f"local://{prefix}/prescriptions/{stamp}_rx.pdf"
        assert await blob_store.get(medicine.prescription_url) == b"%PDF-1.4"

    async def test_upload_failure_aborts_save(
        self, dashboard, store, blob_store, profile_id, monkeypatch
    ):
        async def failing_put(data, *, key, content_type):
            raise OSError("disk full")

        monkeypatch.setattr(blob_store, "put", failing_put)
        result = await dashboard.add_medicine(ASPIRIN, PrescriptionUpload(b"x", "rx.pdf"))
        assert result is None
        assert dashboard.state.error == "Failed to upload prescription."
        assert await _stored(dashboard, store, profile_id, RecordKind.MEDICINES) == []

    async def test_attach_to_existing_medicine(self, dashboard, blob_store, profile_id):
        medicine = await _add_medicine(dashboard)
        url = await dashboard.attach_prescription(
            medicine.id, PrescriptionUpload(b"scan", "scan.png", "image/png")
        )
        await dashboard.settle()
        assert url is not None
        assert dashboard.state.medicines[0].prescription_url == url
        assert await blob_store.exists(url)

    async def test_add_medicine_without_prescription(self, dashboard, profile_id):
        await dashboard.add_medicine(ASPIRIN)
        await dashboard.settle()
        assert dashboard.state.medicines[0].prescription_url is None
