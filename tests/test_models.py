"""Tests for meditrack.models: records, dosage schedule, stored representation."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from meditrack.models import (
    DEFAULT_DOSE_TIME,
    MAX_PROFILES,
    Appointment,
    BSReading,
    Dosage,
    DoseLog,
    Medicine,
    Profile,
    RecordKind,
    SugarReadingType,
    sync_times,
)

pytestmark = pytest.mark.unit


# ---------------------------------------------------------------------------
# sync_times
# ---------------------------------------------------------------------------


class TestSyncTimes:
    def test_once_to_twice_pads_with_default(self):
        assert sync_times(Dosage.TWICE_A_DAY, ["08:00"]) == ["08:00", "08:00"]

    def test_keeps_entries_by_position(self):
        assert sync_times("Thrice a day", ["07:30", "13:00"]) == ["07:30", "13:00", "08:00"]

    def test_truncates_surplus_slots(self):
        assert sync_times(Dosage.ONCE_A_DAY, ["07:30", "19:30", "22:00"]) == ["07:30"]

    def test_weekly_has_one_slot(self):
        assert sync_times(Dosage.ONCE_A_WEEK, []) == [DEFAULT_DOSE_TIME]

    def test_empty_slot_replaced_by_default(self):
        assert sync_times(Dosage.TWICE_A_DAY, ["", "21:00"]) == ["08:00", "21:00"]

    def test_none_times(self):
        assert sync_times(Dosage.TWICE_A_DAY, None) == ["08:00", "08:00"]

    def test_does_not_mutate_input(self):
        times = ["09:00"]
        sync_times(Dosage.THRICE_A_DAY, times)
        assert times == ["09:00"]

    def test_unknown_dosage_rejected(self):
        with pytest.raises(ValueError):
            sync_times("Hourly", ["08:00"])


class TestDosage:
    @pytest.mark.parametrize(
        ("dosage", "count"),
        [
            (Dosage.ONCE_A_DAY, 1),
            (Dosage.TWICE_A_DAY, 2),
            (Dosage.THRICE_A_DAY, 3),
            (Dosage.ONCE_A_WEEK, 1),
        ],
    )
    def test_times_per_day(self, dosage, count):
        assert dosage.times_per_day == count

    def test_values_are_display_strings(self):
        assert Dosage("Twice a day") is Dosage.TWICE_A_DAY


# ---------------------------------------------------------------------------
# Medicine
# ---------------------------------------------------------------------------


class TestMedicine:
    def test_defaults(self):
        medicine = Medicine(name="Aspirin", doctor="Smith", stock=10)
        assert medicine.dosage is Dosage.ONCE_A_DAY
        assert medicine.times == ["08:00"]
        assert medicine.prescription_url is None
        assert medicine.id == ""

    def test_times_resynced_on_validation(self):
        medicine = Medicine(
            name="Metformin", doctor="Lee", stock=30, dosage="Twice a day", times=["07:00"]
        )
        assert medicine.times == ["07:00", "08:00"]

    def test_negative_stock_rejected(self):
        with pytest.raises(ValidationError):
            Medicine(name="Aspirin", doctor="Smith", stock=-1)

    @pytest.mark.parametrize("field", ["name", "doctor", "stock"])
    def test_required_fields(self, field):
        data = {"name": "Aspirin", "doctor": "Smith", "stock": 1}
        del data[field]
        with pytest.raises(ValidationError):
            Medicine.model_validate(data)

    def test_empty_name_rejected(self):
        with pytest.raises(ValidationError):
            Medicine(name="", doctor="Smith", stock=1)

    @pytest.mark.parametrize("slot", ["8:00", "24:00", "12:60", "noon"])
    def test_invalid_time_rejected(self, slot):
        with pytest.raises(ValidationError, match="HH:MM"):
            Medicine(name="Aspirin", doctor="Smith", stock=1, times=[slot])

    def test_to_document_uses_camel_case_and_drops_id(self):
        created = datetime(2026, 3, 1, 9, 0, tzinfo=UTC)
        medicine = Medicine(
            id="m1",
            name="Aspirin",
            doctor="Smith",
            stock=10,
            prescription_url="local://rx.pdf",
            created_at=created,
        )
        doc = medicine.to_document()
        assert "id" not in doc
        assert doc["prescriptionUrl"] == "local://rx.pdf"
        assert doc["createdAt"] == "2026-03-01T09:00:00Z"
        assert doc["dosage"] == "Once a day"

    def test_to_document_omits_unset_optional_fields(self):
        doc = Medicine(name="Aspirin", doctor="Smith", stock=10).to_document()
        assert "prescriptionUrl" not in doc
        assert "createdAt" not in doc

    def test_parses_stored_document(self):
        stored = {
            "name": "Aspirin",
            "doctor": "Smith",
            "stock": 9,
            "dosage": "Once a day",
            "times": ["08:00"],
            "createdAt": "2026-03-01T09:00:00Z",
        }
        medicine = RecordKind.MEDICINES.parse("m1", stored)
        assert isinstance(medicine, Medicine)
        assert medicine.id == "m1"
        assert medicine.created_at == datetime(2026, 3, 1, 9, 0, tzinfo=UTC)


# ---------------------------------------------------------------------------
# Other records
# ---------------------------------------------------------------------------


class TestOtherRecords:
    def test_dose_log_aliases(self):
        taken = datetime(2026, 3, 1, 9, 0, tzinfo=UTC)
        log = DoseLog(medicine_id="m1", medicine_name="Aspirin", taken_at=taken)
        doc = log.to_document()
        assert doc == {
            "medicineId": "m1",
            "medicineName": "Aspirin",
            "takenAt": "2026-03-01T09:00:00Z",
        }

    def test_dose_log_accepts_stored_keys(self):
        log = DoseLog.model_validate(
            {"medicineId": "m1", "medicineName": "Aspirin", "takenAt": "2026-03-01T09:00:00Z"}
        )
        assert log.medicine_name == "Aspirin"

    def test_appointment_requires_date(self):
        with pytest.raises(ValidationError):
            Appointment(doctor="Smith")

    def test_naive_timestamps_are_utc(self):
        appointment = Appointment(doctor="Smith", date=datetime(2026, 4, 2, 10, 30))
        assert appointment.date == datetime(2026, 4, 2, 10, 30, tzinfo=UTC)
        assert appointment.to_document()["date"] == "2026-04-02T10:30:00Z"

    def test_aware_timestamps_converted_to_utc(self):
        plus_two = timezone(timedelta(hours=2))
        log = DoseLog(
            medicine_id="m1",
            medicine_name="Aspirin",
            taken_at=datetime(2026, 3, 1, 11, 0, tzinfo=plus_two),
            created_at=datetime(2026, 3, 1, 11, 0),
        )
        assert log.taken_at.utcoffset() == timedelta(0)
        assert log.taken_at == datetime(2026, 3, 1, 9, 0, tzinfo=UTC)
        assert log.created_at.tzinfo is UTC

    def test_blood_sugar_default_type(self):
        assert BSReading(value=95).type is SugarReadingType.FASTING

    def test_blood_sugar_postprandial(self):
        assert BSReading(value=140, type="PP").type is SugarReadingType.POST_PRANDIAL

    def test_profile_requires_name_and_relationship(self):
        with pytest.raises(ValidationError):
            Profile(name="", relationship="Self")
        with pytest.raises(ValidationError):
            Profile(name="Alice", relationship="")


class TestRecordKind:
    def test_collection_names(self):
        assert [k.value for k in RecordKind] == [
            "medicines",
            "medicineLogs",
            "appointments",
            "bloodPressureReadings",
            "bloodSugarReadings",
        ]

    def test_labels(self):
        assert RecordKind.MEDICINES.label == "medicine"
        assert RecordKind.BLOOD_PRESSURE.label == "blood pressure reading"

    def test_models(self):
        assert RecordKind.MEDICINE_LOGS.model is DoseLog
        assert RecordKind.BLOOD_SUGAR.model is BSReading

    def test_profile_cap(self):
        assert MAX_PROFILES == 10
