"""Pydantic models for profiles and the five profile-scoped record kinds.

Documents are stored with camelCase keys (``createdAt``, ``medicineId``,
``prescriptionUrl``); Python code uses the snake_case attribute names.
"""

from __future__ import annotations

import enum
import re
from datetime import UTC, datetime
from typing import Annotated

from pydantic import (
    AfterValidator,
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

MAX_PROFILES = 10
DEFAULT_DOSE_TIME = "08:00"

_HHMM_PATTERN = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


def _as_utc(value: datetime) -> datetime:
    """Naive timestamps are taken to be UTC; aware ones are converted to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


# Every stored timestamp is timezone-aware UTC, so records always compare.
UtcDatetime = Annotated[datetime, AfterValidator(_as_utc)]


class Dosage(enum.StrEnum):
    """How often a medicine is taken."""

    ONCE_A_DAY = "Once a day"
    TWICE_A_DAY = "Twice a day"
    THRICE_A_DAY = "Thrice a day"
    ONCE_A_WEEK = "Once a week"

    @property
    def times_per_day(self) -> int:
        return _TIMES_PER_DAY[self]


_TIMES_PER_DAY = {
    Dosage.ONCE_A_DAY: 1,
    Dosage.TWICE_A_DAY: 2,
    Dosage.THRICE_A_DAY: 3,
    Dosage.ONCE_A_WEEK: 1,
}


class SugarReadingType(enum.StrEnum):
    """When a blood sugar reading was taken relative to a meal."""

    FASTING = "Fasting"
    POST_PRANDIAL = "PP"
    RANDOM = "Random"


def sync_times(dosage: Dosage | str, times: list[str] | None) -> list[str]:
    """Resize *times* to the slot count implied by *dosage*.

    Existing entries are kept by position; missing slots are filled with
    ``DEFAULT_DOSE_TIME`` and surplus slots are dropped.
    """
    count = Dosage(dosage).times_per_day
    current = list(times or [])
    return [
        current[i] if i < len(current) and current[i] else DEFAULT_DOSE_TIME for i in range(count)
    ]


class _Document(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    # Document id; empty until the record has been stored.
    id: str = ""

    def to_document(self) -> dict:
        """Return the stored representation (camelCase keys, JSON types, no id)."""
        return self.model_dump(mode="json", by_alias=True, exclude={"id"}, exclude_none=True)


class Profile(_Document):
    """A tracked person (self or a family member) owning a private data scope."""

    name: str = Field(min_length=1)
    relationship: str = Field(min_length=1)


class ScopedRecord(_Document):
    """Base for records stored under a profile."""

    created_at: UtcDatetime | None = None


class Medicine(ScopedRecord):
    """A medication with stock and a daily dosing schedule."""

    name: str = Field(min_length=1)
    doctor: str = Field(min_length=1)
    stock: int = Field(ge=0)
    dosage: Dosage = Dosage.ONCE_A_DAY
    times: list[str] = Field(default_factory=lambda: [DEFAULT_DOSE_TIME])
    prescription_url: str | None = None

    @field_validator("times")
    @classmethod
    def _check_times(cls, value: list[str]) -> list[str]:
        for slot in value:
            if slot and not _HHMM_PATTERN.match(slot):
                raise ValueError(f"Invalid dose time {slot!r}; expected HH:MM")
        return value

    @model_validator(mode="after")
    def _resync_times(self) -> Medicine:
        synced = sync_times(self.dosage, self.times)
        if synced != self.times:
            self.times = synced
        return self


class DoseLog(ScopedRecord):
    """A dose taken. ``medicine_name`` is a snapshot, not a live join."""

    medicine_id: str
    medicine_name: str
    taken_at: UtcDatetime


class Appointment(ScopedRecord):
    doctor: str = Field(min_length=1)
    date: UtcDatetime


class BPReading(ScopedRecord):
    """Blood pressure reading in mmHg."""

    systolic: int
    diastolic: int


class BSReading(ScopedRecord):
    """Blood sugar reading in mg/dL."""

    value: int
    type: SugarReadingType = SugarReadingType.FASTING


class RecordKind(enum.StrEnum):
    """The five per-profile collections. Values are the collection names."""

    MEDICINES = "medicines"
    MEDICINE_LOGS = "medicineLogs"
    APPOINTMENTS = "appointments"
    BLOOD_PRESSURE = "bloodPressureReadings"
    BLOOD_SUGAR = "bloodSugarReadings"

    @property
    def model(self) -> type[ScopedRecord]:
        return _KIND_MODELS[self]

    @property
    def label(self) -> str:
        """Human name used in user-facing messages."""
        return _KIND_LABELS[self]

    def parse(self, doc_id: str, data: dict) -> ScopedRecord:
        """Validate stored document *data* into this kind's model."""
        return self.model.model_validate({**data, "id": doc_id})


_KIND_MODELS: dict[RecordKind, type[ScopedRecord]] = {
    RecordKind.MEDICINES: Medicine,
    RecordKind.MEDICINE_LOGS: DoseLog,
    RecordKind.APPOINTMENTS: Appointment,
    RecordKind.BLOOD_PRESSURE: BPReading,
    RecordKind.BLOOD_SUGAR: BSReading,
}

_KIND_LABELS = {
    RecordKind.MEDICINES: "medicine",
    RecordKind.MEDICINE_LOGS: "dose log",
    RecordKind.APPOINTMENTS: "appointment",
    RecordKind.BLOOD_PRESSURE: "blood pressure reading",
    RecordKind.BLOOD_SUGAR: "blood sugar reading",
}
