"""Read-only summaries over the live mirrors: history, reminders, export report.

All timestamps are timezone-aware UTC; callers pass an aware ``now``.
"""

from __future__ import annotations

import calendar
from collections import Counter
from collections.abc import Mapping, Sequence
from datetime import UTC, datetime, timedelta
from typing import Any

from meditrack.models import (
    Appointment,
    BPReading,
    BSReading,
    DoseLog,
    Medicine,
    Profile,
    RecordKind,
    ScopedRecord,
)

VALID_HISTORY_WINDOWS = {"day", "month", "year"}
REPORT_ROW_LIMIT = 20

_EPOCH = datetime.min.replace(tzinfo=UTC)


def _created(record: ScopedRecord) -> datetime:
    return record.created_at or _EPOCH


def _months_back(now: datetime, months: int) -> datetime:
    index = now.year * 12 + now.month - 1 - months
    year, month = divmod(index, 12)
    day = min(now.day, calendar.monthrange(year, month + 1)[1])
    return now.replace(year=year, month=month + 1, day=day)


def _window_start(window: str, now: datetime) -> datetime:
    if window == "day":
        return now - timedelta(days=1)
    return _months_back(now, 1 if window == "month" else 12)


def dose_history(logs: Sequence[DoseLog], window: str, now: datetime) -> dict[str, Any]:
    """Dose logs taken within the last day, month or year.

    Returns the logs newest first and the number of doses per medicine name.
    """
    if window not in VALID_HISTORY_WINDOWS:
        raise ValueError(
            f"Invalid window: {window!r}. "
            f"Must be one of: {', '.join(sorted(VALID_HISTORY_WINDOWS))}"
        )
    start = _window_start(window, now)
    recent = sorted(
        (log for log in logs if log.taken_at >= start),
        key=lambda log: log.taken_at,
        reverse=True,
    )
    return {
        "window": window,
        "logs": recent,
        "counts": dict(Counter(log.medicine_name for log in recent)),
    }


def upcoming_appointment(appointments: Sequence[Appointment], now: datetime) -> Appointment | None:
    """Return the earliest appointment strictly after *now*."""
    return min((a for a in appointments if a.date > now), key=lambda a: a.date, default=None)


def sorted_appointments(appointments: Sequence[Appointment]) -> list[Appointment]:
    return sorted(appointments, key=lambda a: a.date)


def latest_first(records: Sequence[ScopedRecord]) -> list[ScopedRecord]:
    """Order records newest first by ``created_at``."""
    return sorted(records, key=_created, reverse=True)


def due_medicines(medicines: Sequence[Medicine], now: datetime) -> list[Medicine]:
    """Medicines scheduled at the current minute that still have stock."""
    current = now.strftime("%H:%M")
    return [m for m in medicines if current in m.times and m.stock > 0]


def _vital_rows(
    bp: Sequence[BPReading], bs: Sequence[BSReading]
) -> list[tuple[str, datetime | None]]:
    rows = [(f"Blood Pressure: {r.systolic}/{r.diastolic} mmHg", r) for r in bp]
    rows += [(f"Blood Sugar: {r.value} mg/dL ({r.type})", r) for r in bs]
    rows.sort(key=lambda row: _created(row[1]), reverse=True)
    return [(label, record.created_at) for label, record in rows]


def build_report(
    profile: Profile,
    records: Mapping[RecordKind, Sequence[Any]],
    now: datetime,
) -> dict[str, Any]:
    """Assemble the export report for one profile from its mirrors.

    Holds every medication, the most recent dose logs and the most recent
    vitals (blood pressure and blood sugar merged), newest first.
    """
    logs = sorted(
        records.get(RecordKind.MEDICINE_LOGS, ()), key=lambda log: log.taken_at, reverse=True
    )
    vitals = _vital_rows(
        records.get(RecordKind.BLOOD_PRESSURE, ()),
        records.get(RecordKind.BLOOD_SUGAR, ()),
    )
    return {
        "profile": {"name": profile.name, "relationship": profile.relationship},
        "generated_at": now,
        "medications": [
            {"name": m.name, "doctor": m.doctor, "dosage": str(m.dosage)}
            for m in records.get(RecordKind.MEDICINES, ())
        ],
        "doses": [
            {"medicine": log.medicine_name, "taken_at": log.taken_at}
            for log in logs[:REPORT_ROW_LIMIT]
        ],
        "vitals": [
            {"reading": reading, "recorded_at": recorded_at}
            for reading, recorded_at in vitals[:REPORT_ROW_LIMIT]
        ],
        "appointments": [
            {"doctor": a.doctor, "date": a.date}
            for a in sorted_appointments(records.get(RecordKind.APPOINTMENTS, ()))
        ],
    }


def _fmt(value: datetime | None) -> str:
    return value.strftime("%Y-%m-%d %H:%M") if value else "-"


def _section(title: str, rows: list[str]) -> list[str]:
    return ["", title, *(f"  {row}" for row in rows or ["(none)"])]


def render_report_text(report: dict[str, Any]) -> str:
    """Render a report built by :func:`build_report` as plain text."""
    lines = [
        f"Health Report for {report['profile']['name']}",
        f"Report Generated: {report['generated_at'].strftime('%Y-%m-%d')}",
    ]
    lines += _section(
        "Medications",
        [f"{m['name']} | Dr. {m['doctor']} | {m['dosage']}" for m in report["medications"]],
    )
    lines += _section(
        "Medication Taken",
        [f"{d['medicine']} | {_fmt(d['taken_at'])}" for d in report["doses"]],
    )
    lines += _section(
        "Vital Readings",
        [f"{v['reading']} | {_fmt(v['recorded_at'])}" for v in report["vitals"]],
    )
    lines += _section(
        "Appointments",
        [f"Dr. {a['doctor']} | {_fmt(a['date'])}" for a in report["appointments"]],
    )
    return "\n".join(lines) + "\n"
