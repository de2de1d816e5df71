"""CLI for meditrack: a terminal front end over the health dashboard."""

from __future__ import annotations

import asyncio
import mimetypes
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from pathlib import Path

import click

from meditrack.app import Dashboard
from meditrack.config import ConfigError, MeditrackConfig, load_config
from meditrack.core.logging import configure_logging
from meditrack.core.telemetry import init_telemetry
from meditrack.db import Database
from meditrack.gateway import PrescriptionUpload, utcnow
from meditrack.models import Dosage, RecordKind, SugarReadingType
from meditrack.reports import (
    VALID_HISTORY_WINDOWS,
    build_report,
    dose_history,
    render_report_text,
    upcoming_appointment,
)
from meditrack.session import IdentityProvider, PostgresIdentityProvider
from meditrack.state import AppState
from meditrack.storage.blobs import LocalBlobStore
from meditrack.store.base import DocumentStore
from meditrack.store.postgres import PostgresDocumentStore

_DATE_FORMATS = ["%Y-%m-%d", "%Y-%m-%d %H:%M", "%Y-%m-%dT%H:%M", "%Y-%m-%d %H:%M:%S"]

profile_option = click.option(
    "--profile",
    "profile_ref",
    default=None,
    help="Profile id or name (defaults to the first profile)",
)


@click.group()
@click.version_option(version="0.1.0")
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Path to meditrack.toml",
)
@click.option("--token", default=None, help="Auth token (overrides config and environment)")
@click.pass_context
def cli(ctx: click.Context, config_path: Path | None, token: str | None) -> None:
    """meditrack: medications, doses, appointments and vitals per profile."""
    try:
        config = load_config(config_path)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc
    if token:
        config.auth_token = token

    log_root = Path(config.logging.log_root) if config.logging.log_root else None
    configure_logging(config.logging.level, config.logging.format, log_root)
    init_telemetry("meditrack")
    ctx.obj = config


# ---------------------------------------------------------------------------
# Plumbing
# ---------------------------------------------------------------------------


@asynccontextmanager
async def _backends(
    config: MeditrackConfig,
) -> AsyncIterator[tuple[DocumentStore, IdentityProvider]]:
    async with Database.from_env(config.db_name) as db:
        assert db.pool is not None
        yield PostgresDocumentStore(db.pool), PostgresIdentityProvider(db.pool)


@asynccontextmanager
async def _dashboard(config: MeditrackConfig) -> AsyncIterator[Dashboard]:
    """Start a dashboard on the configured backends and wait for its first snapshots."""
    async with _backends(config) as (store, identity_provider):
        dashboard = Dashboard(
            store,
            identity_provider,
            deployment_id=config.deployment_id,
            token=config.auth_token,
            blobs=LocalBlobStore(Path(config.blob_dir)),
        )
        try:
            await dashboard.start()
            state = await dashboard.settle()
            if state.error:
                raise click.ClickException(state.error)
            yield dashboard
        finally:
            await dashboard.close()


async def _use_profile(dashboard: Dashboard, profile_ref: str | None) -> AppState:
    """Make *profile_ref* active (by id or name) and return the settled state."""
    state = dashboard.state
    if profile_ref is not None:
        match = next(
            (p for p in state.profiles if profile_ref in (p.id, p.name)),
            None,
        )
        if match is None:
            raise click.ClickException(f"Profile not found: {profile_ref}")
        dashboard.select_profile(match.id)
        state = await dashboard.settle()
    if state.active_profile is None:
        raise click.ClickException("No profiles yet. Create one with 'meditrack add-profile'.")
    return state


def _raise_on_error(dashboard: Dashboard) -> None:
    if dashboard.state.error:
        raise click.ClickException(dashboard.state.error)


def _fmt(value: datetime | None) -> str:
    return value.strftime("%Y-%m-%d %H:%M") if value else "-"


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=UTC)


# ---------------------------------------------------------------------------
# Setup
# ---------------------------------------------------------------------------


@cli.command("init-db")
@click.pass_obj
def init_db(config: MeditrackConfig) -> None:
    """Create the database and its tables."""

    async def _run() -> None:
        async with Database.from_env(config.db_name) as db:
            assert db.pool is not None
            store = PostgresDocumentStore(db.pool)
            await store.open()
            await PostgresIdentityProvider(db.pool).open()
            await store.close()

    asyncio.run(_run())
    click.echo(f"Database ready: {config.db_name}")


@cli.command("issue-token")
@click.option("--uid", default=None, help="Reuse an existing identity")
@click.pass_obj
def issue_token(config: MeditrackConfig, uid: str | None) -> None:
    """Issue an auth token bound to a stable identity."""

    async def _run() -> tuple[str, str]:
        async with Database.from_env(config.db_name) as db:
            assert db.pool is not None
            provider = PostgresIdentityProvider(db.pool)
            await provider.open()
            return await provider.issue_token(uid)

    identity, token = asyncio.run(_run())
    click.echo(f"Identity: {identity}")
    click.echo(f"Token:    {token}")
    click.echo("Store the token; it cannot be shown again. Export it as MEDITRACK_AUTH_TOKEN.")


# ---------------------------------------------------------------------------
# Profiles
# ---------------------------------------------------------------------------


@cli.command("profiles")
@click.pass_obj
def profiles_cmd(config: MeditrackConfig) -> None:
    """List profiles."""

    async def _run() -> AppState:
        async with _dashboard(config) as dashboard:
            return dashboard.state

    state = asyncio.run(_run())
    if not state.profiles:
        click.echo("No profiles.")
        return
    click.echo(f"  {'ID':<34} {'Name':<20} {'Relationship'}")
    for profile in state.profiles:
        marker = "*" if profile.id == state.active_profile_id else " "
        click.echo(f"{marker} {profile.id:<34} {profile.name:<20} {profile.relationship}")


@cli.command("add-profile")
@click.argument("name")
@click.option("--relationship", default="Self", show_default=True)
@click.pass_obj
def add_profile(config: MeditrackConfig, name: str, relationship: str) -> None:
    """Add a profile and make it active."""

    async def _run() -> str | None:
        async with _dashboard(config) as dashboard:
            profile_id = await dashboard.add_profile(name, relationship)
            _raise_on_error(dashboard)
            return profile_id

    profile_id = asyncio.run(_run())
    click.echo(f"Added profile {name} ({profile_id})")


@cli.command("delete-profile")
@click.argument("profile_ref")
@click.confirmation_option(prompt="Delete this profile and all of its records?")
@click.pass_obj
def delete_profile(config: MeditrackConfig, profile_ref: str) -> None:
    """Delete a profile together with all of its records."""

    async def _run() -> None:
        async with _dashboard(config) as dashboard:
            state = await _use_profile(dashboard, profile_ref)
            await dashboard.delete_profile(state.active_profile_id)
            _raise_on_error(dashboard)

    asyncio.run(_run())
    click.echo(f"Deleted profile {profile_ref}")


# ---------------------------------------------------------------------------
# Medicines
# ---------------------------------------------------------------------------


@cli.command("medicines")
@profile_option
@click.pass_obj
def medicines_cmd(config: MeditrackConfig, profile_ref: str | None) -> None:
    """List the active profile's medicines."""

    async def _run() -> AppState:
        async with _dashboard(config) as dashboard:
            return await _use_profile(dashboard, profile_ref)

    state = asyncio.run(_run())
    click.echo(f"Medicines for {state.active_profile.name}:")
    if not state.medicines:
        click.echo("  (none)")
    for m in state.medicines:
        times = ", ".join(m.times)
        click.echo(
            f"  {m.id}  {m.name:<20} Dr. {m.doctor:<15} stock {m.stock:<4} {m.dosage} @ {times}"
        )

    empty = [m.name for m in state.medicines if m.stock <= 0]
    if empty:
        click.echo(f"Out of stock: {', '.join(empty)}")


@cli.command("add-medicine")
@click.argument("name")
@click.option("--doctor", required=True)
@click.option("--stock", type=click.IntRange(min=0), required=True)
@click.option(
    "--dosage",
    type=click.Choice([d.value for d in Dosage]),
    default=Dosage.ONCE_A_DAY.value,
    show_default=True,
)
@click.option("--time", "times", multiple=True, help="Dose time HH:MM (repeatable)")
@click.option(
    "--prescription",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Prescription file to attach",
)
@profile_option
@click.pass_obj
def add_medicine(
    config: MeditrackConfig,
    name: str,
    doctor: str,
    stock: int,
    dosage: str,
    times: tuple[str, ...],
    prescription: Path | None,
    profile_ref: str | None,
) -> None:
    """Add a medicine to the active profile."""
    upload = None
    if prescription is not None:
        content_type = mimetypes.guess_type(prescription.name)[0] or "application/octet-stream"
        upload = PrescriptionUpload(prescription.read_bytes(), prescription.name, content_type)

    payload = {"name": name, "doctor": doctor, "stock": stock, "dosage": dosage}
    if times:
        payload["times"] = list(times)

    async def _run() -> str | None:
        async with _dashboard(config) as dashboard:
            await _use_profile(dashboard, profile_ref)
            medicine_id = await dashboard.add_medicine(payload, upload)
            _raise_on_error(dashboard)
            return medicine_id

    medicine_id = asyncio.run(_run())
    click.echo(f"Added medicine {name} ({medicine_id})")


@cli.command("take-dose")
@click.argument("medicine_ref")
@profile_option
@click.pass_obj
def take_dose(config: MeditrackConfig, medicine_ref: str, profile_ref: str | None) -> None:
    """Record one dose of a medicine (by id or name) and decrement its stock."""

    async def _run() -> tuple[bool, int]:
        async with _dashboard(config) as dashboard:
            state = await _use_profile(dashboard, profile_ref)
            medicine = next((m for m in state.medicines if medicine_ref in (m.id, m.name)), None)
            if medicine is None:
                raise click.ClickException(f"Medicine not found: {medicine_ref}")
            if medicine.stock <= 0:
                raise click.ClickException(f"{medicine.name} is out of stock.")
            taken = await dashboard.take_dose(medicine)
            return taken, medicine.stock - 1

    taken, remaining = asyncio.run(_run())
    if not taken:
        raise click.ClickException("Could not record the dose. See the log for details.")
    click.echo(f"Dose recorded. {remaining} left.")


# ---------------------------------------------------------------------------
# Appointments and vitals
# ---------------------------------------------------------------------------


@cli.command("add-appointment")
@click.argument("doctor")
@click.option("--date", "when", type=click.DateTime(formats=_DATE_FORMATS), required=True)
@profile_option
@click.pass_obj
def add_appointment(
    config: MeditrackConfig, doctor: str, when: datetime, profile_ref: str | None
) -> None:
    """Schedule an appointment for the active profile."""

    async def _run() -> None:
        async with _dashboard(config) as dashboard:
            await _use_profile(dashboard, profile_ref)
            await dashboard.save_record(
                RecordKind.APPOINTMENTS, {"doctor": doctor, "date": _aware(when)}
            )
            _raise_on_error(dashboard)

    asyncio.run(_run())
    click.echo(f"Appointment with Dr. {doctor} on {_fmt(_aware(when))}")


@cli.command("log-bp")
@click.argument("systolic", type=int)
@click.argument("diastolic", type=int)
@profile_option
@click.pass_obj
def log_bp(
    config: MeditrackConfig, systolic: int, diastolic: int, profile_ref: str | None
) -> None:
    """Log a blood pressure reading (mmHg)."""

    async def _run() -> None:
        async with _dashboard(config) as dashboard:
            await _use_profile(dashboard, profile_ref)
            await dashboard.save_record(
                RecordKind.BLOOD_PRESSURE, {"systolic": systolic, "diastolic": diastolic}
            )
            _raise_on_error(dashboard)

    asyncio.run(_run())
    click.echo(f"Logged blood pressure {systolic}/{diastolic} mmHg")


@cli.command("log-bs")
@click.argument("value", type=int)
@click.option(
    "--type",
    "reading_type",
    type=click.Choice([t.value for t in SugarReadingType]),
    default=SugarReadingType.FASTING.value,
    show_default=True,
)
@profile_option
@click.pass_obj
def log_bs(
    config: MeditrackConfig, value: int, reading_type: str, profile_ref: str | None
) -> None:
    """Log a blood sugar reading (mg/dL)."""

    async def _run() -> None:
        async with _dashboard(config) as dashboard:
            await _use_profile(dashboard, profile_ref)
            await dashboard.save_record(
                RecordKind.BLOOD_SUGAR, {"value": value, "type": reading_type}
            )
            _raise_on_error(dashboard)

    asyncio.run(_run())
    click.echo(f"Logged blood sugar {value} mg/dL ({reading_type})")


# ---------------------------------------------------------------------------
# Reports
# ---------------------------------------------------------------------------


@cli.command("history")
@click.option(
    "--window",
    type=click.Choice(sorted(VALID_HISTORY_WINDOWS)),
    default="day",
    show_default=True,
)
@profile_option
@click.pass_obj
def history(config: MeditrackConfig, window: str, profile_ref: str | None) -> None:
    """Show doses taken in the last day, month or year."""

    async def _run() -> AppState:
        async with _dashboard(config) as dashboard:
            return await _use_profile(dashboard, profile_ref)

    state = asyncio.run(_run())
    now = utcnow()
    result = dose_history(state.dose_logs, window, now)
    click.echo(f"Doses taken by {state.active_profile.name} (last {window}):")
    if not result["logs"]:
        click.echo("  (none)")
    for log in result["logs"]:
        click.echo(f"  {_fmt(log.taken_at)}  {log.medicine_name}")
    for name, count in sorted(result["counts"].items()):
        click.echo(f"  {name}: {count}")

    upcoming = upcoming_appointment(state.appointments, now)
    if upcoming is not None:
        click.echo(f"Next appointment: Dr. {upcoming.doctor} on {_fmt(upcoming.date)}")


@cli.command("export")
@click.option(
    "--output",
    type=click.Path(dir_okay=False, writable=True, path_type=Path),
    default=None,
    help="Write the report to a file instead of stdout",
)
@profile_option
@click.pass_obj
def export(config: MeditrackConfig, output: Path | None, profile_ref: str | None) -> None:
    """Export a plain-text health report for the active profile."""

    async def _run() -> AppState:
        async with _dashboard(config) as dashboard:
            return await _use_profile(dashboard, profile_ref)

    state = asyncio.run(_run())
    text = render_report_text(build_report(state.active_profile, state.records, utcnow()))
    if output is None:
        click.echo(text, nl=False)
        return
    output.write_text(text)
    click.echo(f"Report written to {output}")
