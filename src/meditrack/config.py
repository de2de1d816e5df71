"""Configuration loading and validation.

Reads ``meditrack.toml``, resolves ``${VAR}`` references against the
environment, and returns a validated :class:`MeditrackConfig`.

Example::

    [meditrack]
    deployment_id = "default-health-dashboard"

    [meditrack.auth]
    token = "${MEDITRACK_AUTH_TOKEN}"

    [meditrack.db]
    name = "meditrack"

    [meditrack.storage]
    blob_dir = "data/blobs"

    [meditrack.logging]
    level = "INFO"
    format = "text"
"""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

DEFAULT_DEPLOYMENT_ID = "default-health-dashboard"
TOKEN_ENV_VAR = "MEDITRACK_AUTH_TOKEN"

# Pattern matching ${VAR_NAME}: alphanumeric and underscore variable names.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")
_SEGMENT_PATTERN = re.compile(r"^[A-Za-z0-9_.-]+$")


class ConfigError(Exception):
    """Raised when configuration is missing, malformed, or invalid."""


@dataclass
class LoggingConfig:
    """Logging configuration from [meditrack.logging]."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_root: str | None = None


@dataclass
class MeditrackConfig:
    """Parsed and validated configuration."""

    deployment_id: str = DEFAULT_DEPLOYMENT_ID
    auth_token: str | None = None
    db_name: str = "meditrack"
    blob_dir: str = "data/blobs"
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in config values.

    Raises
    ------
    ConfigError
        If a referenced environment variable is not set.
    """
    if isinstance(value, dict):
        return {k: resolve_env_vars(v) for k, v in value.items()}

    if isinstance(value, list):
        return [resolve_env_vars(item) for item in value]

    if isinstance(value, str):
        return _resolve_string(value)

    return value


def _resolve_string(s: str) -> str:
    missing: list[str] = []

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        env_value = os.environ.get(var_name)
        if env_value is None:
            missing.append(var_name)
            return match.group(0)
        return env_value

    result = _ENV_VAR_PATTERN.sub(_replace, s)

    if missing:
        vars_str = ", ".join(missing)
        raise ConfigError(
            f"Unresolved environment variable(s) in config value: {vars_str} (original: {s!r})"
        )

    return result


def _parse_logging(section: dict) -> LoggingConfig:
    level = str(section.get("level", "INFO")).upper()
    fmt = str(section.get("format", "text")).lower()
    if fmt not in ("text", "json"):
        raise ConfigError(f"Invalid meditrack.logging.format: {fmt!r}. Expected 'text' or 'json'.")
    return LoggingConfig(level=level, format=fmt, log_root=section.get("log_root"))


def load_config(config_path: Path | None = None) -> MeditrackConfig:
    """Load configuration from *config_path*, or defaults when it is None.

    The auth token falls back to the ``MEDITRACK_AUTH_TOKEN`` environment
    variable when the file does not set one.

    Raises
    ------
    ConfigError
        If the file is missing, contains invalid TOML, or has invalid values.
    """
    data: dict[str, Any] = {}
    if config_path is not None:
        if not config_path.exists():
            raise ConfigError(f"Config file not found: {config_path}")
        try:
            data = tomllib.loads(config_path.read_text())
        except tomllib.TOMLDecodeError as exc:
            raise ConfigError(f"Invalid TOML in {config_path}: {exc}") from exc
        data = resolve_env_vars(data)

    section = data.get("meditrack", {})
    if not isinstance(section, dict):
        raise ConfigError("[meditrack] must be a table")

    deployment_id = str(section.get("deployment_id", DEFAULT_DEPLOYMENT_ID)).strip()
    if not _SEGMENT_PATTERN.fullmatch(deployment_id):
        raise ConfigError(
            f"Invalid meditrack.deployment_id: {deployment_id!r}. "
            "Expected letters, digits, '_', '-' or '.'."
        )

    auth_token = section.get("auth", {}).get("token") or os.environ.get(TOKEN_ENV_VAR) or None

    db_name = str(section.get("db", {}).get("name", "meditrack")).strip()
    if not db_name:
        raise ConfigError("meditrack.db.name must be a non-empty string")

    blob_dir = str(section.get("storage", {}).get("blob_dir", "data/blobs"))

    return MeditrackConfig(
        deployment_id=deployment_id,
        auth_token=auth_token,
        db_name=db_name,
        blob_dir=blob_dir,
        logging=_parse_logging(section.get("logging", {})),
    )
