"""Service configuration loading and validation.

Reads ``curaknot.toml`` from a config directory and returns a validated
``ServiceConfig`` dataclass.  A missing file is not an error: every field has
a default suitable for local development.

Example::

    [service]
    product_name = "CuraKnot"
    base_path = "/functions/v1/ical-feed"
    source_timeout_seconds = 10
    cors_origins = ["*"]

    [service.db]
    name = "${CURAKNOT_DB_NAME}"

    [service.logging]
    level = "INFO"
    format = "json"
"""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

CONFIG_FILENAME = "curaknot.toml"
DEFAULT_BASE_PATH = "/functions/v1/ical-feed"

# Matches ${VAR_NAME} (letters, digits, underscore).
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")
_DB_SCHEMA_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_UID_DOMAIN_PATTERN = re.compile(r"^[A-Za-z0-9.-]+$")


class ConfigError(Exception):
    """Raised when service configuration is malformed or invalid."""


@dataclass
class LoggingConfig:
    """Logging configuration from [service.logging] section."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_root: str | None = None


@dataclass
class ServiceConfig:
    """Parsed and validated service configuration."""

    product_name: str = "CuraKnot"
    uid_domain: str = "curaknot.app"
    summary_prefix: str = "CK"
    base_path: str = DEFAULT_BASE_PATH
    default_circle_name: str = "Care Circle"
    source_timeout_seconds: float = 10.0
    cors_origins: list[str] = field(default_factory=lambda: ["*"])
    host: str = "0.0.0.0"
    port: int = 8000
    db_name: str | None = None
    db_schema: str | None = None
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @property
    def calendar_filename(self) -> str:
        slug = "-".join(self.product_name.lower().split())
        return f"{slug}-calendar.ics"


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in config values.

    Walks dicts, lists, and strings.  Non-string leaf values (int, bool,
    float, None) are returned unchanged.

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
    """Replace all ``${VAR_NAME}`` occurrences in *s* with env var values.

    Collects all missing variable names and reports them in a single error.
    """
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


def _require_str(section: dict[str, Any], key: str, default: str, label: str) -> str:
    value = section.get(key, default)
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"{label} must be a non-empty string")
    return value.strip()


def _parse_base_path(raw: Any) -> str:
    if not isinstance(raw, str) or not raw.startswith("/"):
        raise ConfigError(f"Invalid service.base_path: {raw!r}. Must start with '/'.")
    base_path = raw.rstrip("/")
    if not base_path:
        raise ConfigError("service.base_path must not be the root path")
    return base_path


def _parse_cors_origins(raw: Any) -> list[str]:
    if not isinstance(raw, list) or not all(isinstance(o, str) and o.strip() for o in raw):
        raise ConfigError("service.cors_origins must be a list of non-empty strings")
    return [origin.strip() for origin in raw]


def _parse_db_schema(raw: Any) -> str | None:
    if raw is None:
        return None
    if not isinstance(raw, str) or _DB_SCHEMA_PATTERN.fullmatch(raw.strip()) is None:
        raise ConfigError(
            f"Invalid service.db.schema: {raw!r}. Expected a valid SQL identifier-style value."
        )
    return raw.strip()


def _parse_logging(section: dict[str, Any]) -> LoggingConfig:
    log_level = str(section.get("level", "INFO")).upper()
    log_format = str(section.get("format", "text")).lower()
    if log_format not in ("text", "json"):
        raise ConfigError(
            f"Invalid service.logging.format: {log_format!r}. Expected 'text' or 'json'."
        )
    return LoggingConfig(level=log_level, format=log_format, log_root=section.get("log_root"))


def parse_config(data: dict[str, Any]) -> ServiceConfig:
    """Validate an already-decoded TOML document."""
    data = resolve_env_vars(data)

    service = data.get("service", {})
    if not isinstance(service, dict):
        raise ConfigError("[service] must be a table")

    uid_domain = _require_str(service, "uid_domain", "curaknot.app", "service.uid_domain")
    if _UID_DOMAIN_PATTERN.fullmatch(uid_domain) is None:
        raise ConfigError(f"Invalid service.uid_domain: {uid_domain!r}")

    raw_timeout = service.get("source_timeout_seconds", 10.0)
    try:
        source_timeout_seconds = float(raw_timeout)
    except (TypeError, ValueError) as exc:
        raise ConfigError(
            f"Invalid service.source_timeout_seconds: {raw_timeout!r}. Must be a number."
        ) from exc
    if source_timeout_seconds <= 0:
        raise ConfigError(
            f"Invalid service.source_timeout_seconds: {raw_timeout!r}. Must be positive."
        )

    raw_port = service.get("port", 8000)
    if isinstance(raw_port, bool) or not isinstance(raw_port, int) or not 0 < raw_port < 65536:
        raise ConfigError(f"Invalid service.port: {raw_port!r}")

    db_section = service.get("db", {})
    logging_section = service.get("logging", {})

    return ServiceConfig(
        product_name=_require_str(service, "product_name", "CuraKnot", "service.product_name"),
        uid_domain=uid_domain,
        summary_prefix=_require_str(service, "summary_prefix", "CK", "service.summary_prefix"),
        base_path=_parse_base_path(service.get("base_path", DEFAULT_BASE_PATH)),
        default_circle_name=_require_str(
            service, "default_circle_name", "Care Circle", "service.default_circle_name"
        ),
        source_timeout_seconds=source_timeout_seconds,
        cors_origins=_parse_cors_origins(service.get("cors_origins", ["*"])),
        host=_require_str(service, "host", "0.0.0.0", "service.host"),
        port=raw_port,
        db_name=(str(db_section["name"]).strip() or None) if "name" in db_section else None,
        db_schema=_parse_db_schema(db_section.get("schema")),
        logging=_parse_logging(logging_section),
    )


def load_config(config_dir: Path) -> ServiceConfig:
    """Load and validate ``curaknot.toml`` from *config_dir*.

    Returns the defaults when the file does not exist.

    Raises
    ------
    ConfigError
        If the file contains invalid TOML or invalid values.
    """
    toml_path = Path(config_dir) / CONFIG_FILENAME

    if not toml_path.exists():
        return ServiceConfig()

    try:
        data = tomllib.loads(toml_path.read_bytes().decode())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {toml_path}: {exc}") from exc

    return parse_config(data)
