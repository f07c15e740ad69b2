"""
Central configuration for workspace-gate.

The knobs that shape the resilience and policy pipeline are parsed by two pure
functions, ``parse_retry_config`` and ``parse_access_control_config``, from a
plain string mapping (normally ``os.environ``). ``Settings`` uses Pydantic
BaseSettings to collect those raw strings, plus logging and credential options,
from the environment and ``.env``.

Retry settings are lenient: a bad value is dropped with a warning and the
default is used. Access-control settings fail closed: a bad value raises
``ConfigError``.
"""

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .constants import (
    DEFAULT_BASE_DELAY_MS,
    DEFAULT_JITTER_FACTOR,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_MAX_DELAY_MS,
    DEFAULT_RETRIABLE_CODES,
    ENV_ALLOW_WRITES_OUTSIDE_FOLDER,
    ENV_ALLOWED_WRITE_SERVICES,
    ENV_ALLOWED_WRITE_TOOLS,
    ENV_DRIVE_FOLDER_ID,
    ENV_READ_ONLY_MODE,
    ENV_REQUEST_TIMEOUT,
    ENV_RETRY_BASE_DELAY,
    ENV_RETRY_JITTER,
    ENV_RETRY_MAX_ATTEMPTS,
    ENV_RETRY_MAX_DELAY,
    ENV_RETRY_RETRIABLE_CODES,
    ENV_TOTAL_TIMEOUT,
    MAX_HTTP_STATUS,
    MIN_HTTP_STATUS,
    WORKSPACE_SERVICES,
)
from .exceptions import ConfigError
from .policy.tool_names import is_valid_tool_name

logger = logging.getLogger(__name__)

# Resolve .env relative to this file (workspace_gate/config.py -> project root)
_ENV_FILE = Path(__file__).parent.parent / ".env"

_TRUE_VALUES = ("true", "1")
_FALSE_VALUES = ("false", "0")


def _load_env_file() -> None:
    """
    Load .env into os.environ, but only for keys that are currently unset
    or set to empty strings. Explicit non-empty shell values still win.
    """
    if not _ENV_FILE.exists():
        return
    from dotenv import dotenv_values
    for key, value in dotenv_values(_ENV_FILE).items():
        if value and not os.environ.get(key):
            os.environ[key] = value


# Run at import time so Settings() sees the correct values
_load_env_file()


# ── Config values ───────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class RetryConfig:
    """Backoff policy for outbound Google API calls. Delays are in milliseconds."""

    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    base_delay_ms: int = DEFAULT_BASE_DELAY_MS
    max_delay_ms: int = DEFAULT_MAX_DELAY_MS
    jitter_factor: float = DEFAULT_JITTER_FACTOR
    retriable_codes: frozenset[int] = DEFAULT_RETRIABLE_CODES
    request_timeout_ms: int | None = None
    total_timeout_ms: int | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "retriable_codes", frozenset(self.retriable_codes))
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay_ms < 0:
            raise ValueError("base_delay_ms must not be negative")
        if self.max_delay_ms < self.base_delay_ms:
            raise ValueError("max_delay_ms must be >= base_delay_ms")
        if not 0.0 <= self.jitter_factor <= 1.0:
            raise ValueError("jitter_factor must be between 0 and 1")
        for code in self.retriable_codes:
            if not MIN_HTTP_STATUS <= code <= MAX_HTTP_STATUS:
                raise ValueError(f"retriable code out of range: {code}")
        for name in ("request_timeout_ms", "total_timeout_ms"):
            value = getattr(self, name)
            if value is not None and value <= 0:
                raise ValueError(f"{name} must be positive")

    def to_dict(self) -> dict:
        return {
            "max_attempts": self.max_attempts,
            "base_delay_ms": self.base_delay_ms,
            "max_delay_ms": self.max_delay_ms,
            "jitter_factor": self.jitter_factor,
            "retriable_codes": sorted(self.retriable_codes),
            "request_timeout_ms": self.request_timeout_ms,
            "total_timeout_ms": self.total_timeout_ms,
        }


@dataclass(frozen=True)
class AccessControlConfig:
    """
    Write restrictions. Read-only mode is on unless explicitly disabled.

    An allowlist of ``None`` means that dimension is unrestricted; an empty
    allowlist is stored as ``None``.
    """

    read_only_mode: bool = True
    allowed_write_services: tuple[str, ...] | None = None
    allowed_write_tools: tuple[str, ...] | None = None
    folder_id: str | None = None
    allow_writes_outside_folder: bool = False

    def __post_init__(self) -> None:
        for name in ("allowed_write_services", "allowed_write_tools"):
            value = getattr(self, name)
            if value is not None:
                cleaned = tuple(v.strip() for v in value if v and v.strip())
                object.__setattr__(self, name, cleaned or None)
        if self.folder_id is not None and not self.folder_id.strip():
            object.__setattr__(self, "folder_id", None)

    @property
    def folder_restricted(self) -> bool:
        return self.folder_id is not None and not self.allow_writes_outside_folder


# ── Retry parsing (lenient) ─────────────────────────────────────────────────────


def _raw(env: Mapping[str, str], name: str) -> str | None:
    value = env.get(name)
    if value is None or not value.strip():
        return None
    return value.strip()


def _drop(name: str, raw: str, problem: str, default) -> None:
    logger.warning("Ignoring %s=%r (%s); using default %r", name, raw, problem, default)


def _parse_int(env: Mapping[str, str], name: str, default, minimum: int):
    raw = _raw(env, name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        _drop(name, raw, "not an integer", default)
        return default
    if value < minimum:
        _drop(name, raw, f"must be >= {minimum}", default)
        return default
    return value


def _parse_jitter(env: Mapping[str, str]) -> float:
    raw = _raw(env, ENV_RETRY_JITTER)
    if raw is None:
        return DEFAULT_JITTER_FACTOR
    try:
        value = float(raw)
    except ValueError:
        _drop(ENV_RETRY_JITTER, raw, "not a number", DEFAULT_JITTER_FACTOR)
        return DEFAULT_JITTER_FACTOR
    if not 0.0 <= value <= 1.0:
        _drop(ENV_RETRY_JITTER, raw, "must be between 0 and 1", DEFAULT_JITTER_FACTOR)
        return DEFAULT_JITTER_FACTOR
    return value


def _parse_retriable_codes(env: Mapping[str, str]) -> frozenset[int]:
    raw = _raw(env, ENV_RETRY_RETRIABLE_CODES)
    if raw is None:
        return DEFAULT_RETRIABLE_CODES

    codes: set[int] = set()
    for entry in raw.split(","):
        entry = entry.strip()
        if not entry:
            continue
        try:
            code = int(entry)
        except ValueError:
            logger.warning("Ignoring retriable code %r in %s: not an integer",
                           entry, ENV_RETRY_RETRIABLE_CODES)
            continue
        if not MIN_HTTP_STATUS <= code <= MAX_HTTP_STATUS:
            logger.warning("Ignoring retriable code %d in %s: outside %d-%d",
                           code, ENV_RETRY_RETRIABLE_CODES, MIN_HTTP_STATUS, MAX_HTTP_STATUS)
            continue
        codes.add(code)

    if not codes:
        _drop(ENV_RETRY_RETRIABLE_CODES, raw, "no valid codes", sorted(DEFAULT_RETRIABLE_CODES))
        return DEFAULT_RETRIABLE_CODES
    return frozenset(codes)


def parse_retry_config(env: Mapping[str, str]) -> RetryConfig:
    """
    Build a ``RetryConfig`` from ``GOOGLE_RETRY_*`` values. Never raises.

    Each field is parsed on its own; anything malformed or out of range is
    replaced by its default and reported with a warning.
    """
    max_attempts = _parse_int(env, ENV_RETRY_MAX_ATTEMPTS, DEFAULT_MAX_ATTEMPTS, 1)
    base_delay = _parse_int(env, ENV_RETRY_BASE_DELAY, DEFAULT_BASE_DELAY_MS, 0)
    max_delay = _parse_int(env, ENV_RETRY_MAX_DELAY, DEFAULT_MAX_DELAY_MS, 0)

    if max_delay < base_delay:
        raw = _raw(env, ENV_RETRY_MAX_DELAY)
        if raw is not None:
            _drop(ENV_RETRY_MAX_DELAY, raw, f"below base delay {base_delay}", DEFAULT_MAX_DELAY_MS)
        max_delay = max(DEFAULT_MAX_DELAY_MS, base_delay)

    return RetryConfig(
        max_attempts=max_attempts,
        base_delay_ms=base_delay,
        max_delay_ms=max_delay,
        jitter_factor=_parse_jitter(env),
        retriable_codes=_parse_retriable_codes(env),
        request_timeout_ms=_parse_int(env, ENV_REQUEST_TIMEOUT, None, 1),
        total_timeout_ms=_parse_int(env, ENV_TOTAL_TIMEOUT, None, 1),
    )


# ── Access-control parsing (strict) ─────────────────────────────────────────────


def _parse_bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = _raw(env, name)
    if raw is None:
        return default
    lowered = raw.lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ConfigError(
        f"{name} must be 'true', 'false', '1', or '0', got: {raw}",
        context={"variable": name, "value": raw},
    )


def _parse_list(env: Mapping[str, str], name: str) -> list[str] | None:
    raw = _raw(env, name)
    if raw is None:
        return None
    entries = [entry.strip() for entry in raw.split(",")]
    if not any(entries):
        return None
    if not all(entries):
        raise ConfigError(f"{name} contains empty value", context={"variable": name, "value": raw})
    return entries


def parse_access_control_config(env: Mapping[str, str]) -> AccessControlConfig:
    """
    Build an ``AccessControlConfig`` from ``GOOGLE_*`` access variables.

    Raises ConfigError for anything it cannot interpret, so a typo never
    silently widens what the server may write.
    """
    services = _parse_list(env, ENV_ALLOWED_WRITE_SERVICES)
    if services is not None:
        invalid = [s for s in services if s.lower() not in WORKSPACE_SERVICES]
        if invalid:
            raise ConfigError(
                f"{ENV_ALLOWED_WRITE_SERVICES} contains invalid services: {', '.join(invalid)}. "
                f"Valid services are: {', '.join(WORKSPACE_SERVICES)}",
                context={"invalid": invalid},
            )

    tools = _parse_list(env, ENV_ALLOWED_WRITE_TOOLS)
    if tools is not None:
        invalid = [t for t in tools if not is_valid_tool_name(t)]
        if invalid:
            raise ConfigError(
                f"{ENV_ALLOWED_WRITE_TOOLS} contains invalid tool names: {', '.join(invalid)}. "
                "Tool names must follow valid patterns: "
                "'google-workspace__[service-name]__[tool-name]', "
                "'google-workspace__[service-name]-[tool-name]', "
                "or '[service-name]-[tool-name]'",
                context={"invalid": invalid},
            )

    return AccessControlConfig(
        read_only_mode=_parse_bool(env, ENV_READ_ONLY_MODE, True),
        allowed_write_services=tuple(services) if services else None,
        allowed_write_tools=tuple(tools) if tools else None,
        folder_id=_raw(env, ENV_DRIVE_FOLDER_ID),
        allow_writes_outside_folder=_parse_bool(env, ENV_ALLOW_WRITES_OUTSIDE_FOLDER, False),
    )


# ── Settings ────────────────────────────────────────────────────────────────────


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=str(_ENV_FILE),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Logging
    log_level: str = "INFO"
    logs_dir: str = ""  # empty = console only
    json_logs: bool = False

    # Credentials
    google_service_account_key_path: str = ""
    google_token_file: str = ""

    # ── Retry (raw strings, see parse_retry_config) ─────────────────────────────
    google_retry_max_attempts: str = ""
    google_retry_base_delay: str = ""
    google_retry_max_delay: str = ""
    google_retry_jitter: str = ""
    google_retry_retriable_codes: str = ""
    google_request_timeout: str = ""
    google_total_timeout: str = ""

    # ── Access control (raw strings, see parse_access_control_config) ───────────
    google_drive_folder_id: str = ""
    google_allow_writes_outside_folder: str = ""
    google_allowed_write_services: str = ""
    google_allowed_write_tools: str = ""
    google_read_only_mode: str = ""

    @field_validator("log_level")
    @classmethod
    def normalise_log_level(cls, value: str) -> str:
        level = value.strip().upper()
        if level not in logging.getLevelNamesMapping():
            raise ValueError(f"unknown log level: {value}")
        return level

    def as_env(self) -> dict[str, str]:
        """The GOOGLE_* knobs keyed by their environment variable names."""
        return {
            name.upper(): value
            for name, value in self.model_dump().items()
            if name.startswith("google_") and isinstance(value, str) and value
        }

    @property
    def retry_config(self) -> RetryConfig:
        return parse_retry_config(self.as_env())

    @property
    def access_control_config(self) -> AccessControlConfig:
        return parse_access_control_config(self.as_env())


def get_settings() -> "Settings":
    """Return the application settings singleton."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


_settings: Settings | None = None
