"""
CONFIG.PY — SINGLE SOURCE OF TRUTH

This module is the ONLY place allowed to read environment variables.

Values come from the process environment, optionally pre-populated from a
``.env`` file in the working directory (OS env overrides the file). Every key
has a default; invalid values fail early with ``ConfigError``.

The configuration is built ONCE by the entrypoint and handed to each component
explicitly:

    from taskchute_exporter.config import load_config

    config = load_config()

Do not call os.getenv from any other module.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Mapping
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

ENV_PREFIX = "TASKCHUTE_"

TRUE_VALUES = {"1", "true", "yes", "on"}
FALSE_VALUES = {"0", "false", "no", "off"}
SUPPORTED_BROWSERS = ("chromium", "firefox", "webkit")
MIN_TIMEOUT_MS = 1_000

DEFAULT_BASE_URL = "https://taskchute.cloud"
DEFAULT_EXPORT_PATH = "/export/csv-export"
DEFAULT_LOGIN_URL_MARKERS = ("/login", "/signin", "accounts.google.com")


class ConfigError(RuntimeError):
    """Raised when configuration cannot be loaded."""


def _home() -> Path:
    return Path(os.getenv("HOME") or ".")


def _parse_bool(value: str, *, key: str) -> bool:
    normalized = value.strip().lower()
    if normalized in TRUE_VALUES:
        return True
    if normalized in FALSE_VALUES:
        return False
    message = f"Config key {key} must be a boolean string; got {value!r}"
    logger.error(message)
    raise ConfigError(message)


def _parse_int(value: str, *, key: str) -> int:
    try:
        return int(value.strip())
    except (TypeError, ValueError):
        message = f"Config key {key} must be an integer; got {value!r}"
        logger.error(message)
        raise ConfigError(message)


def _parse_timeout(value: str, *, key: str) -> int:
    parsed = _parse_int(value, key=key)
    if parsed < MIN_TIMEOUT_MS:
        message = f"Config key {key} must be at least {MIN_TIMEOUT_MS}ms; got {parsed}"
        logger.error(message)
        raise ConfigError(message)
    return parsed


def _parse_list(value: str) -> tuple[str, ...]:
    if not value:
        return ()
    tokens = re.split(r"[,\n]", value)
    return tuple(token.strip() for token in tokens if token and token.strip())


def _clean_url(value: str, *, key: str) -> str:
    stripped = value.strip().rstrip("/")
    if not stripped:
        message = f"Config key {key} cannot be blank"
        logger.error(message)
        raise ConfigError(message)
    return stripped


def _parse_browser(value: str, *, key: str) -> str:
    normalized = value.strip().lower()
    if normalized not in SUPPORTED_BROWSERS:
        message = f"Config key {key} must be one of: {', '.join(SUPPORTED_BROWSERS)}; got {value!r}"
        logger.error(message)
        raise ConfigError(message)
    return normalized


def _parse_timezone(value: str, *, key: str) -> str:
    name = value.strip()
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        message = f"Config key {key} must be an IANA timezone name; got {value!r}"
        logger.error(message)
        raise ConfigError(message)
    return name


@dataclass(slots=True, frozen=True)
class Config:
    base_url: str = DEFAULT_BASE_URL
    export_url: str = DEFAULT_BASE_URL + DEFAULT_EXPORT_PATH
    login_url_markers: tuple[str, ...] = DEFAULT_LOGIN_URL_MARKERS
    storage_state_path: Path = Path(".taskchute") / "storage-state.json"
    session_ttl_hours: int = 24
    output_dir: Path = Path("tmp") / "exports"
    download_dir: Path = Path("Downloads")
    headless: bool = True
    browser: str = "chromium"
    viewport_width: int = 1920
    viewport_height: int = 1080
    nav_timeout_ms: int = 30_000
    capture_timeout_ms: int = 30_000
    directory_poll_timeout_ms: int = 3_000
    directory_poll_interval_ms: int = 500
    skeleton_wait_ms: int = 10_000
    settle_delay_ms: int = 1_000
    date_input_wait_ms: int = 500
    control_ready_timeout_ms: int = 10_000
    timezone: str = "Asia/Tokyo"
    json_log_file: str = ""
    database_url: str = ""
    run_env: str = "local"

    @property
    def session_ttl_seconds(self) -> int:
        return self.session_ttl_hours * 3600

    def with_overrides(self, **changes: Any) -> Config:
        cleaned = {key: value for key, value in changes.items() if value is not None}
        return replace(self, **cleaned) if cleaned else self

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> Config:
        source = os.environ if env is None else env

        def raw(key: str) -> str | None:
            value = source.get(ENV_PREFIX + key)
            if value is None or not value.strip():
                return None
            return value

        home = _home()
        base_url = _clean_url(raw("BASE_URL") or DEFAULT_BASE_URL, key="TASKCHUTE_BASE_URL")
        export_url = _clean_url(
            raw("EXPORT_URL") or base_url + DEFAULT_EXPORT_PATH, key="TASKCHUTE_EXPORT_URL"
        )
        values: dict[str, Any] = {
            "base_url": base_url,
            "export_url": export_url,
            "storage_state_path": Path(
                raw("STORAGE_STATE_PATH") or home / ".taskchute" / "storage-state.json"
            ).expanduser(),
            "output_dir": Path(raw("OUTPUT_DIR") or Path("tmp") / "exports").expanduser(),
            "download_dir": Path(raw("DOWNLOAD_DIR") or home / "Downloads").expanduser(),
        }

        markers = raw("LOGIN_URL_MARKERS")
        if markers:
            values["login_url_markers"] = _parse_list(markers)

        ttl = raw("SESSION_TTL_HOURS")
        if ttl:
            values["session_ttl_hours"] = _parse_int(ttl, key="TASKCHUTE_SESSION_TTL_HOURS")
            if values["session_ttl_hours"] <= 0:
                message = "Config key TASKCHUTE_SESSION_TTL_HOURS must be positive"
                logger.error(message)
                raise ConfigError(message)

        headless = raw("HEADLESS")
        if headless:
            values["headless"] = _parse_bool(headless, key="TASKCHUTE_HEADLESS")

        browser = raw("BROWSER")
        if browser:
            values["browser"] = _parse_browser(browser, key="TASKCHUTE_BROWSER")

        for field_name in (
            "nav_timeout_ms",
            "capture_timeout_ms",
            "directory_poll_timeout_ms",
            "skeleton_wait_ms",
            "control_ready_timeout_ms",
        ):
            token = raw(field_name.upper())
            if token:
                values[field_name] = _parse_timeout(token, key=ENV_PREFIX + field_name.upper())

        for field_name in ("settle_delay_ms", "date_input_wait_ms", "directory_poll_interval_ms"):
            token = raw(field_name.upper())
            if token:
                values[field_name] = _parse_int(token, key=ENV_PREFIX + field_name.upper())

        timezone = raw("TIMEZONE")
        if timezone:
            values["timezone"] = _parse_timezone(timezone, key="TASKCHUTE_TIMEZONE")

        for field_name in ("json_log_file", "database_url", "run_env"):
            token = raw(field_name.upper())
            if token:
                values[field_name] = token.strip()

        return cls(**values)


def load_config(env_file: str | Path | None = None) -> Config:
    """Load ``.env`` (if present) and build the run configuration."""

    load_dotenv(env_file or Path.cwd() / ".env")
    if os.getenv("DEBUG_CONFIG") == "1":
        print("[CONFIG] Loaded .env from:", env_file or Path.cwd() / ".env")
    return Config.from_env()
