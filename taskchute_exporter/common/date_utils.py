"""Timezone-aware helpers for export date handling."""
from __future__ import annotations

import re
from datetime import date, datetime
from zoneinfo import ZoneInfo

DEFAULT_TIMEZONE = "Asia/Tokyo"

_YMD_PATTERNS = (
    re.compile(r"^(\d{4})(\d{2})(\d{2})$"),
    re.compile(r"^(\d{4})-(\d{2})-(\d{2})$"),
    re.compile(r"^(\d{4})/(\d{2})/(\d{2})$"),
)


def get_timezone(name: str | None = None) -> ZoneInfo:
    """Return the pipeline timezone, falling back to ``DEFAULT_TIMEZONE``."""

    return ZoneInfo(name or DEFAULT_TIMEZONE)


def aware_now(tz: ZoneInfo | None = None) -> datetime:
    """Return ``datetime.now`` in the configured timezone."""

    timezone = tz or get_timezone()
    return datetime.now(timezone)


def today_ymd(tz: ZoneInfo | None = None) -> str:
    return aware_now(tz).strftime("%Y%m%d")


def normalize_ymd(value: str | date) -> str:
    """Normalise a calendar date to the 8-digit ``YYYYMMDD`` form.

    Accepts ``date`` objects and the ``YYYYMMDD``, ``YYYY-MM-DD`` and
    ``YYYY/MM/DD`` spellings. Anything else, including impossible calendar
    dates such as ``2025-02-30``, raises ``ValueError``.
    """

    if isinstance(value, datetime):
        value = value.date()
    if isinstance(value, date):
        return value.strftime("%Y%m%d")

    token = (value or "").strip()
    for pattern in _YMD_PATTERNS:
        match = pattern.match(token)
        if match is None:
            continue
        year, month, day = (int(part) for part in match.groups())
        try:
            return date(year, month, day).strftime("%Y%m%d")
        except ValueError as exc:
            raise ValueError(f"Invalid calendar date {value!r}") from exc
    raise ValueError(f"Invalid date {value!r}; expected YYYY-MM-DD or YYYYMMDD")


def timestamp_slug(moment: datetime | None = None) -> str:
    current = moment or datetime.now()
    return current.strftime("%Y%m%d_%H%M%S")
