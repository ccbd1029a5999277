"""Persistence of the authenticated browser session (Playwright storage state)."""
from __future__ import annotations

import json
import os
import tempfile
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from taskchute_exporter.common.json_logger import JsonLogger, log_event

from .models import SessionInfo, SessionRecord

DEFAULT_TTL_SECONDS = 24 * 3600


class SessionStore:
    """Stores one session snapshot on disk; the file mtime is its creation time.

    A snapshot is valid while ``now - mtime < ttl``. Reaching the TTL exactly
    already counts as expired. Read and parse problems never raise: the
    snapshot is simply treated as absent.
    """

    def __init__(
        self,
        path: Path,
        *,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        logger: JsonLogger | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.path = Path(path)
        self.ttl_seconds = ttl_seconds
        self.logger = logger
        self._clock = clock

    def _warn(self, message: str, **fields: Any) -> None:
        if self.logger is not None:
            log_event(logger=self.logger, phase="session", status="warn", message=message, **fields)

    def _mtime(self) -> Optional[float]:
        try:
            return self.path.stat().st_mtime
        except OSError:
            return None

    def is_valid(self) -> bool:
        mtime = self._mtime()
        if mtime is None:
            return False
        return (self._clock() - mtime) < self.ttl_seconds

    def _read_snapshot(self) -> Optional[Dict[str, Any]]:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            self._warn("Session snapshot unreadable", path=str(self.path), error=str(exc))
            return None
        try:
            snapshot = json.loads(raw)
        except json.JSONDecodeError as exc:
            self._warn("Session snapshot is not valid JSON", path=str(self.path), error=str(exc))
            return None
        if not isinstance(snapshot, dict):
            self._warn("Session snapshot is not a JSON object", path=str(self.path))
            return None
        return snapshot

    def load(self) -> Optional[SessionRecord]:
        snapshot = self._read_snapshot()
        mtime = self._mtime()
        if snapshot is None or mtime is None:
            return None
        return SessionRecord(snapshot=snapshot, created_at=datetime.fromtimestamp(mtime, timezone.utc))

    def save(self, snapshot: Dict[str, Any]) -> Path:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=".storage-state-", suffix=".tmp", dir=self.path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(snapshot, handle, ensure_ascii=False, indent=2)
            os.replace(tmp_name, self.path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        if self.logger is not None:
            log_event(logger=self.logger, phase="session", message="Session snapshot saved", path=str(self.path))
        return self.path

    def clear(self) -> bool:
        try:
            self.path.unlink()
        except FileNotFoundError:
            return False
        if self.logger is not None:
            log_event(logger=self.logger, phase="session", message="Session snapshot cleared", path=str(self.path))
        return True

    def info(self) -> SessionInfo:
        mtime = self._mtime()
        if mtime is None:
            return SessionInfo(exists=False)
        remaining_seconds = self.ttl_seconds - (self._clock() - mtime)
        valid = remaining_seconds > 0
        return SessionInfo(
            exists=True,
            last_modified=datetime.fromtimestamp(mtime, timezone.utc),
            is_valid=valid,
            remaining_minutes=int(remaining_seconds // 60) if valid else 0,
        )

    def context_options(self) -> Dict[str, Any]:
        """Keyword arguments for ``browser.new_context`` that restore the session."""

        if self.is_valid() and self.load() is not None:
            return {"storage_state": str(self.path)}
        return {}
