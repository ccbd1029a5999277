from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import date, datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional
from zoneinfo import ZoneInfo

from taskchute_exporter.common.date_utils import normalize_ymd, today_ymd

from .errors import FailureReason


# ── Session ──────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class SessionRecord:
    snapshot: Dict[str, Any]
    created_at: datetime


@dataclass(frozen=True)
class SessionInfo:
    exists: bool
    last_modified: Optional[datetime] = None
    is_valid: bool = False
    remaining_minutes: Optional[int] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "exists": self.exists,
            "last_modified": self.last_modified.isoformat() if self.last_modified else None,
            "is_valid": self.is_valid,
            "remaining_minutes": self.remaining_minutes,
        }


# ── Request ──────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class ExportRequest:
    start_date: str
    end_date: str

    @classmethod
    def from_inputs(
        cls,
        start_date: str | date | None = None,
        end_date: str | date | None = None,
        *,
        tz: ZoneInfo | None = None,
    ) -> ExportRequest:
        """Normalise both dates to ``YYYYMMDD``; missing values default to today."""

        today = today_ymd(tz)
        start = normalize_ymd(start_date) if start_date else today
        end = normalize_ymd(end_date) if end_date else today
        return cls(start_date=start, end_date=end)

    @staticmethod
    def display_value(ymd: str) -> str:
        """Render ``YYYYMMDD`` the way the export form shows it (``YYYY/MM/DD``)."""

        return f"{ymd[:4]}/{ymd[4:6]}/{ymd[6:8]}"

    @property
    def start_display(self) -> str:
        return self.display_value(self.start_date)

    @property
    def end_display(self) -> str:
        return self.display_value(self.end_date)


# ── Capture ──────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class RawPayload:
    text: str
    suggested_name: str
    channel: str
    source_path: Optional[Path] = None


# ── Records ──────────────────────────────────────────────────────────────────


class TaskStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


@dataclass(frozen=True)
class TaskRecord:
    id: str
    title: str
    status: TaskStatus
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    estimated_duration: Optional[int] = None
    actual_duration: Optional[int] = None
    category: Optional[str] = None
    description: Optional[str] = None
    timeline_date: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["status"] = self.status.value
        return payload


@dataclass(frozen=True)
class TaskSummary:
    total: int = 0
    completed: int = 0
    in_progress: int = 0
    pending: int = 0
    total_duration_minutes: int = 0

    def as_dict(self) -> Dict[str, int]:
        return asdict(self)


@dataclass(frozen=True)
class DateFillResult:
    start_ok: bool
    end_ok: bool

    @property
    def verified(self) -> bool:
        return self.start_ok and self.end_ok


# ── Outcome ──────────────────────────────────────────────────────────────────


@dataclass
class ExportOutcome:
    success: bool
    records: List[TaskRecord] = field(default_factory=list)
    raw_payload_path: Optional[Path] = None
    failure_reason: Optional[FailureReason] = None
    failure_detail: Optional[str] = None
    warnings: List[str] = field(default_factory=list)
    summary: Optional[TaskSummary] = None
    diagnostics: List[Path] = field(default_factory=list)

    @classmethod
    def succeeded(
        cls,
        records: List[TaskRecord],
        *,
        raw_payload_path: Optional[Path],
        summary: TaskSummary,
        warnings: Optional[List[str]] = None,
    ) -> ExportOutcome:
        return cls(
            success=True,
            records=list(records),
            raw_payload_path=raw_payload_path,
            summary=summary,
            warnings=list(warnings or []),
        )

    @classmethod
    def failed(
        cls,
        reason: FailureReason,
        detail: str,
        *,
        raw_payload_path: Optional[Path] = None,
        warnings: Optional[List[str]] = None,
        diagnostics: Optional[List[Path]] = None,
    ) -> ExportOutcome:
        return cls(
            success=False,
            raw_payload_path=raw_payload_path,
            failure_reason=reason,
            failure_detail=detail,
            warnings=list(warnings or []),
            diagnostics=list(diagnostics or []),
        )

    def as_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "record_count": len(self.records),
            "raw_payload_path": str(self.raw_payload_path) if self.raw_payload_path else None,
            "failure_reason": self.failure_reason.value if self.failure_reason else None,
            "failure_detail": self.failure_detail,
            "warnings": list(self.warnings),
            "summary": self.summary.as_dict() if self.summary else None,
            "diagnostics": [str(path) for path in self.diagnostics],
        }
