from __future__ import annotations

from collections import defaultdict, deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, MutableMapping

import sqlalchemy as sa

from taskchute_exporter.common.db import get_engine, session_scope
from taskchute_exporter.common.json_logger import JsonLogger, log_event

from .db_tables import export_run_summaries, metadata
from .models import ExportOutcome, ExportRequest

PIPELINE_NAME = "taskchute_csv_export"
PHASE_ORDER = ("session", "state", "stage", "readiness", "date_input", "export_trigger", "capture", "orchestrator")
STAGE_ORDER = ("navigation", "date_input", "capture", "parse")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _format_ts(value: datetime | None) -> str:
    if not value:
        return ""
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _format_duration(seconds: int) -> str:
    seconds = max(0, seconds)
    hh = seconds // 3600
    mm = (seconds % 3600) // 60
    ss = seconds % 60
    return f"{hh:02d}:{mm:02d}:{ss:02d}"


def _normalize_status(raw: str | None) -> str:
    normalized = (raw or "ok").lower()
    if normalized in {"warn", "warning"}:
        return "warning"
    if normalized == "error":
        return "error"
    return "ok"


@dataclass
class RunSummary:
    """Collects per-phase status counters from log events plus the final outcome."""

    run_id: str
    run_env: str
    pipeline_name: str = PIPELINE_NAME
    started_at: datetime = field(default_factory=_utc_now)
    request: ExportRequest | None = None
    outcome: ExportOutcome | None = None
    phase_counters: MutableMapping[str, Dict[str, int]] = field(
        default_factory=lambda: defaultdict(lambda: {"ok": 0, "warning": 0, "error": 0})
    )
    stage_durations_ms: Dict[str, int] = field(default_factory=dict)
    channel: str | None = None
    issues: deque[str] = field(default_factory=lambda: deque(maxlen=5))

    def record_log_event(self, payload: Mapping[str, Any]) -> None:
        phase = payload.get("phase")
        if not phase:
            return
        status = _normalize_status(payload.get("status"))
        self.phase_counters[phase][status] += 1
        if status in {"warning", "error"}:
            detail = payload.get("message") or phase
            if detail not in self.issues:
                self.issues.append(detail)
        if phase == "capture" and payload.get("channel") and status == "ok":
            self.channel = payload.get("channel")
        if phase == "stage" and payload.get("stage") and payload.get("duration_ms") is not None:
            self.stage_durations_ms[payload["stage"]] = int(payload["duration_ms"])

    def record_outcome(self, outcome: ExportOutcome) -> None:
        self.outcome = outcome

    def overall_status(self) -> str:
        if self.outcome is not None and not self.outcome.success:
            return "error"
        all_counts = [dict(counts) for counts in self.phase_counters.values()]
        if any(counts.get("error") for counts in all_counts):
            return "error"
        if any(counts.get("warning") for counts in all_counts):
            return "warning"
        return "ok"

    def _phases_json(self) -> Dict[str, Dict[str, int]]:
        return {phase: dict(counts) for phase, counts in self.phase_counters.items()}

    def _metrics_json(self) -> Dict[str, Any]:
        outcome = self.outcome
        return {
            "channel": self.channel,
            "stage_durations_ms": dict(self.stage_durations_ms),
            "records": len(outcome.records) if outcome else 0,
            "summary": outcome.summary.as_dict() if outcome and outcome.summary else None,
            "warnings": list(outcome.warnings) if outcome else [],
            "diagnostics": [str(path) for path in outcome.diagnostics] if outcome else [],
            "issues": list(self.issues),
        }

    def build_summary_text(self, *, finished_at: datetime) -> str:
        duration = _format_duration(int((finished_at - self.started_at).total_seconds()))
        lines = [
            f"Pipeline: {self.pipeline_name}",
            f"Run ID: {self.run_id}",
            f"Env: {self.run_env}",
        ]
        if self.request is not None:
            lines.append(f"Range: {self.request.start_date} - {self.request.end_date}")
        lines.extend(
            [
                f"Started: {_format_ts(self.started_at)}  Finished: {_format_ts(finished_at)}  Duration: {duration}",
                f"Status: {self.overall_status()}",
                "",
                "Phases:",
            ]
        )
        for phase in PHASE_ORDER:
            if phase in self.phase_counters:
                counts = self.phase_counters[phase]
                lines.append(
                    f"- {phase}: ok={counts['ok']} warning={counts['warning']} error={counts['error']}"
                )
        if self.stage_durations_ms:
            lines.append("")
            lines.append("Stage timings:")
            for stage in STAGE_ORDER:
                if stage in self.stage_durations_ms:
                    lines.append(f"- {stage}: {self.stage_durations_ms[stage]}ms")
        lines.append("")
        lines.append("Issues:")
        if self.issues:
            lines.extend(f"- {issue}" for issue in self.issues)
        else:
            lines.append("- None.")
        return "\n".join(lines)

    def build_record(self, *, finished_at: datetime) -> Dict[str, Any]:
        outcome = self.outcome
        return {
            "pipeline_name": self.pipeline_name,
            "run_id": self.run_id,
            "run_env": self.run_env,
            "started_at": self.started_at,
            "finished_at": finished_at,
            "total_time_taken": _format_duration(int((finished_at - self.started_at).total_seconds())),
            "start_date": self.request.start_date if self.request else None,
            "end_date": self.request.end_date if self.request else None,
            "overall_status": self.overall_status(),
            "failure_reason": outcome.failure_reason.value if outcome and outcome.failure_reason else None,
            "record_count": len(outcome.records) if outcome else 0,
            "raw_payload_path": str(outcome.raw_payload_path) if outcome and outcome.raw_payload_path else None,
            "summary_text": self.build_summary_text(finished_at=finished_at),
            "phases_json": self._phases_json(),
            "metrics_json": self._metrics_json(),
        }


async def ensure_tables(database_url: str) -> None:
    engine = get_engine(database_url)
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)


async def insert_run_summary(database_url: str, record: Mapping[str, Any]) -> None:
    async with session_scope(database_url) as session:
        await session.execute(sa.insert(export_run_summaries).values(**record))
        await session.commit()


async def fetch_summary_for_run(database_url: str, run_id: str) -> Mapping[str, Any] | None:
    async with session_scope(database_url) as session:
        result = await session.execute(
            sa.select(export_run_summaries).where(export_run_summaries.c.run_id == run_id).limit(1)
        )
        return result.mappings().first()


async def persist_run_summary(
    *, summary: RunSummary, database_url: str | None, logger: JsonLogger
) -> bool:
    finished_at = _utc_now()
    record = summary.build_record(finished_at=finished_at)
    if not database_url:
        log_event(
            logger=logger,
            phase="run_summary",
            status="warn",
            message="Skipping run summary persistence because database_url is missing",
            run_id=summary.run_id,
        )
        return False

    try:
        await ensure_tables(database_url)
        await insert_run_summary(database_url, record)
    except Exception as exc:
        log_event(
            logger=logger,
            phase="run_summary",
            status="error",
            message="Failed to persist run summary",
            run_id=summary.run_id,
            error=str(exc),
        )
        return False

    log_event(
        logger=logger,
        phase="run_summary",
        message="Run summary inserted",
        run_id=summary.run_id,
        overall_status=record["overall_status"],
    )
    return True
