"""Structured JSON event logging for the export pipeline and CLI.

Every event is one JSON object per line carrying ``run_id``, ``ts``, ``phase``,
``status`` and ``message`` plus free-form fields. Loggers created with
``bind`` share one sink with their parent, so a run keeps a single output
stream, optional mirror file and aggregator no matter how many component
loggers it hands out.
"""
from __future__ import annotations

import json
import sys
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, Optional, TextIO

__all__ = ["JsonLogger", "get_logger", "log_event", "timed_stage", "new_run_id"]


def new_run_id() -> str:
    return datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S%f")


class _EventSink:
    """Output shared by a root logger and all of its bound children."""

    def __init__(self, stream: TextIO, log_file_path: str | None) -> None:
        self.stream = stream
        self.log_file_path = log_file_path
        self.file_handle: Optional[TextIO] = (
            open(log_file_path, "a", encoding="utf-8") if log_file_path else None
        )
        self.aggregator: Any = None
        self.closed = False

    def write(self, line: str) -> None:
        self.stream.write(line + "\n")
        self.stream.flush()
        if self.file_handle is not None:
            self.file_handle.write(line + "\n")
            self.file_handle.flush()

    def close(self) -> None:
        self.closed = True
        if self.file_handle is not None:
            self.file_handle.close()
            self.file_handle = None


def _resolve_log_path(raw_path: str | None) -> str | None:
    if not raw_path:
        return None
    path = Path(raw_path).expanduser().resolve()
    path.parent.mkdir(parents=True, exist_ok=True)
    return str(path)


class JsonLogger:
    """Emit newline-delimited JSON events for one export run."""

    def __init__(
        self,
        run_id: Optional[str] = None,
        stream: Optional[TextIO] = None,
        *,
        log_file_path: str | None = None,
    ) -> None:
        self.run_id = run_id or new_run_id()
        self.context: Dict[str, Any] = {"run_id": self.run_id}
        self._sink = _EventSink(stream or sys.stdout, _resolve_log_path(log_file_path))
        self._is_root = True

    @property
    def log_file_path(self) -> str | None:
        return self._sink.log_file_path

    @property
    def closed(self) -> bool:
        return self._sink.closed

    def bind(self, **context: Any) -> "JsonLogger":
        """Return a child logger that adds ``context`` to every event."""

        child = object.__new__(JsonLogger)
        child.run_id = self.run_id
        child.context = {**self.context, **context}
        child._sink = self._sink
        child._is_root = False
        return child

    def attach_aggregator(self, aggregator: Any) -> None:
        self._sink.aggregator = aggregator

    def info(self, *, phase: str, status: str = "ok", message: str = "", **fields: Any) -> None:
        if self._sink.closed:
            return
        event = {**self.context, "phase": phase, "status": status, "message": message, **fields}
        if self._sink.aggregator is not None:
            self._sink.aggregator.record_log_event(event)
        event.setdefault("ts", datetime.now(timezone.utc).isoformat())
        self._sink.write(json.dumps(event, default=str, ensure_ascii=False))

    def warn(self, *, phase: str, message: str, **fields: Any) -> None:
        self.info(phase=phase, status="warn", message=message, **fields)

    def error(self, *, phase: str, message: str, **fields: Any) -> None:
        self.info(phase=phase, status="error", message=message, **fields)

    def close(self) -> None:
        # Children share the root's sink; only the root may close it.
        if self._is_root and not self._sink.closed:
            self._sink.close()


def get_logger(run_id: Optional[str] = None, *, log_file_path: str | None = None) -> JsonLogger:
    return JsonLogger(run_id=run_id, log_file_path=log_file_path)


def log_event(*, logger: JsonLogger, phase: str, status: str = "ok", message: str = "", **extras: Any) -> None:
    logger.info(phase=phase, status=status, message=message, **extras)


@contextmanager
def timed_stage(*, logger: JsonLogger, stage: str, message: str = "") -> Iterator[Dict[str, Any]]:
    """Log one ``phase="stage"`` event with ``duration_ms`` when the block exits.

    The yielded dict collects extra fields for the closing event. An exception
    is logged with ``status="error"`` and re-raised.
    """

    fields: Dict[str, Any] = {}
    start = time.perf_counter()
    try:
        yield fields
    except Exception as exc:
        logger.error(
            phase="stage",
            message=f"{message or stage} failed: {exc}",
            stage=stage,
            duration_ms=int((time.perf_counter() - start) * 1000),
            error_type=type(exc).__name__,
            **fields,
        )
        raise
    logger.info(
        phase="stage",
        message=message or stage,
        stage=stage,
        duration_ms=int((time.perf_counter() - start) * 1000),
        **fields,
    )
