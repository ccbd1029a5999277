"""Parsing of TaskChute CSV exports into ``TaskRecord`` objects."""
from __future__ import annotations

import csv
import io
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Optional, Sequence

from .errors import ParseFailureError, SchemaMismatchError
from .models import TaskRecord, TaskStatus, TaskSummary

BOM = "\ufeff"

NATIVE_HEADERS_JA = (
    "タイムライン日付",
    "タスクID",
    "タスク名",
    "プロジェクトID",
    "プロジェクト名",
    "モードID",
    "モード名",
    "タグID",
    "タグ名",
    "ルーチンID",
    "ルーチン名",
    "見積時間",
    "実績時間",
    "開始日時",
    "終了日時",
    "リンク",
    "アイコン",
    "カラー",
    "お気に入り",
)
NATIVE_WIDTH = len(NATIVE_HEADERS_JA)
COMPACT_MAX_WIDTH = 7

DESCRIPTION_LABELS = (
    ("category", "プロジェクト"),
    ("mode", "モード"),
    ("tag", "タグ"),
    ("routine", "ルーチン"),
)


@dataclass(frozen=True)
class ColumnLayout:
    name: str
    id: int
    title: int
    start: int
    end: int
    estimated: int
    actual: int
    category: Optional[int] = None
    timeline_date: Optional[int] = None
    mode: Optional[int] = None
    tag: Optional[int] = None
    routine: Optional[int] = None


NATIVE_LAYOUT = ColumnLayout(
    name="native",
    timeline_date=0,
    id=1,
    title=2,
    category=4,
    mode=6,
    tag=8,
    routine=10,
    estimated=11,
    actual=12,
    start=13,
    end=14,
)

COMPACT_LAYOUT = ColumnLayout(
    name="compact",
    id=0,
    title=1,
    start=2,
    end=3,
    estimated=4,
    actual=5,
    category=6,
)


def parse_duration(value: str | None) -> Optional[int]:
    """Convert ``H:MM:SS`` or ``H:MM`` to whole minutes, rounding seconds half-up."""

    if not value:
        return None
    parts = value.strip().split(":")
    if len(parts) not in (2, 3):
        return None
    try:
        numbers = [int(part) for part in parts]
    except ValueError:
        return None
    if any(number < 0 for number in numbers):
        return None
    hours, minutes = numbers[0], numbers[1]
    seconds = numbers[2] if len(numbers) == 3 else 0
    return hours * 60 + minutes + (seconds + 30) // 60


def infer_status(start_time: Optional[str], end_time: Optional[str]) -> TaskStatus:
    if end_time:
        return TaskStatus.COMPLETED
    if start_time:
        return TaskStatus.IN_PROGRESS
    return TaskStatus.PENDING


def _cell(row: Sequence[str], index: Optional[int]) -> Optional[str]:
    if index is None or index >= len(row):
        return None
    value = row[index].strip()
    return value or None


def _is_blank(row: Sequence[str]) -> bool:
    return not any(cell.strip() for cell in row)


class CsvRecordParser:
    """Stateless parser for TaskChute CSV exports.

    The header row decides the layout: a 19-column header is the native
    TaskChute export, a header of at most seven columns is the compact
    layout, and anything else is rejected with ``SchemaMismatchError``.
    """

    def select_layout(self, header: Sequence[str]) -> ColumnLayout:
        width = len(header)
        if width == NATIVE_WIDTH:
            return NATIVE_LAYOUT
        if 0 < width <= COMPACT_MAX_WIDTH:
            return COMPACT_LAYOUT
        raise SchemaMismatchError(
            f"Unrecognised CSV header with {width} columns",
            width=width,
            header=list(header)[:NATIVE_WIDTH + 1],
        )

    def _build_description(self, row: Sequence[str], layout: ColumnLayout) -> Optional[str]:
        if layout.name != NATIVE_LAYOUT.name:
            return None
        parts = []
        for attr, label in DESCRIPTION_LABELS:
            value = _cell(row, getattr(layout, attr))
            if value:
                parts.append(f"{label}: {value}")
        return " | ".join(parts) or None

    def _to_record(self, row: Sequence[str], layout: ColumnLayout) -> Optional[TaskRecord]:
        title = _cell(row, layout.title)
        if not title:
            return None
        start_time = _cell(row, layout.start)
        end_time = _cell(row, layout.end)
        return TaskRecord(
            id=_cell(row, layout.id) or "",
            title=title,
            status=infer_status(start_time, end_time),
            start_time=start_time,
            end_time=end_time,
            estimated_duration=parse_duration(_cell(row, layout.estimated)),
            actual_duration=parse_duration(_cell(row, layout.actual)),
            category=_cell(row, layout.category),
            description=self._build_description(row, layout),
            timeline_date=_cell(row, layout.timeline_date),
        )

    def parse(self, raw_text: str) -> List[TaskRecord]:
        text = raw_text[1:] if raw_text.startswith(BOM) else raw_text
        try:
            rows = [row for row in csv.reader(io.StringIO(text)) if row and not _is_blank(row)]
        except csv.Error as exc:
            raise ParseFailureError(f"Malformed CSV: {exc}") from exc
        if not rows:
            return []

        header, *data_rows = rows
        layout = self.select_layout(header)
        width = len(header)

        records: List[TaskRecord] = []
        for line_number, row in enumerate(data_rows, start=2):
            if len(row) > width:
                raise SchemaMismatchError(
                    f"Row {line_number} has {len(row)} columns; header has {width}",
                    row=line_number,
                    width=len(row),
                    expected=width,
                )
            padded = list(row) + [""] * (width - len(row))
            record = self._to_record(padded, layout)
            if record is not None:
                records.append(record)
        return records

    def parse_file(self, path: Path | str) -> List[TaskRecord]:
        try:
            text = Path(path).read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            raise ParseFailureError(f"Unable to read {path}: {exc}", path=str(path)) from exc
        return self.parse(text)

    @staticmethod
    def summarize(records: Iterable[TaskRecord]) -> TaskSummary:
        total = completed = in_progress = pending = minutes = 0
        for record in records:
            total += 1
            if record.status is TaskStatus.COMPLETED:
                completed += 1
            elif record.status is TaskStatus.IN_PROGRESS:
                in_progress += 1
            else:
                pending += 1
            minutes += record.actual_duration or 0
        return TaskSummary(
            total=total,
            completed=completed,
            in_progress=in_progress,
            pending=pending,
            total_duration_minutes=minutes,
        )

    @staticmethod
    def filter_by_date(records: Iterable[TaskRecord], day: str) -> List[TaskRecord]:
        """Keep records whose start time begins with ``day`` (``YYYY-MM-DD``)."""

        return [record for record in records if record.start_time and record.start_time.startswith(day)]
