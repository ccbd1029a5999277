"""Capture of the exported CSV through competing channels.

The export click can surface its data as a network response, a browser
download event, or only as a file landing in the user's download directory.
The primary channels are armed before the click and raced; the directory poll
is a fallback scanned only after both primary channels came back empty.
"""
from __future__ import annotations

import asyncio
import re
import time
from pathlib import Path
from typing import Awaitable, Callable, List, Mapping, Optional, Sequence
from urllib.parse import unquote, urlparse

from taskchute_exporter.common.json_logger import JsonLogger, log_event

from .combinators import first_concurrent_success
from .driver import CapabilityDriver
from .errors import CaptureTimeoutError
from .models import RawPayload

NETWORK_RESPONSE = "network-response"
DOWNLOAD_EVENT = "download-event"
DIRECTORY_POLL = "directory-poll"

DIRECTORY_SLACK_SECONDS = 5.0
DEFAULT_SUGGESTED_NAME = "taskchute-export.csv"

_UUID_NAME = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE)
_DISPOSITION_FILENAME = re.compile(r"filename\*?=(?:UTF-8'')?\"?([^\";]+)\"?", re.IGNORECASE)


def looks_tabular(text: str | None) -> bool:
    if not text or "," not in text:
        return False
    head = text.lstrip("\ufeff \t\r\n")[:200].lower()
    return not (head.startswith("<!doctype") or head.startswith("<html"))


def is_export_response(url: str, headers: Mapping[str, str]) -> bool:
    lowered = url.lower()
    if "csv" in lowered or "export" in lowered:
        return True
    content_type = ""
    for key, value in headers.items():
        if key.lower() == "content-type":
            content_type = value.lower()
            break
    return "text/csv" in content_type


def is_candidate_download_name(name: str) -> bool:
    return name.lower().endswith(".csv") or bool(_UUID_NAME.match(name))


def _suggested_name(url: str, headers: Mapping[str, str]) -> str:
    for key, value in headers.items():
        if key.lower() == "content-disposition":
            match = _DISPOSITION_FILENAME.search(value)
            if match:
                return unquote(match.group(1).strip())
    tail = Path(urlparse(url).path).name
    return tail if tail.lower().endswith(".csv") else DEFAULT_SUGGESTED_NAME


# ── Channels ─────────────────────────────────────────────────────────────────


class CaptureChannel:
    name = "base"

    def arm(self, started_at: float) -> None:
        """Record the race start; called before the export control is clicked."""

    async def wait(self) -> Optional[RawPayload]:
        raise NotImplementedError


class NetworkResponseChannel(CaptureChannel):
    name = NETWORK_RESPONSE

    def __init__(self, driver: CapabilityDriver, *, timeout_ms: int) -> None:
        self.driver = driver
        self.timeout_ms = timeout_ms

    async def wait(self) -> Optional[RawPayload]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.timeout_ms / 1000
        while True:
            remaining_ms = int((deadline - loop.time()) * 1000)
            if remaining_ms <= 0:
                return None
            response = await self.driver.wait_for_response(is_export_response, timeout_ms=remaining_ms)
            if response is None:
                return None
            if looks_tabular(response.body):
                return RawPayload(
                    text=response.body,
                    suggested_name=_suggested_name(response.url, response.headers),
                    channel=self.name,
                )


class DownloadEventChannel(CaptureChannel):
    name = DOWNLOAD_EVENT

    def __init__(self, driver: CapabilityDriver, *, staging_dir: Path, timeout_ms: int) -> None:
        self.driver = driver
        self.staging_dir = staging_dir
        self.timeout_ms = timeout_ms

    async def wait(self) -> Optional[RawPayload]:
        download = await self.driver.wait_for_download(self.staging_dir, timeout_ms=self.timeout_ms)
        if download is None:
            return None
        text = download.path.read_text(encoding="utf-8", errors="replace")
        if not looks_tabular(text):
            return None
        return RawPayload(
            text=text,
            suggested_name=download.suggested_filename,
            channel=self.name,
            source_path=download.path,
        )


class DirectoryPollChannel(CaptureChannel):
    name = DIRECTORY_POLL

    def __init__(
        self,
        driver: CapabilityDriver,
        *,
        directory: Path,
        timeout_ms: int,
        interval_ms: int = 500,
        slack_seconds: float = DIRECTORY_SLACK_SECONDS,
    ) -> None:
        self.driver = driver
        self.directory = directory
        self.timeout_ms = timeout_ms
        self.interval_ms = max(1, interval_ms)
        self.slack_seconds = slack_seconds
        self.started_at: float | None = None

    def arm(self, started_at: float) -> None:
        self.started_at = started_at

    async def scan(self) -> Optional[RawPayload]:
        threshold = (self.started_at if self.started_at is not None else time.time()) - self.slack_seconds
        entries = await self.driver.list_directory(self.directory)
        candidates = [
            entry
            for entry in entries
            if entry.modified_at >= threshold and is_candidate_download_name(entry.path.name)
        ]
        for entry in sorted(candidates, key=lambda item: item.modified_at, reverse=True):
            try:
                text = entry.path.read_text(encoding="utf-8", errors="replace")
            except OSError:
                continue
            if looks_tabular(text):
                return RawPayload(
                    text=text,
                    suggested_name=entry.path.name,
                    channel=self.name,
                    source_path=entry.path,
                )
        return None

    async def wait(self) -> Optional[RawPayload]:
        polls = max(1, self.timeout_ms // self.interval_ms)
        for attempt in range(polls):
            payload = await self.scan()
            if payload is not None:
                return payload
            if attempt + 1 < polls:
                await self.driver.sleep(self.interval_ms)
        return None


# ── Race ─────────────────────────────────────────────────────────────────────


class CaptureRace:
    def __init__(
        self,
        *,
        primary: Sequence[CaptureChannel],
        fallback: Sequence[CaptureChannel] = (),
        logger: JsonLogger,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.primary = list(primary)
        self.fallback = list(fallback)
        self.logger = logger
        self._clock = clock

    def _log_channel_error(self, name: str, exc: BaseException) -> None:
        log_event(
            logger=self.logger,
            phase="capture",
            status="warn",
            message="Capture channel failed",
            channel=name,
            error=str(exc),
        )

    async def capture(self, trigger: Callable[[], Awaitable[object]]) -> RawPayload:
        started_at = self._clock()
        for channel in (*self.primary, *self.fallback):
            channel.arm(started_at)

        tasks = [(channel.name, asyncio.create_task(channel.wait())) for channel in self.primary]
        # Let every listener attach before the click fires.
        await asyncio.sleep(0)

        try:
            await trigger()
        except BaseException:
            for _, task in tasks:
                task.cancel()
            raise

        winner = await first_concurrent_success(tasks, on_error=self._log_channel_error)
        if winner is not None:
            name, payload = winner
            log_event(
                logger=self.logger,
                phase="capture",
                message="Export captured",
                channel=name,
                suggested_name=payload.suggested_name,
                chars=len(payload.text),
            )
            return payload

        log_event(
            logger=self.logger,
            phase="capture",
            status="warn",
            message="Primary capture channels returned nothing; scanning fallbacks",
            channels=[channel.name for channel in self.primary],
        )
        for channel in self.fallback:
            try:
                payload = await channel.wait()
            except Exception as exc:
                self._log_channel_error(channel.name, exc)
                continue
            if payload is not None:
                log_event(
                    logger=self.logger,
                    phase="capture",
                    message="Export captured",
                    channel=channel.name,
                    suggested_name=payload.suggested_name,
                    chars=len(payload.text),
                )
                return payload

        raise CaptureTimeoutError(
            "No capture channel produced the export",
            channels=[channel.name for channel in (*self.primary, *self.fallback)],
        )


def build_default_channels(
    driver: CapabilityDriver,
    *,
    staging_dir: Path,
    download_dir: Path,
    capture_timeout_ms: int,
    directory_poll_timeout_ms: int,
    directory_poll_interval_ms: int,
) -> tuple[List[CaptureChannel], List[CaptureChannel]]:
    primary: List[CaptureChannel] = [
        NetworkResponseChannel(driver, timeout_ms=capture_timeout_ms),
        DownloadEventChannel(driver, staging_dir=staging_dir, timeout_ms=capture_timeout_ms),
    ]
    fallback: List[CaptureChannel] = [
        DirectoryPollChannel(
            driver,
            directory=download_dir,
            timeout_ms=directory_poll_timeout_ms,
            interval_ms=directory_poll_interval_ms,
        )
    ]
    return primary, fallback
