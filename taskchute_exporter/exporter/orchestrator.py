"""Export pipeline state machine.

``ExportOrchestrator.run`` walks a single export through session check,
navigation, date input, trigger, capture and parsing. Components raise
``ExportPipelineError`` subclasses for blocking conditions; the orchestrator
turns every failure into a classified ``ExportOutcome`` so callers never see a
raw exception.
"""
from __future__ import annotations

import contextlib
from enum import Enum
from pathlib import Path
from typing import Any, AsyncContextManager, Callable, Dict, List, Optional

from taskchute_exporter.common.date_utils import timestamp_slug
from taskchute_exporter.common.json_logger import JsonLogger, log_event, timed_stage
from taskchute_exporter.config import Config

from .capture import CaptureRace, build_default_channels
from .csv_parser import CsvRecordParser
from .date_input import DateRangeInputEngine
from .driver import CapabilityDriver
from .errors import (
    ExportPipelineError,
    FailureReason,
    NavigationFailedError,
    SessionInvalidError,
)
from .export_trigger import ExportTrigger
from .models import ExportOutcome, ExportRequest, RawPayload
from .readiness import ReadinessWaiter
from .session_store import SessionStore

DriverFactory = Callable[[Dict[str, Any]], AsyncContextManager[CapabilityDriver]]


class PipelineState(str, Enum):
    IDLE = "Idle"
    SESSION_CHECK = "SessionCheck"
    AUTHENTICATED = "Authenticated"
    NEEDS_LOGIN = "NeedsLogin"
    NAVIGATING = "Navigating"
    INPUTTING_DATES = "InputtingDates"
    TRIGGERING = "Triggering"
    CAPTURING = "Capturing"
    PARSING = "Parsing"
    DONE = "Done"
    FAILED = "Failed"


STATE_FAILURE_REASONS: Dict[PipelineState, FailureReason] = {
    PipelineState.IDLE: FailureReason.NAVIGATION_FAILED,
    PipelineState.SESSION_CHECK: FailureReason.SESSION_INVALID,
    PipelineState.NEEDS_LOGIN: FailureReason.SESSION_INVALID,
    PipelineState.AUTHENTICATED: FailureReason.NAVIGATION_FAILED,
    PipelineState.NAVIGATING: FailureReason.NAVIGATION_FAILED,
    PipelineState.INPUTTING_DATES: FailureReason.DATE_INPUT_UNVERIFIED,
    PipelineState.TRIGGERING: FailureReason.EXPORT_CONTROL_UNAVAILABLE,
    PipelineState.CAPTURING: FailureReason.CAPTURE_TIMEOUT,
    PipelineState.PARSING: FailureReason.PARSE_FAILURE,
}

DIAGNOSTIC_REASONS = {FailureReason.CAPTURE_TIMEOUT, FailureReason.PARSE_FAILURE}


def export_file_name(slug: str) -> str:
    return f"taskchute-export-{slug}.csv"


class ExportOrchestrator:
    def __init__(
        self,
        config: Config,
        *,
        logger: JsonLogger,
        session_store: SessionStore,
        driver_factory: DriverFactory,
        parser: CsvRecordParser | None = None,
        slug_factory: Callable[[], str] = timestamp_slug,
    ) -> None:
        self.config = config
        self.logger = logger
        self.session_store = session_store
        self.driver_factory = driver_factory
        self.parser = parser or CsvRecordParser()
        self._slug_factory = slug_factory
        self.state = PipelineState.IDLE
        self.history: List[PipelineState] = [PipelineState.IDLE]
        self.warnings: List[str] = []

    # ── State bookkeeping ────────────────────────────────────────────────────

    def _transition(self, state: PipelineState) -> None:
        self.state = state
        self.history.append(state)
        log_event(logger=self.logger, phase="state", message=f"Entered {state.value}", state=state.value)

    def _warn(self, reason: FailureReason, detail: str) -> None:
        self.warnings.append(f"{reason.value}: {detail}")
        log_event(logger=self.logger, phase="orchestrator", status="warn", message=detail, reason=reason.value)

    def _fail(
        self,
        reason: FailureReason,
        detail: str,
        *,
        raw_payload_path: Optional[Path] = None,
        diagnostics: Optional[List[Path]] = None,
    ) -> ExportOutcome:
        failed_in = self.state
        self._transition(PipelineState.FAILED)
        log_event(
            logger=self.logger,
            phase="orchestrator",
            status="error",
            message="Export failed",
            reason=reason.value,
            detail=detail,
            failed_in=failed_in.value,
        )
        return ExportOutcome.failed(
            reason,
            detail,
            raw_payload_path=raw_payload_path,
            warnings=self.warnings,
            diagnostics=diagnostics,
        )

    def _is_login_url(self, url: str) -> bool:
        lowered = (url or "").lower()
        return any(marker.lower() in lowered for marker in self.config.login_url_markers)

    # ── Artifacts ────────────────────────────────────────────────────────────

    def _save_raw_payload(self, payload: RawPayload) -> Path:
        output_dir = Path(self.config.output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)
        target = output_dir / export_file_name(self._slug_factory())
        target.write_text(payload.text, encoding="utf-8")
        log_event(
            logger=self.logger,
            phase="capture",
            message="Raw export saved",
            path=str(target),
            channel=payload.channel,
        )
        return target

    async def _save_diagnostics(self, driver: CapabilityDriver, label: str) -> List[Path]:
        diagnostics_dir = Path(self.config.output_dir) / "diagnostics"
        slug = f"{self._slug_factory()}-{label}"
        saved: List[Path] = []
        try:
            diagnostics_dir.mkdir(parents=True, exist_ok=True)
            screenshot_path = diagnostics_dir / f"{slug}.png"
            await driver.screenshot(screenshot_path)
            saved.append(screenshot_path)
            html_path = diagnostics_dir / f"{slug}.html"
            html_path.write_text(await driver.content(), encoding="utf-8")
            saved.append(html_path)
        except Exception as exc:
            log_event(
                logger=self.logger,
                phase="diagnostics",
                status="warn",
                message="Unable to capture diagnostics",
                error=str(exc),
            )
        if saved:
            log_event(logger=self.logger, phase="diagnostics", message="Diagnostics saved", paths=saved)
        return saved

    # ── Pipeline ─────────────────────────────────────────────────────────────

    async def run(self, request: ExportRequest) -> ExportOutcome:
        self.warnings = []
        log_event(
            logger=self.logger,
            phase="orchestrator",
            message="Export started",
            start_date=request.start_date,
            end_date=request.end_date,
        )
        try:
            return await self._run(request)
        except ExportPipelineError as exc:
            return self._fail(exc.reason, str(exc))
        except Exception as exc:
            reason = STATE_FAILURE_REASONS.get(self.state, FailureReason.NAVIGATION_FAILED)
            return self._fail(reason, f"Unexpected error in {self.state.value}: {exc}")

    async def _run(self, request: ExportRequest) -> ExportOutcome:
        self._transition(PipelineState.SESSION_CHECK)
        if not self.session_store.is_valid() or self.session_store.load() is None:
            self._transition(PipelineState.NEEDS_LOGIN)
            return self._fail(
                FailureReason.SESSION_INVALID,
                "No valid stored session; run the login command first",
            )
        self._transition(PipelineState.AUTHENTICATED)

        async with self.driver_factory(self.session_store.context_options()) as driver:
            return await self._run_with_driver(driver, request)

    async def _navigate(self, driver: CapabilityDriver) -> None:
        self._transition(PipelineState.NAVIGATING)
        try:
            await driver.navigate(self.config.export_url, timeout_ms=self.config.nav_timeout_ms)
        except Exception as exc:
            raise NavigationFailedError(f"Navigation to export page failed: {exc}") from exc

        current_url = driver.current_url()
        if self._is_login_url(current_url):
            self.session_store.clear()
            raise SessionInvalidError(f"Redirected to login page ({current_url}); stored session cleared")

        waiter = ReadinessWaiter(
            logger=self.logger.bind(component="readiness"),
            placeholder_timeout_ms=self.config.skeleton_wait_ms,
            settle_delay_ms=self.config.settle_delay_ms,
            load_state_timeout_ms=self.config.nav_timeout_ms,
        )
        await waiter.wait(driver)

    async def _input_dates(self, driver: CapabilityDriver, request: ExportRequest) -> bool:
        """Fill the date range; problems become warnings. Returns True when both dates verified."""

        self._transition(PipelineState.INPUTTING_DATES)
        engine = DateRangeInputEngine(
            driver,
            logger=self.logger.bind(component="date_input"),
            verify_delay_ms=self.config.date_input_wait_ms,
        )
        try:
            fields = await engine.find_fields()
            if len(fields) < 2:
                self._warn(
                    FailureReason.DATE_INPUT_UNVERIFIED,
                    f"Expected two date inputs, found {len(fields)}; exporting the page default range",
                )
                return False
            result = await engine.fill_range(fields[0], fields[1], request.start_display, request.end_display)
        except Exception as exc:
            self._warn(FailureReason.DATE_INPUT_UNVERIFIED, f"Date input raised: {exc}")
            return False
        if not result.start_ok:
            self._warn(FailureReason.DATE_INPUT_UNVERIFIED, f"Start date {request.start_display} not verified")
        if not result.end_ok:
            self._warn(FailureReason.DATE_INPUT_UNVERIFIED, f"End date {request.end_display} not verified")
        return result.verified

    async def _run_with_driver(self, driver: CapabilityDriver, request: ExportRequest) -> ExportOutcome:
        with timed_stage(logger=self.logger, stage="navigation", message="Export page ready"):
            await self._navigate(driver)
        with timed_stage(logger=self.logger, stage="date_input", message="Date range input finished") as stage:
            stage["verified"] = await self._input_dates(driver, request)

        self._transition(PipelineState.TRIGGERING)
        trigger = ExportTrigger(
            driver,
            logger=self.logger.bind(component="export_trigger"),
            ready_timeout_ms=self.config.control_ready_timeout_ms,
        )
        # Capture deadlines start at arming, so the control must be ready first.
        control = await trigger.prepare()

        primary, fallback = build_default_channels(
            driver,
            staging_dir=Path(self.config.output_dir) / "staging",
            download_dir=Path(self.config.download_dir),
            capture_timeout_ms=self.config.capture_timeout_ms,
            directory_poll_timeout_ms=self.config.directory_poll_timeout_ms,
            directory_poll_interval_ms=self.config.directory_poll_interval_ms,
        )
        race = CaptureRace(primary=primary, fallback=fallback, logger=self.logger.bind(component="capture"))

        async def _click() -> None:
            await trigger.click(control)
            self._transition(PipelineState.CAPTURING)

        try:
            with timed_stage(logger=self.logger, stage="capture", message="Export captured") as stage:
                payload = await race.capture(_click)
                stage["channel"] = payload.channel
        except ExportPipelineError as exc:
            diagnostics: List[Path] = []
            if exc.reason in DIAGNOSTIC_REASONS:
                diagnostics = await self._save_diagnostics(driver, "capture")
            return self._fail(exc.reason, str(exc), diagnostics=diagnostics)

        raw_path = self._save_raw_payload(payload)

        self._transition(PipelineState.PARSING)
        try:
            with timed_stage(logger=self.logger, stage="parse", message="Export parsed") as stage:
                records = self.parser.parse(payload.text)
                stage["records"] = len(records)
        except Exception as exc:
            diagnostics = await self._save_diagnostics(driver, "parse")
            return self._fail(
                FailureReason.PARSE_FAILURE,
                f"Unable to parse export: {exc}",
                raw_payload_path=raw_path,
                diagnostics=diagnostics,
            )

        summary = self.parser.summarize(records)
        self._transition(PipelineState.DONE)
        log_event(
            logger=self.logger,
            phase="orchestrator",
            message="Export completed",
            records=summary.total,
            path=str(raw_path),
            channel=payload.channel,
        )
        with contextlib.suppress(OSError):
            if payload.source_path and payload.source_path.parent == Path(self.config.output_dir) / "staging":
                payload.source_path.unlink()
        return ExportOutcome.succeeded(
            records,
            raw_payload_path=raw_path,
            summary=summary,
            warnings=self.warnings,
        )


async def run_export(
    config: Config,
    request: ExportRequest,
    *,
    logger: JsonLogger,
    driver_factory: DriverFactory | None = None,
) -> ExportOutcome:
    """Run one export with a Playwright browser unless another driver factory is given."""

    if driver_factory is None:
        from .browser import playwright_driver_factory

        driver_factory = playwright_driver_factory(config, logger=logger)
    orchestrator = ExportOrchestrator(
        config,
        logger=logger,
        session_store=SessionStore(
            config.storage_state_path, ttl_seconds=config.session_ttl_seconds, logger=logger
        ),
        driver_factory=driver_factory,
    )
    return await orchestrator.run(request)
