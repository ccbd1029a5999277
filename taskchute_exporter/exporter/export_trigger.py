from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional, Sequence, Tuple

from taskchute_exporter.common.json_logger import JsonLogger, log_event

from .driver import CapabilityDriver
from .errors import ExportControlUnavailableError
from .page_selectors import DOWNLOAD_BUTTON_SELECTORS, NEUTRAL_CLICK_POSITION

SCRIPT_CLICK = "el => el.click()"
POLL_INTERVAL_MS = 250


@dataclass(frozen=True)
class ExportControl:
    selector: str
    handle: Any


class ExportTrigger:
    """Locate the export control, clear overlays and click it.

    ``prepare`` does the slow part (locating and waiting for the control to be
    enabled) so capture listeners can be armed just before ``click``. A
    rejected pointer click falls back to a script-level ``element.click()``;
    forced clicks are never used.
    """

    def __init__(
        self,
        driver: CapabilityDriver,
        *,
        logger: JsonLogger,
        ready_timeout_ms: int,
        selectors: Sequence[str] = DOWNLOAD_BUTTON_SELECTORS,
    ) -> None:
        self.driver = driver
        self.logger = logger
        self.ready_timeout_ms = ready_timeout_ms
        self.selectors = tuple(selectors)

    @property
    def _max_polls(self) -> int:
        return max(1, self.ready_timeout_ms // POLL_INTERVAL_MS)

    async def _locate(self) -> Optional[Tuple[str, Any]]:
        for attempt in range(self._max_polls):
            for selector in self.selectors:
                try:
                    handles = await self.driver.query_all(selector)
                except Exception:
                    continue
                if handles:
                    return selector, handles[0]
            if attempt + 1 < self._max_polls:
                await self.driver.sleep(POLL_INTERVAL_MS)
        return None

    async def dismiss_overlays(self) -> None:
        try:
            await self.driver.press("Escape")
            await self.driver.click_at(*NEUTRAL_CLICK_POSITION)
        except Exception as exc:
            log_event(
                logger=self.logger,
                phase="export_trigger",
                status="warn",
                message="Overlay dismissal failed",
                error=str(exc),
            )

    async def _wait_enabled(self, handle: Any) -> bool:
        for attempt in range(self._max_polls):
            try:
                if await self.driver.is_enabled(handle):
                    return True
            except Exception:
                pass
            if attempt + 1 < self._max_polls:
                await self.driver.sleep(POLL_INTERVAL_MS)
        return False

    async def prepare(self) -> ExportControl:
        """Find the export control, clear overlays and wait until it is enabled."""

        located = await self._locate()
        if located is None:
            raise ExportControlUnavailableError(
                "Export control not found", selectors=list(self.selectors)
            )
        selector, handle = located

        await self.dismiss_overlays()

        if not await self._wait_enabled(handle):
            raise ExportControlUnavailableError(
                "Export control never became enabled",
                selector=selector,
                timeout_ms=self.ready_timeout_ms,
            )
        log_event(logger=self.logger, phase="export_trigger", message="Export control ready", selector=selector)
        return ExportControl(selector=selector, handle=handle)

    async def click(self, control: ExportControl) -> str:
        """Click a prepared control; returns the invocation path that worked."""

        selector, handle = control.selector, control.handle
        try:
            await self.driver.click(handle, timeout_ms=self.ready_timeout_ms)
            log_event(logger=self.logger, phase="export_trigger", message="Export control clicked", selector=selector)
            return "click"
        except Exception as exc:
            log_event(
                logger=self.logger,
                phase="export_trigger",
                status="warn",
                message="Pointer click rejected; using script click",
                selector=selector,
                error=str(exc),
            )
            click_error = str(exc)

        try:
            await self.driver.evaluate(handle, SCRIPT_CLICK)
        except Exception as exc:
            raise ExportControlUnavailableError(
                "Export control could not be invoked",
                selector=selector,
                click_error=click_error,
                script_error=str(exc),
            ) from exc
        log_event(logger=self.logger, phase="export_trigger", message="Export control invoked by script", selector=selector)
        return "script_click"

    async def invoke(self) -> str:
        return await self.click(await self.prepare())
