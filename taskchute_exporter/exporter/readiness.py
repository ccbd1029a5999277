from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Sequence

from taskchute_exporter.common.json_logger import JsonLogger, log_event

from .driver import CapabilityDriver
from .page_selectors import SKELETON_SELECTORS


@dataclass
class ReadinessReport:
    placeholders_cleared: bool = True
    load_state_reached: bool = True
    settle_delay_ms: int = 0
    elapsed_ms: int = 0
    lingering_selectors: list[str] = field(default_factory=list)

    @property
    def fully_ready(self) -> bool:
        return self.placeholders_cleared and self.load_state_reached


class ReadinessWaiter:
    """Best-effort wait until the SPA has stopped rendering placeholders.

    Each step is bounded and a timeout only downgrades the report; the waiter
    never raises so the pipeline can still try the page.
    """

    def __init__(
        self,
        *,
        logger: JsonLogger,
        placeholder_timeout_ms: int,
        settle_delay_ms: int,
        load_state_timeout_ms: int | None = None,
        extra_selectors: Sequence[str] = (),
    ) -> None:
        self.logger = logger
        self.placeholder_timeout_ms = placeholder_timeout_ms
        self.settle_delay_ms = settle_delay_ms
        self.load_state_timeout_ms = load_state_timeout_ms or placeholder_timeout_ms
        self.selectors = tuple(SKELETON_SELECTORS) + tuple(extra_selectors)

    async def wait(self, driver: CapabilityDriver) -> ReadinessReport:
        started = time.perf_counter()
        report = ReadinessReport(settle_delay_ms=self.settle_delay_ms)

        for selector in self.selectors:
            try:
                cleared = await driver.wait_for_absence(selector, timeout_ms=self.placeholder_timeout_ms)
            except Exception as exc:
                log_event(
                    logger=self.logger,
                    phase="readiness",
                    status="warn",
                    message="Placeholder check failed",
                    selector=selector,
                    error=str(exc),
                )
                cleared = False
            if not cleared:
                report.placeholders_cleared = False
                report.lingering_selectors.append(selector)

        try:
            report.load_state_reached = await driver.wait_for_load_state(
                "load", timeout_ms=self.load_state_timeout_ms
            )
        except Exception as exc:
            report.load_state_reached = False
            log_event(
                logger=self.logger,
                phase="readiness",
                status="warn",
                message="Load state wait failed",
                error=str(exc),
            )

        if self.settle_delay_ms > 0:
            await driver.sleep(self.settle_delay_ms)

        report.elapsed_ms = int((time.perf_counter() - started) * 1000)
        if report.fully_ready:
            log_event(
                logger=self.logger,
                phase="readiness",
                message="Page ready",
                elapsed_ms=report.elapsed_ms,
            )
        else:
            log_event(
                logger=self.logger,
                phase="readiness",
                status="warn",
                message="Page readiness incomplete; continuing",
                lingering_selectors=report.lingering_selectors,
                load_state_reached=report.load_state_reached,
                elapsed_ms=report.elapsed_ms,
            )
        return report
