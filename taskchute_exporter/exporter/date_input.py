"""Filling the export date range through an ordered chain of verified strategies.

The date widget on the export page does not reliably accept a plain fill, so
each field is attempted with progressively more invasive strategies. Every
strategy re-reads the field afterwards; only a read-back that matches the
target counts as success.
"""
from __future__ import annotations

import re
from typing import Any, List, Optional, Sequence

from taskchute_exporter.common.json_logger import JsonLogger, log_event

from .combinators import first_success
from .driver import CapabilityDriver
from .models import DateFillResult
from .page_selectors import DATE_INPUT_VALUE_SCAN

_SEPARATORS = re.compile(r"[/\-.\s]")

SET_VALUE_SCRIPT = """
(el, value) => {
  if (el.readOnly) el.readOnly = false;
  const setter = Object.getOwnPropertyDescriptor(window.HTMLInputElement.prototype, 'value');
  if (setter && setter.set) { setter.set.call(el, value); } else { el.value = value; }
  el.dispatchEvent(new Event('input', { bubbles: true }));
  el.dispatchEvent(new Event('change', { bubbles: true }));
  el.dispatchEvent(new Event('blur', { bubbles: true }));
}
"""


def values_match(actual: str | None, target: str) -> bool:
    if not actual:
        return False
    return _SEPARATORS.sub("", actual) == _SEPARATORS.sub("", target)


def looks_like_date_input(placeholder: str | None, input_type: str | None, value: str | None) -> bool:
    placeholder = placeholder or ""
    if any(token in placeholder for token in ("YYYY", "MM", "DD", "/")):
        return True
    if (input_type or "").lower() == "date":
        return True
    return "/" in (value or "")


# ── Strategies ───────────────────────────────────────────────────────────────


class DateFieldStrategy:
    name = "base"

    async def apply(self, driver: CapabilityDriver, handle: Any, target: str) -> None:
        raise NotImplementedError


class NativeFillStrategy(DateFieldStrategy):
    name = "native_fill"

    async def apply(self, driver: CapabilityDriver, handle: Any, target: str) -> None:
        await driver.fill(handle, target)


class KeyboardTypeStrategy(DateFieldStrategy):
    name = "keyboard_type"

    def __init__(self, key_delay_ms: int = 50) -> None:
        self.key_delay_ms = key_delay_ms

    async def apply(self, driver: CapabilityDriver, handle: Any, target: str) -> None:
        await driver.focus(handle)
        await driver.press("Control+a", handle)
        await driver.type_text(handle, target, delay_ms=self.key_delay_ms)


class ClearAndTypeStrategy(DateFieldStrategy):
    name = "clear_and_type"

    def __init__(self, key_delay_ms: int = 50) -> None:
        self.key_delay_ms = key_delay_ms

    async def apply(self, driver: CapabilityDriver, handle: Any, target: str) -> None:
        await driver.focus(handle)
        await driver.fill(handle, "")
        await driver.type_text(handle, target, delay_ms=self.key_delay_ms)


class ScriptValueStrategy(DateFieldStrategy):
    name = "script_value"

    async def apply(self, driver: CapabilityDriver, handle: Any, target: str) -> None:
        await driver.evaluate(handle, SET_VALUE_SCRIPT, target)


def default_strategies() -> List[DateFieldStrategy]:
    return [NativeFillStrategy(), KeyboardTypeStrategy(), ClearAndTypeStrategy(), ScriptValueStrategy()]


# ── Engine ───────────────────────────────────────────────────────────────────


class DateRangeInputEngine:
    def __init__(
        self,
        driver: CapabilityDriver,
        *,
        logger: JsonLogger,
        verify_delay_ms: int = 500,
        strategies: Sequence[DateFieldStrategy] | None = None,
    ) -> None:
        self.driver = driver
        self.logger = logger
        self.verify_delay_ms = verify_delay_ms
        self.strategies = list(strategies) if strategies is not None else default_strategies()

    async def find_fields(self) -> List[Any]:
        """Return candidate date inputs in document order."""

        fields: List[Any] = []
        for handle in await self.driver.query_all(DATE_INPUT_VALUE_SCAN):
            try:
                placeholder = await self.driver.get_attribute(handle, "placeholder")
                input_type = await self.driver.get_attribute(handle, "type")
                value = await self.driver.read_value(handle)
            except Exception:
                continue
            if looks_like_date_input(placeholder, input_type, value):
                fields.append(handle)
        return fields

    async def _attempt(self, strategy: DateFieldStrategy, handle: Any, target: str) -> bool:
        await strategy.apply(self.driver, handle, target)
        if self.verify_delay_ms > 0:
            await self.driver.sleep(self.verify_delay_ms)
        actual = await self.driver.read_value(handle)
        if values_match(actual, target):
            return True
        log_event(
            logger=self.logger,
            phase="date_input",
            status="warn",
            message="Date strategy did not verify",
            strategy=strategy.name,
            target=target,
            actual=actual,
        )
        return False

    def _log_strategy_error(self, strategy: DateFieldStrategy, exc: Exception) -> None:
        log_event(
            logger=self.logger,
            phase="date_input",
            status="warn",
            message="Date strategy raised",
            strategy=strategy.name,
            error=str(exc),
        )

    async def set_field(self, handle: Any, target: str) -> bool:
        winner: Optional[DateFieldStrategy] = await first_success(
            self.strategies,
            lambda strategy: self._attempt(strategy, handle, target),
            on_error=self._log_strategy_error,
        )
        if winner is None:
            log_event(
                logger=self.logger,
                phase="date_input",
                status="warn",
                message="No date strategy verified; leaving field as-is",
                target=target,
                strategies=[strategy.name for strategy in self.strategies],
            )
            return False
        log_event(
            logger=self.logger,
            phase="date_input",
            message="Date field set",
            strategy=winner.name,
            target=target,
        )
        return True

    async def fill_range(self, start: Any, end: Any, start_value: str, end_value: str) -> DateFillResult:
        start_ok = await self.set_field(start, start_value)
        end_ok = await self.set_field(end, end_value)
        return DateFillResult(start_ok=start_ok, end_ok=end_ok)
