from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict

from playwright.async_api import Browser, async_playwright

from taskchute_exporter.common.json_logger import JsonLogger, log_event
from taskchute_exporter.config import Config

from .driver import CapabilityDriver, PlaywrightDriver
from .page_selectors import SIGNED_IN_MARKER
from .session_store import SessionStore

LOGIN_POLL_MS = 1_000


async def launch_browser(*, playwright: Any, config: Config, logger: JsonLogger, headless: bool | None = None) -> Browser:
    headless = config.headless if headless is None else headless
    browser_type = getattr(playwright, config.browser)
    log_event(
        logger=logger,
        phase="init",
        message=f"Launching Playwright {config.browser}",
        browser=config.browser,
        headless=headless,
    )
    try:
        return await browser_type.launch(headless=headless)
    except Exception as exc:
        if config.browser == "chromium":
            raise
        log_event(
            logger=logger,
            phase="init",
            status="warn",
            message=f"{config.browser} launch failed; retrying with bundled Chromium",
            browser=config.browser,
            headless=headless,
            error=str(exc),
        )
        return await playwright.chromium.launch(headless=headless)


def playwright_driver_factory(config: Config, *, logger: JsonLogger, headless: bool | None = None):
    """Return a driver factory: ``factory(context_options)`` is an async context manager.

    Each call opens one browser and one context, yields a ``PlaywrightDriver``
    and closes everything on exit.
    """

    @asynccontextmanager
    async def factory(context_options: Dict[str, Any]) -> AsyncIterator[CapabilityDriver]:
        async with async_playwright() as playwright:
            browser = await launch_browser(playwright=playwright, config=config, logger=logger, headless=headless)
            context = None
            try:
                context = await browser.new_context(
                    accept_downloads=True,
                    viewport={"width": config.viewport_width, "height": config.viewport_height},
                    **context_options,
                )
                context.set_default_timeout(config.nav_timeout_ms)
                page = await context.new_page()
                log_event(
                    logger=logger,
                    phase="init",
                    message="Browser context ready",
                    session_restored="storage_state" in context_options,
                )
                yield PlaywrightDriver(page, context)
            finally:
                if context is not None:
                    await context.close()
                await browser.close()

    return factory


async def interactive_login(
    driver: CapabilityDriver,
    *,
    config: Config,
    session_store: SessionStore,
    logger: JsonLogger,
    timeout_seconds: int = 300,
) -> bool:
    """Wait for the user to sign in by hand, then persist the session snapshot.

    Returns False if the signed-in marker never shows up within the timeout.
    """

    await driver.navigate(config.base_url, timeout_ms=config.nav_timeout_ms)
    log_event(
        logger=logger,
        phase="login",
        message="Complete the sign-in in the opened browser window",
        url=config.base_url,
        timeout_seconds=timeout_seconds,
    )

    polls = max(1, (timeout_seconds * 1000) // LOGIN_POLL_MS)
    for _ in range(polls):
        marker_seen = await driver.wait_for_selector(SIGNED_IN_MARKER, timeout_ms=LOGIN_POLL_MS)
        current_url = driver.current_url().lower()
        on_login_page = any(marker.lower() in current_url for marker in config.login_url_markers)
        if marker_seen and not on_login_page:
            snapshot = await driver.storage_state()
            session_store.save(snapshot)
            log_event(logger=logger, phase="login", message="Signed in; session saved", path=str(session_store.path))
            return True
        if marker_seen:
            # wait_for_selector returned at once; pace the poll by hand
            await driver.sleep(LOGIN_POLL_MS)

    log_event(
        logger=logger,
        phase="login",
        status="error",
        message="Timed out waiting for sign-in",
        timeout_seconds=timeout_seconds,
    )
    return False
