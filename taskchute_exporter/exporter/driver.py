"""Browser capability contract and its Playwright implementation.

Every pipeline component talks to the browser through ``CapabilityDriver`` so
that tests can substitute a scripted double. Element handles are opaque to the
components; the Playwright driver uses ``Locator`` objects.
"""
from __future__ import annotations

import asyncio
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol

from playwright.async_api import BrowserContext, Page
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

ResponsePredicate = Callable[[str, Mapping[str, str]], bool]


@dataclass(frozen=True)
class ResponseInfo:
    url: str
    status: int
    headers: Mapping[str, str]
    body: str


@dataclass(frozen=True)
class DownloadInfo:
    suggested_filename: str
    path: Path


@dataclass(frozen=True)
class DirectoryEntry:
    path: Path
    modified_at: float
    size: int


class CapabilityDriver(Protocol):
    async def navigate(self, url: str, *, timeout_ms: int) -> None: ...

    async def wait_for_selector(self, selector: str, *, timeout_ms: int) -> bool: ...

    async def wait_for_absence(self, selector: str, *, timeout_ms: int) -> bool: ...

    async def query_all(self, selector: str) -> List[Any]: ...

    async def get_attribute(self, handle: Any, name: str) -> Optional[str]: ...

    async def fill(self, handle: Any, value: str) -> None: ...

    async def focus(self, handle: Any) -> None: ...

    async def press(self, key: str, handle: Any = None) -> None: ...

    async def type_text(self, handle: Any, text: str, *, delay_ms: int = 0) -> None: ...

    async def read_value(self, handle: Any) -> str: ...

    async def click(self, handle: Any, *, force: bool = False, timeout_ms: int | None = None) -> None: ...

    async def click_at(self, x: int, y: int) -> None: ...

    async def is_enabled(self, handle: Any) -> bool: ...

    async def evaluate(self, handle: Any, script: str, arg: Any = None) -> Any: ...

    async def evaluate_in_page(self, script: str, arg: Any = None) -> Any: ...

    async def wait_for_load_state(self, state: str, *, timeout_ms: int) -> bool: ...

    async def wait_for_response(
        self, predicate: ResponsePredicate, *, timeout_ms: int
    ) -> Optional[ResponseInfo]: ...

    async def wait_for_download(self, save_dir: Path, *, timeout_ms: int) -> Optional[DownloadInfo]: ...

    async def list_directory(self, path: Path) -> List[DirectoryEntry]: ...

    async def sleep(self, ms: int) -> None: ...

    def current_url(self) -> str: ...

    async def screenshot(self, path: Path) -> None: ...

    async def content(self) -> str: ...

    async def storage_state(self, path: Path | None = None) -> Dict[str, Any]: ...


class PlaywrightDriver:
    """``CapabilityDriver`` backed by a Playwright page and its context."""

    def __init__(self, page: Page, context: BrowserContext) -> None:
        self.page = page
        self.context = context

    async def navigate(self, url: str, *, timeout_ms: int) -> None:
        await self.page.goto(url, wait_until="domcontentloaded", timeout=timeout_ms)

    async def wait_for_selector(self, selector: str, *, timeout_ms: int) -> bool:
        try:
            await self.page.wait_for_selector(selector, state="visible", timeout=timeout_ms)
            return True
        except PlaywrightTimeoutError:
            return False

    async def wait_for_absence(self, selector: str, *, timeout_ms: int) -> bool:
        try:
            await self.page.wait_for_selector(selector, state="hidden", timeout=timeout_ms)
            return True
        except PlaywrightTimeoutError:
            return False

    async def query_all(self, selector: str) -> List[Any]:
        return await self.page.locator(selector).all()

    async def get_attribute(self, handle: Any, name: str) -> Optional[str]:
        return await handle.get_attribute(name)

    async def fill(self, handle: Any, value: str) -> None:
        await handle.fill(value)

    async def focus(self, handle: Any) -> None:
        await handle.focus()

    async def press(self, key: str, handle: Any = None) -> None:
        if handle is None:
            await self.page.keyboard.press(key)
        else:
            await handle.press(key)

    async def type_text(self, handle: Any, text: str, *, delay_ms: int = 0) -> None:
        await handle.press_sequentially(text, delay=delay_ms)

    async def read_value(self, handle: Any) -> str:
        return await handle.input_value()

    async def click(self, handle: Any, *, force: bool = False, timeout_ms: int | None = None) -> None:
        await handle.click(force=force, timeout=timeout_ms)

    async def click_at(self, x: int, y: int) -> None:
        await self.page.mouse.click(x, y)

    async def is_enabled(self, handle: Any) -> bool:
        return await handle.is_enabled()

    async def evaluate(self, handle: Any, script: str, arg: Any = None) -> Any:
        return await handle.evaluate(script, arg)

    async def evaluate_in_page(self, script: str, arg: Any = None) -> Any:
        return await self.page.evaluate(script, arg)

    async def wait_for_load_state(self, state: str, *, timeout_ms: int) -> bool:
        try:
            await self.page.wait_for_load_state(state, timeout=timeout_ms)
            return True
        except PlaywrightTimeoutError:
            return False

    async def wait_for_response(
        self, predicate: ResponsePredicate, *, timeout_ms: int
    ) -> Optional[ResponseInfo]:
        try:
            response = await self.page.wait_for_event(
                "response",
                predicate=lambda candidate: predicate(candidate.url, candidate.headers),
                timeout=timeout_ms,
            )
        except PlaywrightTimeoutError:
            return None
        body = await response.text()
        return ResponseInfo(
            url=response.url,
            status=response.status,
            headers=dict(response.headers),
            body=body,
        )

    async def wait_for_download(self, save_dir: Path, *, timeout_ms: int) -> Optional[DownloadInfo]:
        try:
            download = await self.page.wait_for_event("download", timeout=timeout_ms)
        except PlaywrightTimeoutError:
            return None
        save_dir.mkdir(parents=True, exist_ok=True)
        suggested = download.suggested_filename or "download.csv"
        target = save_dir / suggested
        await download.save_as(str(target))
        return DownloadInfo(suggested_filename=suggested, path=target)

    async def list_directory(self, path: Path) -> List[DirectoryEntry]:
        if not path.is_dir():
            return []
        entries: List[DirectoryEntry] = []
        with os.scandir(path) as iterator:
            for entry in iterator:
                if not entry.is_file():
                    continue
                stat = entry.stat()
                entries.append(
                    DirectoryEntry(path=Path(entry.path), modified_at=stat.st_mtime, size=stat.st_size)
                )
        return entries

    async def sleep(self, ms: int) -> None:
        await asyncio.sleep(ms / 1000)

    def current_url(self) -> str:
        return self.page.url

    async def screenshot(self, path: Path) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        await self.page.screenshot(path=str(path), full_page=True)

    async def content(self) -> str:
        return await self.page.content()

    async def storage_state(self, path: Path | None = None) -> Dict[str, Any]:
        return await self.context.storage_state(path=str(path) if path else None)
