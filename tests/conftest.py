import asyncio
import io
import sys
from pathlib import Path
from types import SimpleNamespace
from typing import Any, Dict, List, Optional

import pytest

ROOT = Path(__file__).resolve().parents[1]

if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from contextlib import asynccontextmanager  # noqa: E402

from taskchute_exporter.common.json_logger import JsonLogger  # noqa: E402
from taskchute_exporter.config import Config  # noqa: E402
from taskchute_exporter.exporter.driver import (  # noqa: E402
    DirectoryEntry,
    DownloadInfo,
    ResponseInfo,
)


class FakeElement:
    """Scripted stand-in for an input or button handle."""

    def __init__(
        self,
        *,
        attrs: Optional[Dict[str, str]] = None,
        value: str = "",
        fill_works: bool = True,
        typing_works: bool = True,
        script_works: bool = True,
        fill_raises: bool = False,
        enabled: bool = True,
        click_error: Optional[str] = None,
        script_click_error: Optional[str] = None,
    ) -> None:
        self.attrs = attrs or {}
        self.value = value
        self.fill_works = fill_works
        self.typing_works = typing_works
        self.script_works = script_works
        self.fill_raises = fill_raises
        self.enabled = enabled
        self.click_error = click_error
        self.script_click_error = script_click_error
        self.clicks = 0
        self.script_clicks = 0


class FakeDriver:
    """In-memory ``CapabilityDriver`` whose page behaviour is set per test."""

    def __init__(
        self,
        *,
        url_after_navigate: Optional[str] = None,
        navigate_error: Optional[str] = None,
        inputs: Optional[List[FakeElement]] = None,
        buttons: Optional[Dict[str, List[FakeElement]]] = None,
        lingering: tuple = (),
        responses: Optional[List[tuple]] = None,
        download: Optional[tuple] = None,
        on_click=None,
    ) -> None:
        self.url = "about:blank"
        self.url_after_navigate = url_after_navigate
        self.navigate_error = navigate_error
        self.inputs = inputs or []
        self.buttons = buttons or {}
        self.lingering = set(lingering)
        self.responses = list(responses or [])
        self.download = download
        self.on_click = on_click
        self.calls: List[tuple] = []
        self.slept_ms = 0
        self.html = "<html><body>export page</body></html>"
        self.state = {"cookies": [{"name": "sid", "value": "abc"}], "origins": []}

    def _record(self, *call: Any) -> None:
        self.calls.append(call)

    def call_names(self) -> List[str]:
        return [call[0] for call in self.calls]

    async def navigate(self, url: str, *, timeout_ms: int) -> None:
        self._record("navigate", url)
        if self.navigate_error:
            raise RuntimeError(self.navigate_error)
        self.url = self.url_after_navigate or url

    async def wait_for_selector(self, selector: str, *, timeout_ms: int) -> bool:
        self._record("wait_for_selector", selector)
        return selector not in self.lingering

    async def wait_for_absence(self, selector: str, *, timeout_ms: int) -> bool:
        self._record("wait_for_absence", selector)
        return selector not in self.lingering

    async def query_all(self, selector: str) -> List[Any]:
        if selector == "input":
            return list(self.inputs)
        return list(self.buttons.get(selector, []))

    async def get_attribute(self, handle: FakeElement, name: str) -> Optional[str]:
        return handle.attrs.get(name)

    async def fill(self, handle: FakeElement, value: str) -> None:
        self._record("fill", value)
        if handle.fill_raises:
            raise RuntimeError("element is not editable")
        if handle.fill_works or value == "":
            handle.value = value

    async def focus(self, handle: FakeElement) -> None:
        self._record("focus")

    async def press(self, key: str, handle: Any = None) -> None:
        self._record("press", key)

    async def type_text(self, handle: FakeElement, text: str, *, delay_ms: int = 0) -> None:
        self._record("type_text", text)
        if handle.typing_works:
            handle.value = text

    async def read_value(self, handle: FakeElement) -> str:
        return handle.value

    async def click(self, handle: FakeElement, *, force: bool = False, timeout_ms: int | None = None) -> None:
        self._record("click", force)
        if handle.click_error:
            raise RuntimeError(handle.click_error)
        handle.clicks += 1
        await self._fire_click()

    async def click_at(self, x: int, y: int) -> None:
        self._record("click_at", x, y)

    async def is_enabled(self, handle: FakeElement) -> bool:
        return handle.enabled

    async def evaluate(self, handle: FakeElement, script: str, arg: Any = None) -> Any:
        if "el.click()" in script:
            self._record("script_click")
            if handle.script_click_error:
                raise RuntimeError(handle.script_click_error)
            handle.script_clicks += 1
            await self._fire_click()
            return None
        self._record("script_value", arg)
        if handle.script_works:
            handle.value = arg
        return None

    async def evaluate_in_page(self, script: str, arg: Any = None) -> Any:
        return None

    async def _fire_click(self) -> None:
        if self.on_click is not None:
            self.on_click(self)

    async def wait_for_load_state(self, state: str, *, timeout_ms: int) -> bool:
        self._record("wait_for_load_state", state)
        return True

    async def wait_for_response(self, predicate, *, timeout_ms: int) -> Optional[ResponseInfo]:
        for index, (delay_s, response) in enumerate(self.responses):
            if predicate(response.url, response.headers):
                del self.responses[index]
                await asyncio.sleep(delay_s)
                return response
        await asyncio.sleep(timeout_ms / 1000)
        return None

    async def wait_for_download(self, save_dir: Path, *, timeout_ms: int) -> Optional[DownloadInfo]:
        if self.download is None:
            await asyncio.sleep(timeout_ms / 1000)
            return None
        delay_s, name, text = self.download
        await asyncio.sleep(delay_s)
        save_dir.mkdir(parents=True, exist_ok=True)
        target = save_dir / name
        target.write_text(text, encoding="utf-8")
        return DownloadInfo(suggested_filename=name, path=target)

    async def list_directory(self, path: Path) -> List[DirectoryEntry]:
        if not path.is_dir():
            return []
        return [
            DirectoryEntry(path=item, modified_at=item.stat().st_mtime, size=item.stat().st_size)
            for item in path.iterdir()
            if item.is_file()
        ]

    async def sleep(self, ms: int) -> None:
        self.slept_ms += ms
        await asyncio.sleep(0)

    def current_url(self) -> str:
        return self.url

    async def screenshot(self, path: Path) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(b"\x89PNG fake")

    async def content(self) -> str:
        return self.html

    async def storage_state(self, path: Path | None = None) -> Dict[str, Any]:
        return dict(self.state)


def fake_driver_factory(driver: FakeDriver):
    opened: List[Dict[str, Any]] = []

    @asynccontextmanager
    async def factory(context_options: Dict[str, Any]):
        opened.append(dict(context_options))
        yield driver

    factory.opened = opened
    return factory


@pytest.fixture
def fakes() -> SimpleNamespace:
    return SimpleNamespace(Driver=FakeDriver, Element=FakeElement, factory=fake_driver_factory)


@pytest.fixture
def log_stream() -> io.StringIO:
    return io.StringIO()


@pytest.fixture
def json_logger(log_stream: io.StringIO) -> JsonLogger:
    logger = JsonLogger(run_id="run-test", stream=log_stream, log_file_path=None)
    yield logger
    logger.close()


@pytest.fixture
def test_config(tmp_path: Path) -> Config:
    return Config(
        base_url="https://taskchute.example",
        export_url="https://taskchute.example/export/csv-export",
        storage_state_path=tmp_path / "state" / "storage-state.json",
        output_dir=tmp_path / "exports",
        download_dir=tmp_path / "downloads",
        nav_timeout_ms=1_000,
        capture_timeout_ms=50,
        directory_poll_timeout_ms=20,
        directory_poll_interval_ms=10,
        skeleton_wait_ms=10,
        settle_delay_ms=0,
        date_input_wait_ms=0,
        control_ready_timeout_ms=500,
    )
