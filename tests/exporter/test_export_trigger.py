import pytest

from taskchute_exporter.exporter.errors import ExportControlUnavailableError
from taskchute_exporter.exporter.export_trigger import ExportTrigger
from taskchute_exporter.exporter.page_selectors import DOWNLOAD_BUTTON_SELECTORS


def _trigger(driver, json_logger, timeout_ms: int = 500) -> ExportTrigger:
    return ExportTrigger(driver, logger=json_logger, ready_timeout_ms=timeout_ms)


@pytest.mark.asyncio
async def test_dismisses_overlays_then_clicks(fakes, json_logger) -> None:
    button = fakes.Element()
    driver = fakes.Driver(buttons={DOWNLOAD_BUTTON_SELECTORS[2]: [button]})

    path = await _trigger(driver, json_logger).invoke()

    assert path == "click"
    assert button.clicks == 1
    names = driver.call_names()
    assert names.index("press") < names.index("click_at") < names.index("click")
    assert ("click", False) in driver.calls


@pytest.mark.asyncio
async def test_rejected_click_falls_back_to_script_click(fakes, json_logger) -> None:
    button = fakes.Element(click_error="element intercepts pointer events")
    driver = fakes.Driver(buttons={DOWNLOAD_BUTTON_SELECTORS[0]: [button]})

    path = await _trigger(driver, json_logger).invoke()

    assert path == "script_click"
    assert button.script_clicks == 1
    assert all(call != ("click", True) for call in driver.calls)


@pytest.mark.asyncio
async def test_missing_control_raises(fakes, json_logger) -> None:
    driver = fakes.Driver()

    with pytest.raises(ExportControlUnavailableError):
        await _trigger(driver, json_logger).invoke()


@pytest.mark.asyncio
async def test_control_never_enabled_raises(fakes, json_logger) -> None:
    button = fakes.Element(enabled=False)
    driver = fakes.Driver(buttons={DOWNLOAD_BUTTON_SELECTORS[0]: [button]})

    with pytest.raises(ExportControlUnavailableError) as excinfo:
        await _trigger(driver, json_logger).invoke()

    assert "never became enabled" in str(excinfo.value)
    assert button.clicks == 0


@pytest.mark.asyncio
async def test_both_invocation_paths_failing_raises(fakes, json_logger) -> None:
    button = fakes.Element(click_error="covered", script_click_error="detached")
    driver = fakes.Driver(buttons={DOWNLOAD_BUTTON_SELECTORS[0]: [button]})

    with pytest.raises(ExportControlUnavailableError) as excinfo:
        await _trigger(driver, json_logger).invoke()

    assert excinfo.value.details["script_error"] == "detached"


@pytest.mark.asyncio
async def test_prepare_waits_for_enable_without_clicking(fakes, json_logger) -> None:
    button = fakes.Element(enabled=False)
    driver = fakes.Driver(buttons={DOWNLOAD_BUTTON_SELECTORS[1]: [button]})
    trigger = _trigger(driver, json_logger, timeout_ms=1_000)

    with pytest.raises(ExportControlUnavailableError):
        await trigger.prepare()
    assert button.clicks == 0

    button.enabled = True
    control = await trigger.prepare()

    assert control.selector == DOWNLOAD_BUTTON_SELECTORS[1]
    assert button.clicks == 0
    assert await trigger.click(control) == "click"
    assert button.clicks == 1
