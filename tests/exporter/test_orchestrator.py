import json
import time
from pathlib import Path

import pytest

from taskchute_exporter.exporter.errors import FailureReason
from taskchute_exporter.exporter.models import ExportRequest
from taskchute_exporter.exporter.orchestrator import ExportOrchestrator, PipelineState, run_export
from taskchute_exporter.exporter.page_selectors import DOWNLOAD_BUTTON_SELECTORS
from taskchute_exporter.exporter.run_summary import RunSummary
from taskchute_exporter.exporter.session_store import SessionStore

NATIVE_HEADER = (
    "タイムライン日付,タスクID,タスク名,プロジェクトID,プロジェクト名,モードID,モード名,タグID,タグ名,"
    "ルーチンID,ルーチン名,見積時間,実績時間,開始日時,終了日時,リンク,アイコン,カラー,お気に入り"
)
NATIVE_ROW = "2025-06-01,t-1,Write report,p,Work,,,,,,,0:30:00,0:40:00,2025-06-01 09:00,2025-06-01 09:40,,,,"

REQUEST = ExportRequest(start_date="20250601", end_date="20250601")


def _export_page(fakes, **driver_kwargs):
    start = fakes.Element(attrs={"placeholder": "YYYY/MM/DD"})
    end = fakes.Element(attrs={"placeholder": "YYYY/MM/DD"})
    button = fakes.Element()
    driver_kwargs.setdefault("inputs", [start, end])
    driver_kwargs.setdefault("buttons", {DOWNLOAD_BUTTON_SELECTORS[0]: [button]})
    return fakes.Driver(**driver_kwargs), start, end


def _orchestrator(config, json_logger, driver, fakes, *, with_session: bool = True):
    store = SessionStore(config.storage_state_path, ttl_seconds=config.session_ttl_seconds, logger=json_logger)
    if with_session:
        store.save({"cookies": [], "origins": []})
    factory = fakes.factory(driver)
    orchestrator = ExportOrchestrator(
        config,
        logger=json_logger,
        session_store=store,
        driver_factory=factory,
        slug_factory=lambda: "20250601_120000",
    )
    return orchestrator, store, factory


@pytest.mark.asyncio
async def test_missing_session_fails_without_opening_browser(fakes, json_logger, test_config) -> None:
    driver, _, _ = _export_page(fakes)
    orchestrator, _, factory = _orchestrator(test_config, json_logger, driver, fakes, with_session=False)

    outcome = await orchestrator.run(REQUEST)

    assert outcome.success is False
    assert outcome.failure_reason is FailureReason.SESSION_INVALID
    assert factory.opened == []
    assert orchestrator.history == [
        PipelineState.IDLE,
        PipelineState.SESSION_CHECK,
        PipelineState.NEEDS_LOGIN,
        PipelineState.FAILED,
    ]


@pytest.mark.asyncio
async def test_successful_export_via_download(fakes, json_logger, test_config) -> None:
    csv_text = f"{NATIVE_HEADER}\n{NATIVE_ROW}\n"
    driver, start, end = _export_page(fakes, download=(0.01, "export.csv", csv_text))
    orchestrator, store, factory = _orchestrator(test_config, json_logger, driver, fakes)

    outcome = await orchestrator.run(REQUEST)

    assert outcome.success is True, outcome.failure_detail
    assert outcome.failure_reason is None
    assert [record.id for record in outcome.records] == ["t-1"]
    assert outcome.summary.total == 1
    assert outcome.summary.total_duration_minutes == 40
    assert outcome.raw_payload_path == test_config.output_dir / "taskchute-export-20250601_120000.csv"
    assert outcome.raw_payload_path.read_text(encoding="utf-8") == csv_text
    assert (start.value, end.value) == ("2025/06/01", "2025/06/01")
    assert factory.opened == [{"storage_state": str(store.path)}]
    assert driver.calls[0] == ("navigate", test_config.export_url)
    assert orchestrator.history[-5:] == [
        PipelineState.INPUTTING_DATES,
        PipelineState.TRIGGERING,
        PipelineState.CAPTURING,
        PipelineState.PARSING,
        PipelineState.DONE,
    ]


@pytest.mark.asyncio
async def test_login_redirect_clears_session(fakes, json_logger, test_config) -> None:
    driver, _, _ = _export_page(fakes, url_after_navigate="https://taskchute.example/login?next=/export")
    orchestrator, store, _ = _orchestrator(test_config, json_logger, driver, fakes)

    outcome = await orchestrator.run(REQUEST)

    assert outcome.failure_reason is FailureReason.SESSION_INVALID
    assert not store.path.exists()


@pytest.mark.asyncio
async def test_navigation_error_is_classified(fakes, json_logger, test_config) -> None:
    driver, _, _ = _export_page(fakes, navigate_error="net::ERR_NAME_NOT_RESOLVED")
    orchestrator, _, _ = _orchestrator(test_config, json_logger, driver, fakes)

    outcome = await orchestrator.run(REQUEST)

    assert outcome.failure_reason is FailureReason.NAVIGATION_FAILED
    assert "ERR_NAME_NOT_RESOLVED" in outcome.failure_detail


@pytest.mark.asyncio
async def test_all_channels_timing_out_fails_within_budget(fakes, json_logger, test_config) -> None:
    driver, _, _ = _export_page(fakes)
    orchestrator, _, _ = _orchestrator(test_config, json_logger, driver, fakes)

    started = time.perf_counter()
    outcome = await orchestrator.run(REQUEST)
    elapsed = time.perf_counter() - started

    assert outcome.success is False
    assert outcome.failure_reason is FailureReason.CAPTURE_TIMEOUT
    assert elapsed < 2
    assert sorted(path.suffix for path in outcome.diagnostics) == [".html", ".png"]
    assert all(path.parent == test_config.output_dir / "diagnostics" for path in outcome.diagnostics)


@pytest.mark.asyncio
async def test_parse_failure_keeps_raw_payload(fakes, json_logger, test_config) -> None:
    wide = ",".join(f"c{index}" for index in range(12))
    csv_text = f"{wide}\n{wide}\n"
    driver, _, _ = _export_page(fakes, download=(0.0, "export.csv", csv_text))
    orchestrator, _, _ = _orchestrator(test_config, json_logger, driver, fakes)

    outcome = await orchestrator.run(REQUEST)

    assert outcome.failure_reason is FailureReason.PARSE_FAILURE
    assert outcome.records == []
    assert outcome.raw_payload_path is not None
    assert outcome.raw_payload_path.read_text(encoding="utf-8") == csv_text
    assert outcome.diagnostics


@pytest.mark.asyncio
async def test_missing_export_control(fakes, json_logger, test_config) -> None:
    driver, _, _ = _export_page(fakes, buttons={})
    orchestrator, _, _ = _orchestrator(test_config, json_logger, driver, fakes)

    outcome = await orchestrator.run(REQUEST)

    assert outcome.failure_reason is FailureReason.EXPORT_CONTROL_UNAVAILABLE
    assert PipelineState.CAPTURING not in orchestrator.history


@pytest.mark.asyncio
async def test_unverified_dates_are_warnings_only(fakes, json_logger, test_config) -> None:
    driver, _, _ = _export_page(fakes, inputs=[], download=(0.0, "export.csv", "id,title\n1,a\n"))
    orchestrator, _, _ = _orchestrator(test_config, json_logger, driver, fakes)

    outcome = await orchestrator.run(REQUEST)

    assert outcome.success is True
    assert len(outcome.records) == 1
    assert outcome.warnings
    assert outcome.warnings[0].startswith("DateInputUnverified")


@pytest.mark.asyncio
async def test_unexpected_error_is_classified_by_state(fakes, json_logger, test_config) -> None:
    driver, _, _ = _export_page(fakes, download=(0.0, "export.csv", "id,title\n1,a\n"))

    def broken_save(payload):
        raise OSError("disk full")

    orchestrator, _, _ = _orchestrator(test_config, json_logger, driver, fakes)
    orchestrator._save_raw_payload = broken_save

    outcome = await orchestrator.run(REQUEST)

    assert outcome.success is False
    assert outcome.failure_reason is FailureReason.CAPTURE_TIMEOUT
    assert "disk full" in outcome.failure_detail


@pytest.mark.asyncio
async def test_run_export_helper(fakes, json_logger, test_config) -> None:
    driver, _, _ = _export_page(fakes, download=(0.0, "export.csv", "id,title\n1,a\n"))
    SessionStore(test_config.storage_state_path).save({"cookies": []})

    outcome = await run_export(test_config, REQUEST, logger=json_logger, driver_factory=fakes.factory(driver))

    assert outcome.success is True
    assert isinstance(outcome.raw_payload_path, Path)


@pytest.mark.asyncio
async def test_capture_listeners_start_after_control_is_enabled(fakes, json_logger, test_config) -> None:
    class SlowButtonDriver(fakes.Driver):
        def __init__(self, **kwargs) -> None:
            super().__init__(**kwargs)
            self.enable_checks = 0

        async def is_enabled(self, handle) -> bool:
            self.enable_checks += 1
            self._record("is_enabled")
            return self.enable_checks >= 2

        async def wait_for_download(self, save_dir, *, timeout_ms):
            self._record("wait_for_download")
            return await super().wait_for_download(save_dir, timeout_ms=timeout_ms)

    start = fakes.Element(attrs={"placeholder": "YYYY/MM/DD"})
    end = fakes.Element(attrs={"placeholder": "YYYY/MM/DD"})
    driver = SlowButtonDriver(
        inputs=[start, end],
        buttons={DOWNLOAD_BUTTON_SELECTORS[0]: [fakes.Element()]},
        download=(0.0, "export.csv", "id,title\n1,a\n"),
    )
    orchestrator, _, _ = _orchestrator(test_config, json_logger, driver, fakes)

    outcome = await orchestrator.run(REQUEST)

    assert outcome.success is True, outcome.failure_detail
    names = driver.call_names()
    last_enable_check = max(index for index, name in enumerate(names) if name == "is_enabled")
    assert driver.enable_checks == 2
    assert last_enable_check < names.index("wait_for_download") < names.index("click")


@pytest.mark.asyncio
async def test_stage_timings_and_component_context_reach_run_summary(
    fakes, json_logger, log_stream, test_config
) -> None:
    driver, _, _ = _export_page(fakes, download=(0.0, "export.csv", "id,title\n1,a\n"))
    orchestrator, _, _ = _orchestrator(test_config, json_logger, driver, fakes)
    summary = RunSummary(run_id=json_logger.run_id, run_env="test", request=REQUEST)
    json_logger.attach_aggregator(summary)

    outcome = await orchestrator.run(REQUEST)
    summary.record_outcome(outcome)

    assert outcome.success is True
    assert set(summary.stage_durations_ms) == {"navigation", "date_input", "capture", "parse"}
    events = [json.loads(line) for line in log_stream.getvalue().splitlines()]
    captured = [event for event in events if event["phase"] == "capture" and event["message"] == "Export captured"]
    assert captured and captured[0]["component"] == "capture"
    capture_stage = next(event for event in events if event["phase"] == "stage" and event["stage"] == "capture")
    assert capture_stage["channel"] == "download-event"
    assert "Stage timings:" in summary.build_summary_text(finished_at=summary.started_at)
