from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Dict, List, Sequence

from taskchute_exporter.common.date_utils import get_timezone
from taskchute_exporter.common.db import dispose_engines
from taskchute_exporter.common.json_logger import JsonLogger, get_logger, log_event
from taskchute_exporter.config import Config, ConfigError, load_config
from taskchute_exporter.exporter.browser import interactive_login, playwright_driver_factory
from taskchute_exporter.exporter.csv_parser import CsvRecordParser
from taskchute_exporter.exporter.errors import ParseFailureError
from taskchute_exporter.exporter.models import ExportOutcome, ExportRequest
from taskchute_exporter.exporter.orchestrator import ExportOrchestrator
from taskchute_exporter.exporter.run_summary import RunSummary, persist_run_summary
from taskchute_exporter.exporter.session_store import SessionStore

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_USAGE = 2


def _print_json(payload: Dict[str, Any]) -> None:
    print(json.dumps(payload, ensure_ascii=False, indent=2, default=str))


def _session_store(config: Config, logger: JsonLogger | None = None) -> SessionStore:
    return SessionStore(config.storage_state_path, ttl_seconds=config.session_ttl_seconds, logger=logger)


def _write_records_json(path: Path, outcome: ExportOutcome) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = {
        "summary": outcome.summary.as_dict() if outcome.summary else None,
        "records": [record.as_dict() for record in outcome.records],
    }
    path.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")


# ── Commands ─────────────────────────────────────────────────────────────────


async def _run_export(args: argparse.Namespace, config: Config) -> int:
    try:
        request = ExportRequest.from_inputs(args.from_date, args.to_date, tz=get_timezone(config.timezone))
    except ValueError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return EXIT_USAGE

    config = config.with_overrides(
        output_dir=Path(args.output_dir) if args.output_dir else None,
        headless=False if args.headed else None,
    )
    logger = get_logger(args.run_id, log_file_path=config.json_log_file or None)
    summary = RunSummary(run_id=logger.run_id, run_env=config.run_env, request=request)
    logger.attach_aggregator(summary)
    try:
        orchestrator = ExportOrchestrator(
            config,
            logger=logger,
            session_store=_session_store(config, logger),
            driver_factory=playwright_driver_factory(config, logger=logger),
        )
        outcome = await orchestrator.run(request)
        summary.record_outcome(outcome)

        if args.json_out and outcome.success:
            json_path = Path(args.json_out)
            _write_records_json(json_path, outcome)
            log_event(logger=logger, phase="output", message="Records JSON written", path=str(json_path))

        await persist_run_summary(summary=summary, database_url=config.database_url or None, logger=logger)
        _print_json(
            {
                **outcome.as_dict(),
                "run_id": logger.run_id,
                "state_history": [state.value for state in orchestrator.history],
            }
        )
        return EXIT_OK if outcome.success else EXIT_FAILURE
    finally:
        logger.close()
        await dispose_engines()


async def _run_login(args: argparse.Namespace, config: Config) -> int:
    logger = get_logger(None, log_file_path=config.json_log_file or None)
    try:
        factory = playwright_driver_factory(config, logger=logger, headless=False)
        async with factory({}) as driver:
            signed_in = await interactive_login(
                driver,
                config=config,
                session_store=_session_store(config, logger),
                logger=logger,
                timeout_seconds=args.timeout_seconds,
            )
        return EXIT_OK if signed_in else EXIT_FAILURE
    finally:
        logger.close()


def _run_status(config: Config) -> int:
    store = _session_store(config)
    _print_json({"path": str(store.path), **store.info().as_dict()})
    return EXIT_OK


def _run_logout(config: Config) -> int:
    store = _session_store(config)
    removed = store.clear()
    _print_json({"path": str(store.path), "removed": removed})
    return EXIT_OK


def _run_stats(args: argparse.Namespace) -> int:
    parser = CsvRecordParser()
    try:
        records = parser.parse_file(args.csv_path)
    except ParseFailureError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return EXIT_FAILURE
    if args.date:
        records = parser.filter_by_date(records, args.date)
    payload: Dict[str, Any] = {"path": str(args.csv_path), **parser.summarize(records).as_dict()}
    if args.date:
        payload["date"] = args.date
    _print_json(payload)
    return EXIT_OK


async def _run_async(args: argparse.Namespace) -> int:
    if args.command == "stats":
        return _run_stats(args)

    try:
        config = load_config()
    except ConfigError as exc:
        print(f"config error: {exc}", file=sys.stderr)
        return EXIT_USAGE

    if args.command == "export":
        return await _run_export(args, config)
    if args.command == "login":
        return await _run_login(args, config)
    if args.command == "status":
        return _run_status(config)
    if args.command == "logout":
        return _run_logout(config)
    return EXIT_USAGE


# ── CLI entrypoint ───────────────────────────────────────────────────────────


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="taskchute_exporter", description="TaskChute Cloud CSV exporter")
    subparsers = parser.add_subparsers(dest="command", required=True)

    export_parser = subparsers.add_parser("export", help="Export tasks for a date range")
    export_parser.add_argument("--from-date", dest="from_date", type=str, default=None, help="Start date (YYYY-MM-DD)")
    export_parser.add_argument("--to-date", dest="to_date", type=str, default=None, help="End date (YYYY-MM-DD)")
    export_parser.add_argument("--output-dir", dest="output_dir", type=str, default=None, help="Override output directory")
    export_parser.add_argument("--json-out", dest="json_out", type=str, default=None, help="Write parsed records as JSON")
    export_parser.add_argument("--headed", dest="headed", action="store_true", help="Show the browser window")
    export_parser.add_argument("--run-id", dest="run_id", type=str, default=None, help="Override generated run id")

    login_parser = subparsers.add_parser("login", help="Sign in interactively and save the session")
    login_parser.add_argument(
        "--timeout-seconds", dest="timeout_seconds", type=int, default=300, help="How long to wait for sign-in"
    )

    subparsers.add_parser("status", help="Show stored session status")
    subparsers.add_parser("logout", help="Delete the stored session")

    stats_parser = subparsers.add_parser("stats", help="Summarise a saved CSV export")
    stats_parser.add_argument("csv_path", type=Path, help="Path to an exported CSV file")
    stats_parser.add_argument("--date", dest="date", type=str, default=None, help="Only tasks started on YYYY-MM-DD")

    return parser


def main(argv: Sequence[str] | None = None) -> int:
    parser = _build_parser()
    args: List[str] = list(argv) if argv is not None else sys.argv[1:]
    parsed = parser.parse_args(args)
    return asyncio.run(_run_async(parsed))


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
