"""TaskChute Cloud CSV export automation."""

from typing import Any

__all__ = ["run_export"]


def __getattr__(name: str) -> Any:
    if name == "run_export":
        from taskchute_exporter.exporter.orchestrator import run_export as _run_export

        return _run_export
    raise AttributeError(name)
