"""Failure taxonomy for the export pipeline."""
from __future__ import annotations

from enum import Enum
from typing import Any


class FailureReason(str, Enum):
    SESSION_INVALID = "SessionInvalid"
    NAVIGATION_FAILED = "NavigationFailed"
    DATE_INPUT_UNVERIFIED = "DateInputUnverified"
    EXPORT_CONTROL_UNAVAILABLE = "ExportControlUnavailable"
    CAPTURE_TIMEOUT = "CaptureTimeout"
    PARSE_FAILURE = "ParseFailure"


class ExportPipelineError(RuntimeError):
    """Blocking pipeline condition; the orchestrator turns it into an outcome."""

    reason: FailureReason = FailureReason.NAVIGATION_FAILED

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.details = details


class SessionInvalidError(ExportPipelineError):
    reason = FailureReason.SESSION_INVALID


class NavigationFailedError(ExportPipelineError):
    reason = FailureReason.NAVIGATION_FAILED


class ExportControlUnavailableError(ExportPipelineError):
    reason = FailureReason.EXPORT_CONTROL_UNAVAILABLE


class CaptureTimeoutError(ExportPipelineError):
    reason = FailureReason.CAPTURE_TIMEOUT


class ParseFailureError(ExportPipelineError):
    reason = FailureReason.PARSE_FAILURE


class SchemaMismatchError(ParseFailureError):
    """Header or row width does not match a known export layout."""
