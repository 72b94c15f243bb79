"""Failure classification and the per-pipeline error log."""

from src.repoclaw.failures.classifier import (
    RECOVERABLE_KEYWORDS,
    FailureDescription,
    classify,
    describe_failure,
    error_text,
)
from src.repoclaw.failures.log import ErrorLog, ErrorLogStore, format_error_for_display

__all__ = [
    "RECOVERABLE_KEYWORDS",
    "FailureDescription",
    "classify",
    "describe_failure",
    "error_text",
    "ErrorLog",
    "ErrorLogStore",
    "format_error_for_display",
]
