"""Recoverability heuristic for stage failures.

A failure is recoverable when its descriptive text contains one of a fixed
set of keywords. The match is a case-sensitive substring check on the
literal keywords, not a structured error-code check: "Network error" is
fatal, "network error" is recoverable.
"""

import traceback
from typing import Any, NamedTuple, Optional


RECOVERABLE_KEYWORDS = ("network", "timeout", "rate limit", "auth", "token")


class FailureDescription(NamedTuple):
    """The structured part of an error log entry."""

    message: str
    details: str
    stack: Optional[str]


def error_text(error: Any) -> str:
    """Return the descriptive text of an error, a string, or any other value."""
    if error is None:
        return ""
    if isinstance(error, str):
        return error
    try:
        return str(error)
    except Exception:
        # classification must stay total even for values whose __str__ fails
        return type(error).__name__


def classify(error: Any) -> bool:
    """Return True if error looks transient and is worth retrying.

    Example:
        >>> classify("network error")
        True
        >>> classify(ValueError("bad input"))
        False
    """
    text = error_text(error)
    return any(keyword in text for keyword in RECOVERABLE_KEYWORDS)


def describe_failure(error: Any) -> FailureDescription:
    """Build message, details and stack for an error log entry."""
    message = error_text(error)

    if not isinstance(error, BaseException):
        return FailureDescription(message=message, details=message, stack=None)

    if not message:
        message = type(error).__name__

    stack: Optional[str] = None
    if error.__traceback__ is not None:
        stack = "".join(
            traceback.format_exception(type(error), error, error.__traceback__)
        )

    details = f"{type(error).__name__}: {message}"
    if error.__cause__ is not None:
        details += f" (caused by {type(error.__cause__).__name__}: {error.__cause__})"

    return FailureDescription(message=message, details=details, stack=stack)
