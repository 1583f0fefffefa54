"""Error taxonomy for notelink.

Configuration errors abort the current task. Transient errors are recorded in the
failure log and retried on a later run. Content errors skip a single document.
Integrity errors mean the persisted index cannot be trusted and abort the task.
"""

import os
import traceback
from datetime import datetime, timezone
from pathlib import Path


class NotelinkError(Exception):
    """Base class for all notelink errors."""


class ConfigurationError(NotelinkError, ValueError):
    """Missing or invalid settings (API key, model name, endpoint)."""

    def __init__(self, message: str, status: int | None = None, guidance: str | None = None):
        super().__init__(message)
        self.status = status
        self.guidance = guidance or "Please check your configuration and try again."


class TransientError(NotelinkError):
    """Network failures, rate limits and provider-side errors; retried on a later run."""

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status


class ContentError(NotelinkError):
    """A single document could not be processed."""

    def __init__(self, message: str, item_id: str | None = None, reason: str | None = None):
        super().__init__(message)
        self.item_id = item_id
        self.reason = reason or message


class IntegrityError(NotelinkError):
    """The index could not be loaded or saved."""


class TaskAlreadyRunningError(NotelinkError):
    """A second task was started while one is still running."""


class TaskCancelledError(NotelinkError):
    """The running task stopped because cancellation was requested."""


def classify_api_error(status: int, message: str) -> NotelinkError:
    """Map an HTTP status from a provider to a configuration or transient error."""
    if status == 401:
        return ConfigurationError(
            "Invalid API key",
            status,
            "Check the API key in your config or environment. Make sure it has not expired.",
        )
    if status == 403:
        return ConfigurationError("API key lacks permission for this model", status)
    if status == 404:
        return ConfigurationError(
            "API endpoint or model not found",
            status,
            "Check the model name in your config.",
        )
    if status == 400:
        return ConfigurationError(
            f"Bad request to API: {message}",
            status,
            "Check the model name and other provider settings.",
        )
    if status == 429:
        return TransientError("Rate limit exceeded", status)
    if status >= 500:
        return TransientError(f"Server error: {status}", status)
    if status == 0:
        return TransientError("Network error: unable to reach API", status)
    return TransientError(f"Unexpected error: {message}", status)


def log_exception(exc: BaseException, log_dir: str | Path, context: str = "") -> Path:
    """Append the exception's traceback to notelink-errors.log and return the log path."""
    log_path = Path(log_dir) / "notelink-errors.log"
    timestamp = datetime.now(timezone.utc).isoformat()
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(log_path, os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o600)
        with os.fdopen(fd, "a") as f:
            f.write(f"\n{'=' * 60}\n")
            f.write(f"[{timestamp}]")
            if context:
                f.write(f" {context}")
            f.write("\n")
            f.write("".join(traceback.format_exception(type(exc), exc, exc.__traceback__)))
    except OSError:
        pass  # the error log is best-effort
    return log_path
