"""Error taxonomy shared by queue, worker and task handlers.

The worker maps these onto queue outcomes: ``PermanentError`` kills a task
immediately, everything else (``TransientError`` and any unclassified
exception) is retried with backoff until attempts run out.
"""

from __future__ import annotations


class PipelineError(RuntimeError):
    """Base class for classified pipeline failures."""

    code = "pipeline_error"

    def __init__(self, message: str, *, detail: str | None = None) -> None:
        super().__init__(message)
        self.detail = detail


class TransientError(PipelineError):
    """Network, timeout or lock contention failure; safe to retry."""

    code = "transient"


class PermanentError(PipelineError):
    """Malformed configuration or irrecoverable validation failure."""

    code = "permanent"


class RequestValidationError(PermanentError):
    """Malformed request received at an exposed interface."""

    code = "malformed_request"


class DataInsufficientError(PipelineError):
    """Metric window (or directive) missing or partial for the requested date."""

    code = "data_insufficient"


class LockExpired(PipelineError):
    """Lease was lost before the holder could complete the task."""

    code = "lock_expired"
