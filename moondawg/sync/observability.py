"""Observability primitives for merge request sync runs.

Run lifecycle events are emitted as :class:`SyncEvent` values to an
:class:`ObservabilitySink`. The default sink renders each event as a
structured ``[event.type] key=value`` log line suitable for parsing by log
aggregators. Failures are tagged with an :class:`ErrorCategory` for alert
routing.
"""

from __future__ import annotations

import dataclasses
import datetime as dt
import enum
import typing as typ

from sqlalchemy.exc import InterfaceError, OperationalError

from moondawg.config import ConfigError
from moondawg.credentials import CredentialUnavailable
from moondawg.gitlab.errors import (
    GitLabConfigError,
    InvalidResponse,
    RateLimitExceeded,
    TransientFetchError,
)
from moondawg.logging import get_logger, log_error, log_info, log_warning
from moondawg.store.errors import StoreError, StoreUnavailable, ValidationError

if typ.TYPE_CHECKING:
    import collections.abc as cabc

    from .models import SyncRunSummary

logger = get_logger(__name__)


class SyncEventType(enum.StrEnum):
    """Structured event types for sync observability."""

    RUN_STARTED = "sync.run.started"
    RUN_COMPLETED = "sync.run.completed"
    RUN_PARTIAL = "sync.run.partial"
    RUN_FAILED = "sync.run.failed"
    RECORD_FAILED = "sync.record.failed"
    CHECKPOINT_ADVANCED = "sync.checkpoint.advanced"
    CHECKPOINT_CONFLICT = "sync.checkpoint.conflict"


class ErrorCategory(enum.StrEnum):
    """Categories for error classification in alerts."""

    CREDENTIALS = "credentials"
    RATE_LIMITED = "rate_limited"
    TRANSIENT = "transient"
    INVALID_RESPONSE = "invalid_response"
    STORE_UNAVAILABLE = "store_unavailable"
    VALIDATION = "validation"
    STORE_ERROR = "store_error"
    CONFIGURATION = "configuration"
    UNKNOWN = "unknown"


_EXCEPTION_CATEGORY_MAP: tuple[tuple[type[BaseException], ErrorCategory], ...] = (
    (CredentialUnavailable, ErrorCategory.CREDENTIALS),
    (RateLimitExceeded, ErrorCategory.RATE_LIMITED),
    (TransientFetchError, ErrorCategory.TRANSIENT),
    (InvalidResponse, ErrorCategory.INVALID_RESPONSE),
    (StoreUnavailable, ErrorCategory.STORE_UNAVAILABLE),
    (OperationalError, ErrorCategory.STORE_UNAVAILABLE),
    (InterfaceError, ErrorCategory.STORE_UNAVAILABLE),
    (ValidationError, ErrorCategory.VALIDATION),
    (StoreError, ErrorCategory.STORE_ERROR),
    (GitLabConfigError, ErrorCategory.CONFIGURATION),
    (ConfigError, ErrorCategory.CONFIGURATION),
)


def categorize_error(exc: BaseException) -> ErrorCategory:
    """Categorize an exception for alerting purposes.

    Returns:
        ErrorCategory indicating the type of failure for alert routing.

    """
    for exc_type, category in _EXCEPTION_CATEGORY_MAP:
        if isinstance(exc, exc_type):
            return category
    return ErrorCategory.UNKNOWN


@dataclasses.dataclass(frozen=True, slots=True)
class SyncEvent:
    """A single observability event: a kind plus flat key/value fields."""

    kind: SyncEventType
    fields: cabc.Mapping[str, object] = dataclasses.field(default_factory=dict)


class ObservabilitySink(typ.Protocol):
    """Receives sync events. Implementations must not block the caller."""

    def emit(self, event: SyncEvent) -> None:
        """Publish ``event``."""
        ...


def _render_value(value: object) -> str:
    if isinstance(value, dt.datetime):
        return value.isoformat()
    if isinstance(value, dt.timedelta):
        return f"{value.total_seconds():.3f}"
    if isinstance(value, float):
        return f"{value:.3f}"
    if value is None:
        return "-"
    return str(value)


def render_event(event: SyncEvent) -> str:
    """Render ``event`` as ``[kind] key=value ...``."""
    parts = [f"[{event.kind}]"]
    parts.extend(
        f"{key}={_render_value(value)}" for key, value in event.fields.items()
    )
    return " ".join(parts)


_WARNING_KINDS = frozenset(
    {
        SyncEventType.RUN_PARTIAL,
        SyncEventType.RECORD_FAILED,
        SyncEventType.CHECKPOINT_CONFLICT,
    }
)


class LoggingSink:
    """Emit sync events as structured log lines.

    Events are logged at INFO for progress, WARNING for partial runs,
    per-record failures and checkpoint conflicts, and ERROR for failed runs.
    """

    def emit(self, event: SyncEvent) -> None:
        """Log ``event`` at a level chosen from its kind."""
        message = render_event(event)
        if event.kind is SyncEventType.RUN_FAILED:
            log_error(logger, "%s", message)
        elif event.kind in _WARNING_KINDS:
            log_warning(logger, "%s", message)
        else:
            log_info(logger, "%s", message)


def summary_fields(summary: SyncRunSummary) -> dict[str, object]:
    """Flatten a run summary into event fields."""
    fields: dict[str, object] = {
        "source": summary.source,
        "outcome": summary.outcome,
        "status_code": summary.status_code,
        "fetched": summary.fetched,
        "upserted": summary.upserted,
        "failed": summary.failed,
        "duration": summary.duration,
        "checkpoint_before": summary.checkpoint_before,
        "checkpoint_after": summary.checkpoint_after,
        "checkpoint_advanced": summary.checkpoint_advanced,
    }
    if summary.failed_stage is not None:
        fields["failed_stage"] = summary.failed_stage
    if summary.error_type is not None:
        fields["error_type"] = summary.error_type
        fields["error_category"] = summary.error_category
        fields["error_message"] = summary.error_message
    return fields


__all__ = [
    "ErrorCategory",
    "LoggingSink",
    "ObservabilitySink",
    "SyncEvent",
    "SyncEventType",
    "categorize_error",
    "render_event",
    "summary_fields",
]
