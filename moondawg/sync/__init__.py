"""Merge request sync orchestration.

Public API
----------
MergeRequestSyncWorker
    Runs one sync: checkpoint, credentials, fetch, upsert, commit.
SyncRunSummary
    Structured result of a run, with its :class:`SyncOutcome`.
LoggingSink
    Default observability sink writing ``[event.type] key=value`` lines.

The Dramatiq actor lives in :mod:`moondawg.sync.actor` and is not imported
here, so importing this package never touches broker configuration.
"""

from __future__ import annotations

from .models import RecordFailure, SyncOutcome, SyncRunSummary, SyncStage
from .observability import (
    ErrorCategory,
    LoggingSink,
    ObservabilitySink,
    SyncEvent,
    SyncEventType,
    categorize_error,
    render_event,
    summary_fields,
)
from .orchestrator import MergeRequestSyncWorker

__all__ = [
    "ErrorCategory",
    "LoggingSink",
    "MergeRequestSyncWorker",
    "ObservabilitySink",
    "RecordFailure",
    "SyncEvent",
    "SyncEventType",
    "SyncOutcome",
    "SyncRunSummary",
    "SyncStage",
    "categorize_error",
    "render_event",
    "summary_fields",
]
