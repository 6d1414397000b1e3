"""Run outcomes and summaries produced by the sync worker."""

from __future__ import annotations

import dataclasses
import enum
import typing as typ

if typ.TYPE_CHECKING:
    import datetime as dt

    from moondawg.gitlab.models import MergeRequestKey


class SyncStage(enum.StrEnum):
    """Linear stages of one sync run."""

    START = "start"
    AUTHENTICATING = "authenticating"
    FETCHING = "fetching"
    PERSISTING = "persisting"
    COMMITTING = "committing"
    DONE = "done"


class SyncOutcome(enum.StrEnum):
    """Overall result of a run, mapped onto the invocation status code."""

    SUCCESS = "success"
    PARTIAL = "partial"
    FAILURE = "failure"

    @property
    def status_code(self) -> int:
        """Return the HTTP-style status reported to the scheduler."""
        return _STATUS_CODES[self]


_STATUS_CODES: dict[SyncOutcome, int] = {
    SyncOutcome.SUCCESS: 200,
    SyncOutcome.PARTIAL: 207,
    SyncOutcome.FAILURE: 500,
}


@dataclasses.dataclass(frozen=True, slots=True)
class RecordFailure:
    """A record that could not be persisted after its retry budget."""

    key: MergeRequestKey
    error_type: str
    message: str
    attempts: int


@dataclasses.dataclass(frozen=True, slots=True)
class SyncRunSummary:
    """Structured result of one run, emitted to the observability sink."""

    source: str
    outcome: SyncOutcome
    started_at: dt.datetime
    duration: dt.timedelta
    fetched: int = 0
    upserted: int = 0
    failed: int = 0
    checkpoint_before: dt.datetime | None = None
    checkpoint_after: dt.datetime | None = None
    checkpoint_advanced: bool = False
    failed_stage: SyncStage | None = None
    error_type: str | None = None
    error_category: str | None = None
    error_message: str | None = None
    failures: tuple[RecordFailure, ...] = ()

    @property
    def status_code(self) -> int:
        """Return the status code for this run's outcome."""
        return self.outcome.status_code

    def to_invocation_result(self) -> dict[str, int]:
        """Return the payload handed back to the scheduler."""
        return {"statusCode": self.status_code, "recordsProcessed": self.upserted}


__all__ = [
    "RecordFailure",
    "SyncOutcome",
    "SyncRunSummary",
    "SyncStage",
]
