"""Scheduled merge request sync worker.

Each invocation runs once through a fixed sequence of stages: load the
checkpoint, authenticate, fetch every merge request updated since the
checkpoint, upsert them with a time-to-live, then advance the checkpoint with
compare-and-swap. The checkpoint only moves when every fetched record was
persisted, so a failed or partial run is retried from the same watermark on
the next tick. Overlapping runs are tolerated: the loser of the
compare-and-swap logs a conflict and leaves the newer checkpoint in place.
"""

from __future__ import annotations

import dataclasses
import typing as typ

from moondawg.common.time import utcnow
from moondawg.gitlab.client import GitLabCredentials
from moondawg.logging import get_logger, log_error, log_warning
from moondawg.retry import Sleep, default_sleep
from moondawg.store.errors import StoreError

from .models import RecordFailure, SyncOutcome, SyncRunSummary, SyncStage
from .observability import (
    ErrorCategory,
    LoggingSink,
    SyncEvent,
    SyncEventType,
    categorize_error,
    summary_fields,
)

if typ.TYPE_CHECKING:
    import collections.abc as cabc
    import datetime as dt

    from moondawg.config import SyncConfig
    from moondawg.credentials import CredentialProvider
    from moondawg.gitlab.client import MergeRequestSource
    from moondawg.gitlab.models import MergeRequestKey, MergeRequestRecord
    from moondawg.store.checkpoints import Checkpoint, CheckpointStore
    from moondawg.store.records import Clock, RecordStore

    from .observability import ObservabilitySink

    SourceFactory: typ.TypeAlias = cabc.Callable[[GitLabCredentials], MergeRequestSource]

logger = get_logger(__name__)

_OUTCOME_EVENTS: dict[SyncOutcome, SyncEventType] = {
    SyncOutcome.SUCCESS: SyncEventType.RUN_COMPLETED,
    SyncOutcome.PARTIAL: SyncEventType.RUN_PARTIAL,
    SyncOutcome.FAILURE: SyncEventType.RUN_FAILED,
}


@dataclasses.dataclass(slots=True)
class _RunProgress:
    """Mutable state accumulated while a run moves through its stages."""

    stage: SyncStage = SyncStage.START
    checkpoint: Checkpoint | None = None
    fetched: int = 0
    upserted: int = 0
    failures: list[RecordFailure] = dataclasses.field(default_factory=list)
    checkpoint_after: dt.datetime | None = None
    checkpoint_advanced: bool = False
    commit_error: StoreError | None = None
    resume_token: str | None = None

    @property
    def cursor(self) -> dt.datetime | None:
        return None if self.checkpoint is None else self.checkpoint.last_synced_at


def _latest_per_key(
    records: cabc.Iterable[MergeRequestRecord],
) -> list[MergeRequestRecord]:
    """Keep the newest version of each key in first-seen order.

    A merge request edited while pages are being walked can appear twice.
    """
    latest: dict[MergeRequestKey, MergeRequestRecord] = {}
    for record in records:
        existing = latest.get(record.key)
        if existing is None or record.updated_at >= existing.updated_at:
            latest[record.key] = record
    return list(latest.values())


def _max_dt(values: cabc.Iterable[dt.datetime]) -> dt.datetime | None:
    return max(values, default=None)


class MergeRequestSyncWorker:
    """Synchronise one GitLab project's merge requests into a record store."""

    def __init__(  # noqa: PLR0913
        self,
        config: SyncConfig,
        *,
        credentials: CredentialProvider,
        source_factory: SourceFactory,
        records: RecordStore,
        checkpoints: CheckpointStore,
        sink: ObservabilitySink | None = None,
        sleep: Sleep = default_sleep,
        clock: Clock = utcnow,
    ) -> None:
        """Bind the worker to its collaborators.

        ``source_factory`` receives the credentials resolved at the start of
        each run and returns a fresh :class:`MergeRequestSource`.
        """
        self._config = config
        self._credentials = credentials
        self._source_factory = source_factory
        self._records = records
        self._checkpoints = checkpoints
        self._sink = sink or LoggingSink()
        self._sleep = sleep
        self._clock = clock

    async def run(self) -> SyncRunSummary:
        """Execute one sync run and return its summary.

        Failures of any stage are reported in the summary rather than raised.
        Cancellation and interpreter exits propagate unchanged.
        """
        started_at = self._clock()
        progress = _RunProgress()
        self._emit(
            SyncEventType.RUN_STARTED,
            {"source": self._config.source_key, "started_at": started_at},
        )
        try:
            await self._run_stages(progress, started_at)
        except Exception as exc:  # noqa: BLE001 - failures become summaries
            summary = self._summarise(progress, started_at, error=exc)
            if summary.error_category == ErrorCategory.UNKNOWN:
                log_error(
                    logger,
                    "unexpected error during %s for %s",
                    progress.stage,
                    self._config.source_key,
                    exc_info=exc,
                )
        except BaseException:
            log_warning(
                logger,
                "sync run for %s interrupted during %s",
                self._config.source_key,
                progress.stage,
            )
            raise
        else:
            summary = self._summarise(progress, started_at)

        fields = summary_fields(summary)
        if summary.outcome is SyncOutcome.FAILURE and progress.resume_token:
            fields["resume_token"] = progress.resume_token
        self._emit(_OUTCOME_EVENTS[summary.outcome], fields)
        return summary

    async def _run_stages(
        self, progress: _RunProgress, started_at: dt.datetime
    ) -> None:
        progress.checkpoint = await self._checkpoints.load(self._config.source_key)
        progress.checkpoint_after = progress.cursor

        progress.stage = SyncStage.AUTHENTICATING
        credentials = await self._authenticate()

        progress.stage = SyncStage.FETCHING
        records = await self._fetch(credentials, progress)

        progress.stage = SyncStage.PERSISTING
        await self._persist(records, progress)

        progress.stage = SyncStage.COMMITTING
        await self._commit(records, progress, started_at)

        progress.stage = SyncStage.DONE

    async def _authenticate(self) -> GitLabCredentials:
        token = await self._credentials.get_credential(self._config.token_param)
        username = await self._credentials.get_credential(self._config.username_param)
        return GitLabCredentials(token=token, username=username)

    async def _fetch(
        self, credentials: GitLabCredentials, progress: _RunProgress
    ) -> list[MergeRequestRecord]:
        source = self._source_factory(credentials)
        records: list[MergeRequestRecord] = []
        try:
            async for record in source.iter_updated_since(progress.cursor):
                records.append(record)
                progress.fetched += 1
        finally:
            progress.resume_token = source.resume_token
            await source.aclose()
        return records

    async def _persist(
        self, records: list[MergeRequestRecord], progress: _RunProgress
    ) -> None:
        batch = _latest_per_key(records)
        by_key = {record.key: record for record in batch}
        outcomes = await self._records.upsert_batch(batch, self._config.record_ttl)
        for outcome in outcomes:
            failure: RecordFailure | None = None
            if outcome.error is not None:
                failure = await self._retry_record(by_key[outcome.key], outcome.error)
            if failure is None:
                progress.upserted += 1
                continue
            progress.failures.append(failure)
            self._emit(
                SyncEventType.RECORD_FAILED,
                {
                    "source": self._config.source_key,
                    "key": failure.key,
                    "error_type": failure.error_type,
                    "attempts": failure.attempts,
                    "error_message": failure.message,
                },
            )

    async def _retry_record(
        self, record: MergeRequestRecord, error: StoreError
    ) -> RecordFailure | None:
        """Retry a failed upsert while the error is retryable.

        The batch write counts as the first attempt.
        """
        policy = self._config.store_backoff
        attempt = 1
        while error.retryable and policy.should_retry(attempt):
            await self._sleep(policy.delay_for(attempt))
            attempt += 1
            try:
                await self._records.upsert(record, self._config.record_ttl)
            except StoreError as exc:
                error = exc
            else:
                return None
        return RecordFailure(
            key=record.key,
            error_type=type(error).__name__,
            message=str(error),
            attempts=attempt,
        )

    async def _commit(
        self,
        records: list[MergeRequestRecord],
        progress: _RunProgress,
        started_at: dt.datetime,
    ) -> None:
        """Advance the checkpoint when every record was persisted.

        An empty fetch moves the watermark to ``started_at``, which precedes
        the GitLab query, so changes made during the run are fetched next time.
        """
        source = self._config.source_key
        previous = progress.cursor
        if progress.failures:
            log_warning(
                logger,
                "holding checkpoint for %s: %d record(s) failed",
                source,
                len(progress.failures),
            )
            return

        target = _max_dt(record.updated_at for record in records) or started_at
        if previous is not None and target <= previous:
            return

        expected = None if progress.checkpoint is None else progress.checkpoint.version
        try:
            swapped = await self._checkpoints.compare_and_swap(
                source, expected_version=expected, value=target
            )
        except StoreError as exc:
            progress.commit_error = exc
            log_warning(
                logger, "checkpoint write failed for %s: %s", source, exc, exc_info=exc
            )
            return

        if not swapped:
            self._emit(
                SyncEventType.CHECKPOINT_CONFLICT,
                {
                    "source": source,
                    "expected_version": expected,
                    "attempted_value": target,
                },
            )
            return

        progress.checkpoint_after = target
        progress.checkpoint_advanced = True
        self._emit(
            SyncEventType.CHECKPOINT_ADVANCED,
            {"source": source, "previous": previous, "current": target},
        )

    def _summarise(
        self,
        progress: _RunProgress,
        started_at: dt.datetime,
        *,
        error: Exception | None = None,
    ) -> SyncRunSummary:
        if error is not None:
            outcome = SyncOutcome.FAILURE
        elif progress.failures or progress.commit_error is not None:
            outcome = SyncOutcome.PARTIAL
            error = progress.commit_error
        else:
            outcome = SyncOutcome.SUCCESS

        return SyncRunSummary(
            source=self._config.source_key,
            outcome=outcome,
            started_at=started_at,
            duration=self._clock() - started_at,
            fetched=progress.fetched,
            upserted=progress.upserted,
            failed=len(progress.failures),
            checkpoint_before=progress.cursor,
            checkpoint_after=progress.checkpoint_after,
            checkpoint_advanced=progress.checkpoint_advanced,
            failed_stage=progress.stage if error is not None else None,
            error_type=None if error is None else type(error).__name__,
            error_category=None if error is None else categorize_error(error),
            error_message=None if error is None else str(error),
            failures=tuple(progress.failures),
        )

    def _emit(self, kind: SyncEventType, fields: cabc.Mapping[str, object]) -> None:
        """Publish an event; sink failures are logged and never fail a run."""
        try:
            self._sink.emit(SyncEvent(kind=kind, fields=fields))
        except Exception as exc:  # noqa: BLE001
            log_warning(logger, "observability sink rejected %s: %s", kind, exc)


__all__ = ["MergeRequestSyncWorker"]
