"""Invocation entry points for the merge request sync worker.

A scheduler triggers one sync run per tick through any of:

- :func:`run`: zero-argument call returning
  ``{"statusCode": int, "recordsProcessed": int}``.
- :func:`handler`: AWS Lambda-compatible ``handler(event, context)`` wrapper.
- ``python -m moondawg.runtime``: command-line run, with ``--init-db`` to
  create the SQL tables.
- :func:`moondawg.sync.actor.sync_merge_requests_job`: Dramatiq actor.

Configuration is read from ``MOONDAWG_*`` environment variables (see
:class:`moondawg.config.SyncConfig`); ``MOONDAWG_LOG_LEVEL`` selects the log
level (default ``INFO``).
"""

from __future__ import annotations

import argparse
import asyncio
import os
import typing as typ

from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from moondawg.config import ConfigError, CredentialSource, StoreBackend, SyncConfig
from moondawg.credentials import (
    EnvironmentCredentialProvider,
    ParameterStoreCredentialProvider,
)
from moondawg.gitlab import GitLabClientConfig, GitLabMergeRequestClient
from moondawg.logging import (
    configure_logging,
    get_logger,
    log_error,
    log_exception,
    log_info,
    log_warning,
)
from moondawg.store import (
    SqlCheckpointStore,
    SqlRecordStore,
    StoreError,
    init_storage,
)
from moondawg.sync.models import SyncOutcome, SyncStage
from moondawg.sync.observability import (
    LoggingSink,
    SyncEvent,
    SyncEventType,
    categorize_error,
)
from moondawg.sync.orchestrator import MergeRequestSyncWorker

if typ.TYPE_CHECKING:
    import collections.abc as cabc

    from sqlalchemy.ext.asyncio import AsyncEngine

    from moondawg.credentials import CredentialProvider
    from moondawg.gitlab import GitLabCredentials, MergeRequestSource
    from moondawg.store import CheckpointStore, RecordStore
    from moondawg.sync.models import SyncRunSummary
    from moondawg.sync.observability import ObservabilitySink

logger = get_logger(__name__)

_FAILURE_RESULT = {
    "statusCode": SyncOutcome.FAILURE.status_code,
    "recordsProcessed": 0,
}
_logging_configured = False


def _configure_logging(level: str | None) -> None:
    normalized_level, invalid_level = configure_logging(level)
    if invalid_level:
        log_warning(
            logger,
            "Invalid MOONDAWG_LOG_LEVEL %r, falling back to %s",
            level,
            normalized_level,
        )


def build_credentials(config: SyncConfig) -> CredentialProvider:
    """Return the credential provider selected by ``credential_source``."""
    if config.credential_source is CredentialSource.SSM:
        return ParameterStoreCredentialProvider()
    return EnvironmentCredentialProvider()


def build_source_factory(
    config: SyncConfig,
) -> cabc.Callable[[GitLabCredentials], MergeRequestSource]:
    """Return a factory creating one GitLab client per run."""
    client_config = GitLabClientConfig(
        project_id=config.project_id,
        base_url=config.gitlab_url,
        page_size=config.page_size,
        timeout_s=config.request_timeout_s,
        rate_limit_backoff=config.rate_limit_backoff,
        transient_backoff=config.transient_backoff,
    )

    def factory(credentials: GitLabCredentials) -> MergeRequestSource:
        return GitLabMergeRequestClient(client_config, credentials)

    return factory


def build_dynamodb_stores(config: SyncConfig) -> tuple[RecordStore, CheckpointStore]:
    """Return record and checkpoint stores bound to the configured tables."""
    from moondawg.store.dynamodb import DynamoCheckpointStore, DynamoRecordStore

    return (
        DynamoRecordStore.from_table_name(
            config.dynamodb_table_name, timeout_s=config.store_timeout_s
        ),
        DynamoCheckpointStore.from_table_name(
            config.dynamodb_checkpoint_table_name, timeout_s=config.store_timeout_s
        ),
    )


def build_sql_stores(
    config: SyncConfig, engine: AsyncEngine
) -> tuple[SqlRecordStore, SqlCheckpointStore]:
    """Return record and checkpoint stores sharing one session factory."""
    session_factory = async_sessionmaker(engine, expire_on_commit=False)
    return (
        SqlRecordStore(session_factory, timeout_s=config.store_timeout_s),
        SqlCheckpointStore(session_factory, timeout_s=config.store_timeout_s),
    )


def build_worker(
    config: SyncConfig,
    *,
    records: RecordStore,
    checkpoints: CheckpointStore,
    sink: ObservabilitySink | None = None,
) -> MergeRequestSyncWorker:
    """Wire a worker from configuration and the given stores."""
    return MergeRequestSyncWorker(
        config,
        credentials=build_credentials(config),
        source_factory=build_source_factory(config),
        records=records,
        checkpoints=checkpoints,
        sink=sink,
    )


async def _purge_expired(records: RecordStore) -> None:
    try:
        removed = await records.purge_expired()
    except StoreError as exc:
        log_warning(logger, "purge of expired merge requests failed: %s", exc)
        return
    if removed:
        log_info(logger, "purged %d expired merge request(s)", removed)


async def run_sync(
    config: SyncConfig, *, sink: ObservabilitySink | None = None
) -> SyncRunSummary:
    """Run one sync against the configured backend.

    The SQL backend creates its tables on demand and purges expired rows after
    the run; DynamoDB expires items natively.
    """
    if config.store_backend is StoreBackend.DYNAMODB:
        records, checkpoints = build_dynamodb_stores(config)
        return await build_worker(
            config, records=records, checkpoints=checkpoints, sink=sink
        ).run()

    engine = create_async_engine(config.database_url)
    try:
        await init_storage(engine)
        sql_records, sql_checkpoints = build_sql_stores(config, engine)
        summary = await build_worker(
            config, records=sql_records, checkpoints=sql_checkpoints, sink=sink
        ).run()
        await _purge_expired(sql_records)
        return summary
    finally:
        await engine.dispose()


def _report_failure(
    sink: ObservabilitySink, exc: Exception, *, source: str | None
) -> None:
    """Emit a failed-run event for errors raised outside the worker."""
    event = SyncEvent(
        SyncEventType.RUN_FAILED,
        {
            "source": source,
            "outcome": SyncOutcome.FAILURE,
            "status_code": SyncOutcome.FAILURE.status_code,
            "failed_stage": SyncStage.START,
            "error_type": type(exc).__name__,
            "error_category": categorize_error(exc),
            "error_message": str(exc),
        },
    )
    try:
        sink.emit(event)
    except Exception as sink_exc:  # noqa: BLE001
        log_warning(
            logger, "observability sink rejected %s: %s", event.kind, sink_exc
        )


def run(*, sink: ObservabilitySink | None = None) -> dict[str, int]:
    """Run one sync from environment configuration.

    Every failure, including those before the worker starts, is reported to
    ``sink`` (default :class:`LoggingSink`) as a ``sync.run.failed`` event.

    Returns
    -------
    dict[str, int]
        ``statusCode`` (200 success, 207 partial, 500 failure) and
        ``recordsProcessed``, the number of records upserted.

    """
    sink = sink or LoggingSink()
    try:
        config = SyncConfig.from_env()
    except ConfigError as exc:
        log_error(logger, "Invalid configuration: %s", exc)
        _report_failure(sink, exc, source=None)
        return dict(_FAILURE_RESULT)

    try:
        summary = asyncio.run(run_sync(config, sink=sink))
    except Exception as exc:  # noqa: BLE001 - scheduler always gets a result
        log_exception(logger, "sync run failed outside the worker", exc)
        _report_failure(sink, exc, source=config.source_key)
        return dict(_FAILURE_RESULT)
    return summary.to_invocation_result()


def handler(event: object, context: object) -> dict[str, int]:  # noqa: ARG001
    """AWS Lambda entry point; the event payload is ignored."""
    global _logging_configured

    if not _logging_configured:
        _configure_logging(os.environ.get("MOONDAWG_LOG_LEVEL", "INFO"))
        _logging_configured = True
    return run()


async def _init_db(database_url: str) -> None:
    engine = create_async_engine(database_url)
    try:
        await init_storage(engine)
    finally:
        await engine.dispose()


def main(argv: list[str] | None = None) -> int:
    """Run one merge request sync from the command line.

    Parameters
    ----------
    argv : list[str] | None, optional
        Command-line arguments. ``None`` defaults to ``sys.argv``.

    Returns
    -------
    int
        Exit code: 0 when every record was synced, 1 otherwise.

    """
    parser = argparse.ArgumentParser(
        prog="moondawg", description="Sync GitLab merge requests once."
    )
    parser.add_argument(
        "--log-level",
        default=os.environ.get("MOONDAWG_LOG_LEVEL", "INFO"),
        help="Log level (default: MOONDAWG_LOG_LEVEL or INFO)",
    )
    parser.add_argument(
        "--init-db",
        action="store_true",
        help="Create the SQL tables at MOONDAWG_DATABASE_URL and exit",
    )
    args = parser.parse_args(argv)
    _configure_logging(args.log_level)

    if args.init_db:
        database_url = os.environ.get(
            "MOONDAWG_DATABASE_URL", SyncConfig(project_id=0).database_url
        )
        asyncio.run(_init_db(database_url))
        log_info(logger, "initialised storage tables")
        return 0

    result = run()
    log_info(
        logger,
        "sync finished status_code=%d records_processed=%d",
        result["statusCode"],
        result["recordsProcessed"],
    )
    return 0 if result["statusCode"] == SyncOutcome.SUCCESS.status_code else 1


if __name__ == "__main__":
    raise SystemExit(main())
