"""Idempotent merge request upserts with time-to-live expiry.

Writes are keyed by ``(project_id, iid)``: repeating an upsert with the same
attributes leaves the stored state unchanged apart from a refreshed
``expires_at``, and an upsert with different attributes overwrites. Reads
never return an entry whose ``expires_at`` has passed, even before
:meth:`SqlRecordStore.purge_expired` removes it physically.
"""

from __future__ import annotations

import asyncio
import collections.abc as cabc
import contextlib
import dataclasses
import datetime as dt
import typing as typ

from sqlalchemy import delete, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import InterfaceError, OperationalError, SQLAlchemyError

from moondawg.common.time import utcnow
from moondawg.gitlab.models import (
    MergeRequestKey,
    MergeRequestRecord,
    MergeRequestState,
)

from .errors import StoreError, StoreUnavailable, ValidationError
from .storage import MergeRequestRow

if typ.TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    SessionFactory: typ.TypeAlias = async_sessionmaker[AsyncSession]

Clock: typ.TypeAlias = "cabc.Callable[[], dt.datetime]"


@dataclasses.dataclass(frozen=True, slots=True)
class UpsertOutcome:
    """Per-record result of :meth:`RecordStore.upsert_batch`."""

    key: MergeRequestKey
    error: StoreError | None = None

    @property
    def ok(self) -> bool:
        """Return True when the record was stored."""
        return self.error is None


class RecordStore(typ.Protocol):
    """Key-value persistence for merge requests with TTL expiry."""

    async def upsert(self, record: MergeRequestRecord, ttl: dt.timedelta) -> None:
        """Insert or overwrite ``record`` and set ``expires_at = now + ttl``."""
        ...

    async def upsert_batch(
        self, records: cabc.Sequence[MergeRequestRecord], ttl: dt.timedelta
    ) -> list[UpsertOutcome]:
        """Upsert each record independently and report per-key outcomes."""
        ...

    async def get(
        self, key: MergeRequestKey, *, now: dt.datetime | None = None
    ) -> MergeRequestRecord | None:
        """Return the live record for ``key`` or None if absent or expired."""
        ...

    async def purge_expired(self, *, now: dt.datetime | None = None) -> int:
        """Delete expired entries and return how many were removed."""
        ...


def _is_int(value: object) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def validate_record(record: MergeRequestRecord) -> None:
    """Raise :class:`ValidationError` when a record cannot be stored.

    Records normally come from the validated GitLab schema; this guards the
    store against callers building records by hand.
    """
    key = f"{record.project_id}!{record.iid}"
    if not _is_int(record.project_id) or record.project_id < 1:
        raise ValidationError.invalid_field("project_id", record.project_id, key=key)
    if not _is_int(record.iid) or record.iid < 1:
        raise ValidationError.invalid_field("iid", record.iid, key=key)
    if not isinstance(record.title, str):
        raise ValidationError.invalid_field("title", record.title, key=key)
    updated_at = record.updated_at
    if not isinstance(updated_at, dt.datetime) or updated_at.tzinfo is None:
        raise ValidationError.invalid_field("updated_at", updated_at, key=key)
    if not isinstance(record.state, MergeRequestState):
        raise ValidationError.invalid_field("state", record.state, key=key)


def validate_ttl(ttl: dt.timedelta) -> None:
    """Reject non-positive TTLs, which would store already-expired entries."""
    if ttl <= dt.timedelta(0):
        raise ValidationError.invalid_field("ttl", ttl)


async def upsert_each(
    store: RecordStore,
    records: cabc.Sequence[MergeRequestRecord],
    ttl: dt.timedelta,
) -> list[UpsertOutcome]:
    """Upsert records one at a time, isolating each record's failure."""
    outcomes: list[UpsertOutcome] = []
    for record in records:
        try:
            await store.upsert(record, ttl)
        except StoreError as exc:
            outcomes.append(UpsertOutcome(key=record.key, error=exc))
        else:
            outcomes.append(UpsertOutcome(key=record.key))
    return outcomes


_OVERWRITTEN_COLUMNS = ("title", "state", "updated_at", "expires_at", "stored_at")


def _row_to_record(row: MergeRequestRow) -> MergeRequestRecord:
    return MergeRequestRecord(
        project_id=row.project_id,
        iid=row.iid,
        title=row.title,
        updated_at=row.updated_at,
        state=MergeRequestState(row.state),
    )


class SqlRecordStore:
    """SQLAlchemy-backed :class:`RecordStore`.

    PostgreSQL and SQLite use native ``INSERT ... ON CONFLICT DO UPDATE`` so
    concurrent runs upserting the same key never collide; other dialects fall
    back to :meth:`AsyncSession.merge`.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        timeout_s: float = 5.0,
        clock: Clock = utcnow,
    ) -> None:
        """Bind the store to a session factory and per-operation timeout."""
        self._session_factory = session_factory
        self._timeout_s = timeout_s
        self._clock = clock

    @contextlib.asynccontextmanager
    async def _bounded(
        self, operation: str, *, key: str | None = None
    ) -> cabc.AsyncIterator[None]:
        """Apply the store timeout and map SQLAlchemy failures to store errors."""
        try:
            async with asyncio.timeout(self._timeout_s):
                yield
        except TimeoutError as exc:
            raise StoreUnavailable.timed_out(
                operation, self._timeout_s, key=key
            ) from exc
        except (OperationalError, InterfaceError) as exc:
            raise StoreUnavailable.backend(operation, str(exc.orig), key=key) from exc
        except SQLAlchemyError as exc:
            raise StoreError(f"{operation} failed: {exc}", key=key) from exc

    async def upsert(self, record: MergeRequestRecord, ttl: dt.timedelta) -> None:
        """Insert or overwrite ``record`` with a refreshed expiry."""
        validate_record(record)
        validate_ttl(ttl)
        now = self._clock()
        values = {
            "project_id": record.project_id,
            "iid": record.iid,
            "title": record.title,
            "state": record.state.value,
            "updated_at": record.updated_at,
            "expires_at": now + ttl,
            "stored_at": now,
        }
        async with (
            self._bounded("upsert", key=str(record.key)),
            self._session_factory() as session,
            session.begin(),
        ):
            await self._write(session, values)

    @staticmethod
    async def _write(session: AsyncSession, values: dict[str, typ.Any]) -> None:
        dialect = session.get_bind().dialect.name
        if dialect in {"postgresql", "sqlite"}:
            insert = postgresql.insert if dialect == "postgresql" else sqlite.insert
            stmt = insert(MergeRequestRow).values(**values)
            stmt = stmt.on_conflict_do_update(
                index_elements=[MergeRequestRow.project_id, MergeRequestRow.iid],
                set_={name: stmt.excluded[name] for name in _OVERWRITTEN_COLUMNS},
            )
            await session.execute(stmt)
            return
        await session.merge(MergeRequestRow(**values))

    async def upsert_batch(
        self, records: cabc.Sequence[MergeRequestRecord], ttl: dt.timedelta
    ) -> list[UpsertOutcome]:
        """Upsert each record in its own transaction."""
        return await upsert_each(self, records, ttl)

    async def get(
        self, key: MergeRequestKey, *, now: dt.datetime | None = None
    ) -> MergeRequestRecord | None:
        """Return the live record for ``key``."""
        cutoff = now or self._clock()
        async with (
            self._bounded("get", key=str(key)),
            self._session_factory() as session,
        ):
            row = await session.scalar(
                select(MergeRequestRow).where(
                    MergeRequestRow.project_id == key.project_id,
                    MergeRequestRow.iid == key.iid,
                    MergeRequestRow.expires_at > cutoff,
                )
            )
        return None if row is None else _row_to_record(row)

    async def purge_expired(self, *, now: dt.datetime | None = None) -> int:
        """Delete rows whose ``expires_at`` is at or before ``now``."""
        cutoff = now or self._clock()
        async with (
            self._bounded("purge"),
            self._session_factory() as session,
            session.begin(),
        ):
            result = await session.execute(
                delete(MergeRequestRow).where(MergeRequestRow.expires_at <= cutoff)
            )
        return int(result.rowcount or 0)


__all__ = [
    "Clock",
    "RecordStore",
    "SqlRecordStore",
    "UpsertOutcome",
    "upsert_each",
    "validate_record",
    "validate_ttl",
]
