"""Versioned sync checkpoints advanced by compare-and-swap.

A checkpoint is owned by whichever run read it: that run may only replace it
if the stored ``version`` still matches what it loaded. Overlapping runs
therefore never need a lock; the loser of a race simply keeps its
(idempotently written) records and drops its checkpoint write.
"""

from __future__ import annotations

import asyncio
import dataclasses
import datetime as dt
import typing as typ

from sqlalchemy import select, update
from sqlalchemy.exc import (
    IntegrityError,
    InterfaceError,
    OperationalError,
    SQLAlchemyError,
)

from moondawg.common.time import ensure_utc, utcnow

from .errors import StoreError, StoreUnavailable
from .storage import SyncCheckpoint

if typ.TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    SessionFactory: typ.TypeAlias = async_sessionmaker[AsyncSession]


@dataclasses.dataclass(frozen=True, slots=True)
class Checkpoint:
    """Snapshot of a source's watermark and the version it was read at."""

    source: str
    last_synced_at: dt.datetime
    version: int


class CheckpointStore(typ.Protocol):
    """Externally owned, versioned watermark per ingestion source."""

    async def load(self, source: str) -> Checkpoint | None:
        """Return the current checkpoint, or None before the first success."""
        ...

    async def compare_and_swap(
        self,
        source: str,
        *,
        expected_version: int | None,
        value: dt.datetime,
    ) -> bool:
        """Store ``value`` if the version still matches; return whether it did.

        ``expected_version=None`` means the caller saw no checkpoint and the
        write only succeeds if none has been created since.
        """
        ...


class SqlCheckpointStore:
    """SQLAlchemy implementation of :class:`CheckpointStore`."""

    def __init__(
        self, session_factory: SessionFactory, *, timeout_s: float = 5.0
    ) -> None:
        """Bind the store to a session factory and per-operation timeout."""
        self._session_factory = session_factory
        self._timeout_s = timeout_s

    async def load(self, source: str) -> Checkpoint | None:
        """Return the stored checkpoint for ``source``."""
        try:
            async with asyncio.timeout(self._timeout_s):
                async with self._session_factory() as session:
                    row = await session.scalar(
                        select(SyncCheckpoint).where(SyncCheckpoint.source == source)
                    )
        except TimeoutError as exc:
            raise StoreUnavailable.timed_out(
                "checkpoint load", self._timeout_s
            ) from exc
        except (OperationalError, InterfaceError) as exc:
            raise StoreUnavailable.backend("checkpoint load", str(exc.orig)) from exc

        if row is None:
            return None
        return Checkpoint(
            source=row.source,
            last_synced_at=row.last_synced_at,
            version=row.version,
        )

    async def compare_and_swap(
        self,
        source: str,
        *,
        expected_version: int | None,
        value: dt.datetime,
    ) -> bool:
        """Advance the checkpoint only if nobody else advanced it first."""
        value = ensure_utc(value, field="checkpoint value")
        try:
            async with asyncio.timeout(self._timeout_s):
                if expected_version is None:
                    return await self._create(source, value)
                return await self._advance(source, expected_version, value)
        except TimeoutError as exc:
            raise StoreUnavailable.timed_out(
                "checkpoint swap", self._timeout_s
            ) from exc
        except (OperationalError, InterfaceError) as exc:
            raise StoreUnavailable.backend("checkpoint swap", str(exc.orig)) from exc
        except SQLAlchemyError as exc:
            raise StoreError(f"checkpoint swap failed: {exc}") from exc

    async def _create(self, source: str, value: dt.datetime) -> bool:
        async with self._session_factory() as session:
            session.add(SyncCheckpoint(source=source, last_synced_at=value, version=1))
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                return False
        return True

    async def _advance(
        self, source: str, expected_version: int, value: dt.datetime
    ) -> bool:
        async with self._session_factory() as session, session.begin():
            result = await session.execute(
                update(SyncCheckpoint)
                .where(
                    SyncCheckpoint.source == source,
                    SyncCheckpoint.version == expected_version,
                )
                .values(
                    last_synced_at=value,
                    version=SyncCheckpoint.version + 1,
                    updated_at=utcnow(),
                )
            )
        return result.rowcount == 1


__all__ = ["Checkpoint", "CheckpointStore", "SqlCheckpointStore"]
