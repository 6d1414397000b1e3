"""DynamoDB backends for merge requests and sync checkpoints.

The merge request table is keyed on ``project_id`` (hash) and ``iid``
(range), both numbers, with DynamoDB TTL enabled on the ``ttl`` attribute
(epoch seconds). DynamoDB deletes expired items lazily, so reads filter on
``ttl`` as well.

The checkpoint table is keyed on ``source`` and advanced with conditional
puts on ``version``.
"""

from __future__ import annotations

import asyncio
import collections.abc as cabc
import datetime as dt
import typing as typ

from boto3.dynamodb.conditions import Attr
from botocore.exceptions import BotoCoreError, ClientError

from moondawg.common.time import (
    ensure_utc,
    parse_iso_datetime,
    to_epoch_seconds,
    utcnow,
)
from moondawg.gitlab.models import (
    MergeRequestKey,
    MergeRequestRecord,
    MergeRequestState,
)

from .checkpoints import Checkpoint
from .errors import StoreError, StoreUnavailable, ValidationError
from .records import Clock, UpsertOutcome, upsert_each, validate_record, validate_ttl

# Error codes that mean "try again later" rather than "this write is wrong".
_RETRYABLE_CODES = frozenset(
    {
        "InternalServerError",
        "ProvisionedThroughputExceededException",
        "RequestLimitExceeded",
        "ServiceUnavailable",
        "ThrottlingException",
    }
)
_CONDITIONAL_CHECK_FAILED = "ConditionalCheckFailedException"
_VALIDATION_EXCEPTION = "ValidationException"


def _error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code", "ClientError"))


def _translate(
    exc: ClientError | BotoCoreError, operation: str, *, key: str | None = None
) -> StoreError:
    """Map a botocore failure onto the store error taxonomy."""
    if isinstance(exc, BotoCoreError):
        return StoreUnavailable.backend(operation, type(exc).__name__, key=key)
    code = _error_code(exc)
    if code in _RETRYABLE_CODES:
        return StoreUnavailable.backend(operation, code, key=key)
    if code == _VALIDATION_EXCEPTION:
        return ValidationError(f"{operation} rejected: {exc}", key=key)
    return StoreError(f"{operation} failed: {code}", key=key)


T = typ.TypeVar("T")


async def _call(
    fn: cabc.Callable[[], T],
    *,
    operation: str,
    timeout_s: float,
    key: str | None = None,
) -> T:
    """Run a blocking boto3 call in a thread under a timeout."""
    try:
        async with asyncio.timeout(timeout_s):
            return await asyncio.to_thread(fn)
    except TimeoutError as exc:
        raise StoreUnavailable.timed_out(operation, timeout_s, key=key) from exc
    except (ClientError, BotoCoreError) as exc:
        raise _translate(exc, operation, key=key) from exc


def _item_to_record(item: dict[str, typ.Any]) -> MergeRequestRecord:
    return MergeRequestRecord(
        project_id=int(item["project_id"]),
        iid=int(item["iid"]),
        title=str(item["title"]),
        updated_at=parse_iso_datetime(str(item["updated_at"])),
        state=MergeRequestState(str(item["state"])),
    )


class DynamoRecordStore:
    """DynamoDB implementation of :class:`~moondawg.store.records.RecordStore`.

    ``put_item`` replaces the whole item for a key, which makes every upsert
    idempotent without a read.
    """

    def __init__(
        self,
        table: typ.Any,  # noqa: ANN401 - boto3 Table resource
        *,
        timeout_s: float = 5.0,
        clock: Clock = utcnow,
    ) -> None:
        """Wrap a boto3 ``Table`` resource."""
        self._table = table
        self._timeout_s = timeout_s
        self._clock = clock

    @classmethod
    def from_table_name(
        cls, table_name: str, **kwargs: typ.Any  # noqa: ANN401
    ) -> DynamoRecordStore:
        """Build a store bound to ``table_name`` using the default session."""
        import boto3

        return cls(boto3.resource("dynamodb").Table(table_name), **kwargs)

    async def upsert(self, record: MergeRequestRecord, ttl: dt.timedelta) -> None:
        """Put the record with ``ttl`` set to ``now + ttl`` in epoch seconds."""
        validate_record(record)
        validate_ttl(ttl)
        item = {
            "project_id": record.project_id,
            "iid": record.iid,
            "title": record.title,
            "state": record.state.value,
            "updated_at": record.updated_at.astimezone(dt.UTC).isoformat(),
            "ttl": to_epoch_seconds(self._clock() + ttl),
        }
        await _call(
            lambda: self._table.put_item(Item=item),
            operation="put_item",
            timeout_s=self._timeout_s,
            key=str(record.key),
        )

    async def upsert_batch(
        self, records: cabc.Sequence[MergeRequestRecord], ttl: dt.timedelta
    ) -> list[UpsertOutcome]:
        """Put each record individually so failures are reported per key."""
        return await upsert_each(self, records, ttl)

    async def get(
        self, key: MergeRequestKey, *, now: dt.datetime | None = None
    ) -> MergeRequestRecord | None:
        """Return the live item for ``key``; expired items are ignored."""
        cutoff = to_epoch_seconds(now or self._clock())
        response = await _call(
            lambda: self._table.get_item(
                Key={"project_id": key.project_id, "iid": key.iid},
                ConsistentRead=True,
            ),
            operation="get_item",
            timeout_s=self._timeout_s,
            key=str(key),
        )
        item = response.get("Item")
        if item is None or int(item.get("ttl", 0)) <= cutoff:
            return None
        return _item_to_record(item)

    async def purge_expired(self, *, now: dt.datetime | None = None) -> int:
        """Delete items whose ``ttl`` has passed ahead of DynamoDB's sweeper."""
        cutoff = to_epoch_seconds(now or self._clock())

        def _purge() -> int:
            removed = 0
            scan_kwargs: dict[str, typ.Any] = {
                "FilterExpression": Attr("ttl").lte(cutoff),
                "ProjectionExpression": "project_id, iid",
            }
            with self._table.batch_writer() as batch:
                while True:
                    response = self._table.scan(**scan_kwargs)
                    for item in response.get("Items", []):
                        batch.delete_item(
                            Key={"project_id": item["project_id"], "iid": item["iid"]}
                        )
                        removed += 1
                    last_key = response.get("LastEvaluatedKey")
                    if last_key is None:
                        return removed
                    scan_kwargs["ExclusiveStartKey"] = last_key

        return await _call(_purge, operation="purge", timeout_s=self._timeout_s)


class DynamoCheckpointStore:
    """DynamoDB checkpoint store using conditional puts on ``version``."""

    def __init__(
        self,
        table: typ.Any,  # noqa: ANN401 - boto3 Table resource
        *,
        timeout_s: float = 5.0,
    ) -> None:
        """Wrap a boto3 ``Table`` resource keyed on ``source``."""
        self._table = table
        self._timeout_s = timeout_s

    @classmethod
    def from_table_name(
        cls, table_name: str, **kwargs: typ.Any  # noqa: ANN401
    ) -> DynamoCheckpointStore:
        """Build a store bound to ``table_name`` using the default session."""
        import boto3

        return cls(boto3.resource("dynamodb").Table(table_name), **kwargs)

    async def load(self, source: str) -> Checkpoint | None:
        """Return the checkpoint item for ``source``."""
        response = await _call(
            lambda: self._table.get_item(Key={"source": source}, ConsistentRead=True),
            operation="checkpoint load",
            timeout_s=self._timeout_s,
        )
        item = response.get("Item")
        if item is None:
            return None
        return Checkpoint(
            source=source,
            last_synced_at=parse_iso_datetime(str(item["last_synced_at"])),
            version=int(item["version"]),
        )

    async def compare_and_swap(
        self,
        source: str,
        *,
        expected_version: int | None,
        value: dt.datetime,
    ) -> bool:
        """Conditionally put the new watermark; False when the condition fails."""
        value = ensure_utc(value, field="checkpoint value")
        new_version = 1 if expected_version is None else expected_version + 1
        condition = (
            Attr("source").not_exists()
            if expected_version is None
            else Attr("version").eq(expected_version)
        )
        item = {
            "source": source,
            "last_synced_at": value.isoformat(),
            "version": new_version,
        }
        try:
            await _call(
                lambda: self._table.put_item(Item=item, ConditionExpression=condition),
                operation="checkpoint swap",
                timeout_s=self._timeout_s,
            )
        except StoreError as exc:
            cause = exc.__cause__
            if isinstance(cause, ClientError) and (
                _error_code(cause) == _CONDITIONAL_CHECK_FAILED
            ):
                return False
            raise
        return True


__all__ = ["DynamoCheckpointStore", "DynamoRecordStore"]
