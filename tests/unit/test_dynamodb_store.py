"""Unit tests for the DynamoDB record and checkpoint stores."""

from __future__ import annotations

import datetime as dt
import decimal
import time
import typing as typ

import pytest
from botocore.exceptions import ClientError

from moondawg.gitlab import MergeRequestKey, MergeRequestRecord, MergeRequestState
from moondawg.store import Checkpoint, StoreError, StoreUnavailable, ValidationError
from moondawg.store.dynamodb import DynamoCheckpointStore, DynamoRecordStore

if typ.TYPE_CHECKING:
    from tests.helpers.fakes import FakeClock

_Item: typ.TypeAlias = "dict[str, typ.Any]"


def _client_error(code: str, operation: str = "PutItem") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}}, operation)


def _matches(condition: typ.Any, item: _Item | None) -> bool:  # noqa: ANN401
    """Evaluate the boto3 condition shapes used by the stores."""
    expression = condition.get_expression()
    operator = expression["operator"]
    attr, *operands = expression["values"]
    if operator == "attribute_not_exists":
        return item is None or attr.name not in item
    if item is None or attr.name not in item:
        return False
    if operator == "=":
        return item[attr.name] == operands[0]
    if operator == "<=":
        return item[attr.name] <= operands[0]
    raise AssertionError(operator)


class _FakeBatchWriter:
    def __init__(self, table: _FakeTable) -> None:
        self._table = table

    def __enter__(self) -> _FakeBatchWriter:
        return self

    def __exit__(self, *exc_info: object) -> None:
        return None

    def delete_item(self, *, Key: _Item) -> None:  # noqa: N803
        self._table.items.pop(self._table.key_of(Key), None)


class _FakeTable:
    """In-memory stand-in for a boto3 DynamoDB ``Table`` resource."""

    def __init__(
        self, *key_names: str, error: ClientError | None = None, page_size: int = 1
    ) -> None:
        self.key_names = key_names
        self.items: dict[tuple[typ.Any, ...], _Item] = {}
        self.error = error
        self.page_size = page_size
        self.scans = 0

    def key_of(self, item: _Item) -> tuple[typ.Any, ...]:
        return tuple(item[name] for name in self.key_names)

    def put_item(
        self,
        *,
        Item: _Item,  # noqa: N803
        ConditionExpression: typ.Any = None,  # noqa: N803, ANN401
    ) -> _Item:
        if self.error is not None:
            raise self.error
        key = self.key_of(Item)
        if ConditionExpression is not None and not _matches(
            ConditionExpression, self.items.get(key)
        ):
            raise _client_error("ConditionalCheckFailedException")
        self.items[key] = dict(Item)
        return {}

    def get_item(
        self,
        *,
        Key: _Item,  # noqa: N803
        ConsistentRead: bool = False,  # noqa: N803
    ) -> _Item:
        assert ConsistentRead
        item = self.items.get(self.key_of(Key))
        return {} if item is None else {"Item": dict(item)}

    def scan(self, **kwargs: typ.Any) -> _Item:  # noqa: ANN401
        self.scans += 1
        keys = sorted(self.items)
        start = kwargs.get("ExclusiveStartKey")
        if start is not None:
            keys = [key for key in keys if key > self.key_of(start)]
        page = keys[: self.page_size]
        matched = [
            self.items[key]
            for key in page
            if _matches(kwargs["FilterExpression"], self.items[key])
        ]
        response: _Item = {"Items": matched}
        if len(keys) > self.page_size:
            last_key = zip(self.key_names, page[-1], strict=True)
            response["LastEvaluatedKey"] = dict(last_key)
        return response

    def batch_writer(self) -> _FakeBatchWriter:
        return _FakeBatchWriter(self)


def _record(iid: int = 10, *, title: str = "A") -> MergeRequestRecord:
    return MergeRequestRecord(
        project_id=1,
        iid=iid,
        title=title,
        updated_at=dt.datetime(2024, 1, 1, 8, 15, tzinfo=dt.UTC),
        state=MergeRequestState.OPENED,
    )


@pytest.fixture
def records_table() -> _FakeTable:
    """Return an empty merge request table keyed on project_id and iid."""
    return _FakeTable("project_id", "iid")


@pytest.mark.asyncio
async def test_upsert_writes_ttl_in_epoch_seconds(
    records_table: _FakeTable, clock: FakeClock
) -> None:
    """Items carry the table's ttl attribute as whole epoch seconds."""
    store = DynamoRecordStore(records_table, clock=clock)

    await store.upsert(_record(), dt.timedelta(hours=1))

    item = records_table.items[(1, 10)]
    expected_ttl = int((clock.now + dt.timedelta(hours=1)).timestamp())
    assert item == {
        "project_id": 1,
        "iid": 10,
        "title": "A",
        "state": "opened",
        "updated_at": "2024-01-01T08:15:00+00:00",
        "ttl": expected_ttl,
    }


@pytest.mark.asyncio
async def test_upsert_is_idempotent_and_overwrites(
    records_table: _FakeTable, clock: FakeClock
) -> None:
    """Repeated puts keep one item per key holding the latest attributes."""
    store = DynamoRecordStore(records_table, clock=clock)

    await store.upsert(_record(title="A"), dt.timedelta(hours=1))
    await store.upsert(_record(title="A"), dt.timedelta(hours=1))
    await store.upsert(_record(title="A (rebased)"), dt.timedelta(hours=1))

    assert len(records_table.items) == 1
    assert await store.get(MergeRequestKey(1, 10)) == _record(title="A (rebased)")


@pytest.mark.asyncio
async def test_get_hides_items_past_their_ttl(
    records_table: _FakeTable, clock: FakeClock
) -> None:
    """DynamoDB deletes lazily, so reads filter on ttl themselves."""
    store = DynamoRecordStore(records_table, clock=clock)
    await store.upsert(_record(), dt.timedelta(seconds=1))

    clock.advance(dt.timedelta(seconds=2))

    assert await store.get(MergeRequestKey(1, 10)) is None
    assert (1, 10) in records_table.items


@pytest.mark.asyncio
async def test_get_converts_decimal_numbers(
    records_table: _FakeTable, clock: FakeClock
) -> None:
    """Numbers returned as Decimal by boto3 are converted back to ints."""
    records_table.items[(1, 10)] = {
        "project_id": decimal.Decimal(1),
        "iid": decimal.Decimal(10),
        "title": "A",
        "state": "merged",
        "updated_at": "2024-01-01T08:15:00+00:00",
        "ttl": decimal.Decimal(int(clock.now.timestamp()) + 60),
    }
    store = DynamoRecordStore(records_table, clock=clock)

    record = await store.get(MergeRequestKey(1, 10))

    assert record is not None
    assert (record.project_id, record.iid) == (1, 10)
    assert record.state is MergeRequestState.MERGED


@pytest.mark.asyncio
async def test_purge_expired_follows_scan_pages(
    records_table: _FakeTable, clock: FakeClock
) -> None:
    """Expired items on every scan page are deleted; live ones stay."""
    store = DynamoRecordStore(records_table, clock=clock)
    await store.upsert(_record(1), dt.timedelta(seconds=1))
    await store.upsert(_record(2), dt.timedelta(hours=1))
    await store.upsert(_record(3), dt.timedelta(seconds=1))
    clock.advance(dt.timedelta(seconds=5))

    removed = await store.purge_expired()

    assert removed == 2
    assert list(records_table.items) == [(1, 2)]
    assert records_table.scans == 3


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("code", "error_type", "retryable"),
    [
        ("ProvisionedThroughputExceededException", StoreUnavailable, True),
        ("ThrottlingException", StoreUnavailable, True),
        ("ValidationException", ValidationError, False),
        ("AccessDeniedException", StoreError, False),
    ],
)
async def test_client_errors_are_translated(
    clock: FakeClock, code: str, error_type: type[StoreError], *, retryable: bool
) -> None:
    """Throttling is retryable; rejected or forbidden writes are not."""
    table = _FakeTable("project_id", "iid", error=_client_error(code))
    store = DynamoRecordStore(table, clock=clock)

    with pytest.raises(error_type) as excinfo:
        await store.upsert(_record(), dt.timedelta(hours=1))

    assert excinfo.value.retryable is retryable
    assert excinfo.value.key == "1!10"


@pytest.mark.asyncio
async def test_batch_reports_per_record_outcomes(
    records_table: _FakeTable, clock: FakeClock
) -> None:
    """An invalid record fails alone inside a batch."""
    store = DynamoRecordStore(records_table, clock=clock)
    bad = MergeRequestRecord(
        project_id=1,
        iid=0,
        title="bad",
        updated_at=dt.datetime(2024, 1, 1, tzinfo=dt.UTC),
        state=MergeRequestState.CLOSED,
    )

    outcomes = await store.upsert_batch(
        [_record(1), bad, _record(2)], dt.timedelta(hours=1)
    )

    assert [outcome.ok for outcome in outcomes] == [True, False, True]
    assert sorted(records_table.items) == [(1, 1), (1, 2)]


@pytest.mark.asyncio
async def test_checkpoint_compare_and_swap() -> None:
    """Conditional puts create, advance, and reject stale checkpoint writes."""
    table = _FakeTable("source")
    store = DynamoCheckpointStore(table)
    source = "gitlab:project:1"
    jan_2 = dt.datetime(2024, 1, 2, tzinfo=dt.UTC)
    jan_3 = dt.datetime(2024, 1, 3, 12, 0, 0, 250000, tzinfo=dt.UTC)

    assert await store.load(source) is None
    assert await store.compare_and_swap(source, expected_version=None, value=jan_2)
    assert not await store.compare_and_swap(source, expected_version=None, value=jan_3)
    assert await store.compare_and_swap(source, expected_version=1, value=jan_3)
    assert not await store.compare_and_swap(source, expected_version=1, value=jan_2)

    assert await store.load(source) == Checkpoint(source, jan_3, 2)


@pytest.mark.asyncio
async def test_checkpoint_backend_errors_propagate() -> None:
    """Failures other than a lost condition are raised to the caller."""
    table = _FakeTable("source", error=_client_error("ThrottlingException"))
    store = DynamoCheckpointStore(table)

    with pytest.raises(StoreUnavailable):
        await store.compare_and_swap(
            "gitlab:project:1",
            expected_version=None,
            value=dt.datetime(2024, 1, 2, tzinfo=dt.UTC),
        )


class _SlowScanTable(_FakeTable):
    """Table whose scans block longer than the store timeout."""

    def scan(self, **kwargs: typ.Any) -> _Item:  # noqa: ANN401
        time.sleep(0.2)
        return super().scan(**kwargs)


@pytest.mark.asyncio
async def test_purge_is_bounded_by_the_store_timeout(clock: FakeClock) -> None:
    """A purge scan that hangs surfaces as StoreUnavailable."""
    store = DynamoRecordStore(
        _SlowScanTable("project_id", "iid"), timeout_s=0.01, clock=clock
    )

    with pytest.raises(StoreUnavailable, match="purge timed out"):
        await store.purge_expired()
