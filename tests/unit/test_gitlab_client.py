"""Unit tests for the GitLab merge request client."""

from __future__ import annotations

import datetime as dt
import secrets
import typing as typ

import httpx
import pytest

from moondawg.gitlab import (
    GitLabClientConfig,
    GitLabConfigError,
    GitLabCredentials,
    GitLabMergeRequestClient,
    InvalidResponse,
    MergeRequestKey,
    MergeRequestRecord,
    MergeRequestState,
    RateLimitExceeded,
    TransientFetchError,
)
from tests.helpers.femtologging_capture import capture_femto_logs
from tests.helpers.fakes import RecordingSleep

_TOKEN = secrets.token_hex(8)
_BASE_URL = "https://gitlab.example.test/api/v4"

_Reply: typ.TypeAlias = "httpx.Response | Exception"


def _mr(
    iid: int,
    updated_at: str,
    *,
    state: str = "opened",
    title: str | None = None,
) -> dict[str, typ.Any]:
    return {
        "id": 1000 + iid,
        "iid": iid,
        "project_id": 1,
        "title": title or f"MR {iid}",
        "state": state,
        "updated_at": updated_at,
        "web_url": f"https://gitlab.example.test/acme/app/-/merge_requests/{iid}",
    }


def _page(
    items: list[dict[str, typ.Any]], *, next_page: int | None = None
) -> httpx.Response:
    headers = {"X-Next-Page": str(next_page)} if next_page is not None else {}
    return httpx.Response(200, json=items, headers=headers)


def _make_client(
    replies: list[_Reply],
    sleep: RecordingSleep,
    *,
    username: str | None = "alice",
) -> tuple[GitLabMergeRequestClient, list[httpx.Request]]:
    """Build a client whose transport plays ``replies`` in order.

    The last reply repeats once the list is exhausted.
    """
    requests: list[httpx.Request] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        reply = replies[min(len(requests), len(replies)) - 1]
        if isinstance(reply, Exception):
            raise reply
        return reply

    http_client = httpx.AsyncClient(transport=httpx.MockTransport(_handler))
    client = GitLabMergeRequestClient(
        GitLabClientConfig(project_id=1, base_url=_BASE_URL),
        GitLabCredentials(token=_TOKEN, username=username),
        http_client=http_client,
        sleep=sleep,
    )
    return client, requests


async def _collect(
    client: GitLabMergeRequestClient,
    cursor: dt.datetime | None = None,
    *,
    page_token: str | None = None,
) -> list[MergeRequestRecord]:
    return [
        record
        async for record in client.iter_updated_since(cursor, page_token=page_token)
    ]


@pytest.mark.asyncio
async def test_walks_pages_in_updated_order(recording_sleep: RecordingSleep) -> None:
    """Records from every page are yielded until X-Next-Page is absent."""
    client, requests = _make_client(
        [
            _page([_mr(10, "2024-01-01T00:00:00Z")], next_page=2),
            _page([_mr(11, "2024-01-02T00:00:00.000+00:00", state="merged")]),
        ],
        recording_sleep,
    )

    records = await _collect(client)

    assert [record.key for record in records] == [
        MergeRequestKey(1, 10),
        MergeRequestKey(1, 11),
    ]
    assert records[1].state is MergeRequestState.MERGED
    assert records[1].updated_at == dt.datetime(2024, 1, 2, tzinfo=dt.UTC)
    assert [request.url.params["page"] for request in requests] == ["1", "2"]
    first = requests[0]
    assert first.url.path == "/api/v4/projects/1/merge_requests"
    assert first.url.params["order_by"] == "updated_at"
    assert first.url.params["sort"] == "asc"
    assert first.url.params["scope"] == "all"
    assert first.url.params["per_page"] == "100"
    assert "updated_after" not in first.url.params
    assert first.headers["Authorization"] == f"Bearer {_TOKEN}"
    assert first.headers["User-Agent"] == "moondawg/0.1 (alice)"
    assert client.resume_token is None
    assert recording_sleep.delays == []


@pytest.mark.asyncio
async def test_follows_link_header_when_next_page_header_missing(
    recording_sleep: RecordingSleep,
) -> None:
    """The rel=next link's page parameter is used as a fallback."""
    link = f'<{_BASE_URL}/projects/1/merge_requests?page=3&per_page=100>; rel="next"'
    client, requests = _make_client(
        [
            httpx.Response(
                200, json=[_mr(1, "2024-01-01T00:00:00Z")], headers={"Link": link}
            ),
            _page([_mr(2, "2024-01-01T01:00:00Z")]),
        ],
        recording_sleep,
    )

    records = await _collect(client)

    assert [record.iid for record in records] == [1, 2]
    assert [request.url.params["page"] for request in requests] == ["1", "3"]


@pytest.mark.asyncio
async def test_cursor_is_sent_and_boundary_records_dropped(
    recording_sleep: RecordingSleep,
) -> None:
    """updated_after is inclusive upstream, so records at the cursor are skipped."""
    cursor = dt.datetime(2024, 1, 2, tzinfo=dt.UTC)
    client, requests = _make_client(
        [
            _page(
                [
                    _mr(11, "2024-01-02T00:00:00Z"),
                    _mr(12, "2024-01-02T00:00:01Z"),
                ]
            )
        ],
        recording_sleep,
    )

    records = await _collect(client, cursor)

    assert [record.iid for record in records] == [12]
    assert requests[0].url.params["updated_after"] == "2024-01-02T00:00:00+00:00"


@pytest.mark.asyncio
async def test_locked_state_is_stored_as_opened(
    recording_sleep: RecordingSleep,
) -> None:
    """GitLab's transient locked state maps onto opened."""
    client, _ = _make_client(
        [_page([_mr(5, "2024-01-01T00:00:00Z", state="locked")])], recording_sleep
    )

    records = await _collect(client)

    assert records[0].state is MergeRequestState.OPENED


@pytest.mark.asyncio
async def test_page_token_resumes_from_that_page(
    recording_sleep: RecordingSleep,
) -> None:
    """A resume token restarts pagination at the given page."""
    client, requests = _make_client([_page([])], recording_sleep)

    assert await _collect(client, page_token="4") == []
    assert requests[0].url.params["page"] == "4"


@pytest.mark.asyncio
async def test_rate_limit_honours_retry_after(recording_sleep: RecordingSleep) -> None:
    """HTTP 429 waits for Retry-After seconds, then the page is retried."""
    client, requests = _make_client(
        [
            httpx.Response(429, headers={"Retry-After": "7"}),
            _page([_mr(1, "2024-01-01T00:00:00Z")]),
        ],
        recording_sleep,
    )

    with capture_femto_logs("moondawg.gitlab.client") as capture:
        records = await _collect(client)
        capture.wait_for_count(1)

    assert len(records) == 1
    assert len(requests) == 2
    assert recording_sleep.delays == [7.0]
    assert "rate limited page=1 attempt=1/5" in capture.records[0].message


@pytest.mark.asyncio
async def test_rate_limit_waits_full_retry_after_beyond_cap(
    recording_sleep: RecordingSleep,
) -> None:
    """A Retry-After above the backoff cap is still waited out in full."""
    client, requests = _make_client(
        [
            httpx.Response(429, headers={"Retry-After": "120"}),
            _page([_mr(1, "2024-01-01T00:00:00Z")]),
        ],
        recording_sleep,
    )

    records = await _collect(client)

    assert len(records) == 1
    assert len(requests) == 2
    assert recording_sleep.delays == [120.0]


@pytest.mark.asyncio
async def test_rate_limit_gives_up_after_five_attempts(
    recording_sleep: RecordingSleep,
) -> None:
    """Without Retry-After the backoff doubles; the fifth 429 is fatal."""
    client, requests = _make_client([httpx.Response(429)], recording_sleep)

    with pytest.raises(RateLimitExceeded) as excinfo:
        await _collect(client)

    assert len(requests) == 5
    assert recording_sleep.delays == [1.0, 2.0, 4.0, 8.0]
    assert excinfo.value.page == 1
    assert excinfo.value.status_code == 429


@pytest.mark.asyncio
async def test_transport_errors_give_up_after_three_attempts(
    recording_sleep: RecordingSleep,
) -> None:
    """Connection failures are retried twice with backoff, then surfaced."""
    client, requests = _make_client(
        [httpx.ConnectError("connection refused")], recording_sleep
    )

    with pytest.raises(TransientFetchError, match="ConnectError") as excinfo:
        await _collect(client)

    assert len(requests) == 3
    assert recording_sleep.delays == [1.0, 2.0]
    assert isinstance(excinfo.value.__cause__, httpx.ConnectError)


@pytest.mark.asyncio
async def test_server_errors_are_transient(recording_sleep: RecordingSleep) -> None:
    """A 503 followed by success yields the page after one backoff."""
    client, requests = _make_client(
        [
            httpx.Response(503, text="maintenance"),
            httpx.ReadTimeout("read timed out"),
            _page([_mr(1, "2024-01-01T00:00:00Z")]),
        ],
        recording_sleep,
    )

    records = await _collect(client)

    assert len(records) == 1
    assert len(requests) == 3
    assert recording_sleep.delays == [1.0, 2.0]


@pytest.mark.asyncio
async def test_persistent_server_errors_report_status(
    recording_sleep: RecordingSleep,
) -> None:
    """The last 5xx status is carried on the TransientFetchError."""
    client, _ = _make_client([httpx.Response(502)], recording_sleep)

    with pytest.raises(TransientFetchError) as excinfo:
        await _collect(client)

    assert excinfo.value.status_code == 502


@pytest.mark.asyncio
async def test_client_errors_fail_without_retry(
    recording_sleep: RecordingSleep,
) -> None:
    """Any 4xx other than 429 is an InvalidResponse on the first attempt."""
    client, requests = _make_client(
        [httpx.Response(404, json={"message": "404 Project Not Found"})],
        recording_sleep,
    )

    with pytest.raises(InvalidResponse, match="HTTP 404") as excinfo:
        await _collect(client)

    assert len(requests) == 1
    assert recording_sleep.delays == []
    assert (excinfo.value.page, excinfo.value.status_code) == (1, 404)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "body",
    [
        b"<html>gateway</html>",
        b'{"message": "not a list"}',
        b'[{"iid": 1, "project_id": 1, "title": "no dates", "state": "opened"}]',
        b'[{"iid": 1, "project_id": 1, "title": "t", "state": "draft",'
        b' "updated_at": "2024-01-01T00:00:00Z"}]',
        b'[{"iid": 1, "project_id": 1, "title": "t", "state": "opened",'
        b' "updated_at": "2024-01-01T00:00:00"}]',
    ],
    ids=["not-json", "not-array", "missing-field", "unknown-state", "naive-time"],
)
async def test_malformed_bodies_are_invalid_responses(
    body: bytes, recording_sleep: RecordingSleep
) -> None:
    """Bodies failing the payload schema are rejected without retry."""
    client, requests = _make_client(
        [httpx.Response(200, content=body)], recording_sleep
    )

    with pytest.raises(InvalidResponse, match="malformed body"):
        await _collect(client)

    assert len(requests) == 1


@pytest.mark.asyncio
async def test_resume_token_points_at_failing_page(
    recording_sleep: RecordingSleep,
) -> None:
    """After a failure the resume token names the page that failed."""
    client, _ = _make_client(
        [
            _page([_mr(1, "2024-01-01T00:00:00Z")], next_page=2),
            httpx.Response(401, json={"message": "401 Unauthorized"}),
        ],
        recording_sleep,
    )

    with pytest.raises(InvalidResponse):
        await _collect(client)

    assert client.resume_token == "2"


@pytest.mark.asyncio
async def test_naive_cursor_is_rejected(recording_sleep: RecordingSleep) -> None:
    """The cursor must carry a timezone."""
    client, requests = _make_client([_page([])], recording_sleep)

    with pytest.raises(GitLabConfigError, match="timezone-aware"):
        await _collect(client, dt.datetime(2024, 1, 1))  # noqa: DTZ001

    assert requests == []


def test_blank_token_is_rejected() -> None:
    """A whitespace token never reaches the network."""
    with pytest.raises(GitLabConfigError, match="non-empty"):
        GitLabMergeRequestClient(
            GitLabClientConfig(project_id=1), GitLabCredentials(token="  ")
        )


@pytest.mark.asyncio
async def test_user_agent_without_username(recording_sleep: RecordingSleep) -> None:
    """Without an identity the plain user agent is sent."""
    client, requests = _make_client([_page([])], recording_sleep, username=None)

    await _collect(client)

    assert requests[0].headers["User-Agent"] == "moondawg/0.1"
