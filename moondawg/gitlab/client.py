"""GitLab REST client yielding merge requests updated since a cursor."""

from __future__ import annotations

import collections.abc as cabc
import dataclasses
import datetime as dt
import email.utils
import typing as typ

import httpx
import msgspec

from moondawg.logging import get_logger, log_warning
from moondawg.retry import ExponentialBackoff, Sleep, default_sleep

from .errors import (
    GitLabConfigError,
    InvalidResponse,
    RateLimitExceeded,
    TransientFetchError,
)
from .models import MergeRequestPayload, MergeRequestRecord

logger = get_logger(__name__)

_HTTP_TOO_MANY_REQUESTS = 429
_HTTP_CLIENT_ERROR_THRESHOLD = 400
_HTTP_SERVER_ERROR_THRESHOLD = 500

_PAGE_DECODER = msgspec.json.Decoder(list[MergeRequestPayload])


class MergeRequestSource(typ.Protocol):
    """Interface for fetching merge requests changed since a watermark."""

    def iter_updated_since(
        self, cursor: dt.datetime | None, *, page_token: str | None = None
    ) -> cabc.AsyncIterator[MergeRequestRecord]:
        """Yield merge requests updated strictly after ``cursor``."""
        ...

    @property
    def resume_token(self) -> str | None:
        """Page token for the page currently being yielded."""
        ...

    async def aclose(self) -> None:
        """Release any network resources."""
        ...


@dataclasses.dataclass(frozen=True, slots=True)
class GitLabCredentials:
    """Token and identity obtained from the credential provider."""

    token: str
    username: str | None = None


@dataclasses.dataclass(frozen=True, slots=True)
class GitLabClientConfig:
    """Configuration for :class:`GitLabMergeRequestClient`."""

    project_id: int
    base_url: str = "https://gitlab.com/api/v4"
    page_size: int = 100
    timeout_s: float = 10.0
    user_agent: str = "moondawg/0.1"
    rate_limit_backoff: ExponentialBackoff = dataclasses.field(
        default_factory=lambda: ExponentialBackoff(max_attempts=5)
    )
    transient_backoff: ExponentialBackoff = dataclasses.field(
        default_factory=lambda: ExponentialBackoff(max_attempts=3)
    )

    @property
    def merge_requests_url(self) -> str:
        """Return the project merge request listing endpoint."""
        return f"{self.base_url.rstrip('/')}/projects/{self.project_id}/merge_requests"


def _parse_retry_after(response: httpx.Response) -> float | None:
    """Return the ``Retry-After`` delay in seconds, if the server sent one."""
    raw = response.headers.get("Retry-After")
    if raw is None:
        return None
    raw = raw.strip()
    try:
        return max(float(raw), 0.0)
    except ValueError:
        pass
    try:
        when = email.utils.parsedate_to_datetime(raw)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=dt.UTC)
    return max((when - dt.datetime.now(dt.UTC)).total_seconds(), 0.0)


def _next_page(response: httpx.Response, page: int) -> int | None:
    """Return the next page number advertised by GitLab, or None when done."""
    header = response.headers.get("X-Next-Page", "").strip()
    if header:
        try:
            return int(header)
        except ValueError as exc:
            raise InvalidResponse.malformed(
                page, response.status_code, f"X-Next-Page={header!r}"
            ) from exc

    next_link = response.links.get("next")
    if not next_link or "url" not in next_link:
        return None
    raw_page = httpx.URL(next_link["url"]).params.get("page")
    if raw_page is None or not raw_page.isdigit():
        raise InvalidResponse.malformed(
            page, response.status_code, "next link without a page parameter"
        )
    return int(raw_page)


def _decode_page(response: httpx.Response, page: int) -> list[MergeRequestRecord]:
    """Validate a page body against the payload schema and build records."""
    try:
        payloads = _PAGE_DECODER.decode(response.content)
    except msgspec.DecodeError as exc:
        raise InvalidResponse.malformed(page, response.status_code, str(exc)) from exc
    try:
        return [payload.to_record() for payload in payloads]
    except ValueError as exc:
        raise InvalidResponse.malformed(page, response.status_code, str(exc)) from exc


class GitLabMergeRequestClient:
    """GitLab REST implementation of :class:`MergeRequestSource`.

    Pages are requested in ascending ``updated_at`` order so a run that fails
    halfway has already yielded the oldest changes. Each page gets its own
    retry budgets: one for HTTP 429 and one for network failures and 5xx
    responses.
    """

    def __init__(
        self,
        config: GitLabClientConfig,
        credentials: GitLabCredentials,
        *,
        http_client: httpx.AsyncClient | None = None,
        sleep: Sleep = default_sleep,
    ) -> None:
        """Bind the client to a project and an access token."""
        if not credentials.token.strip():
            raise GitLabConfigError.empty_token()

        self._config = config
        self._sleep = sleep
        self._resume_token: str | None = None
        user_agent = config.user_agent
        if credentials.username:
            user_agent = f"{user_agent} ({credentials.username})"
        headers = {
            "Authorization": f"Bearer {credentials.token}",
            "User-Agent": user_agent,
            "Accept": "application/json",
        }
        self._owns_client = http_client is None
        if http_client is None:
            self._client = httpx.AsyncClient(timeout=config.timeout_s, headers=headers)
        else:
            http_client.headers.update(headers)
            self._client = http_client

    @property
    def resume_token(self) -> str | None:
        """Page token of the page being requested or yielded; None once done."""
        return self._resume_token

    async def aclose(self) -> None:
        """Close any owned HTTP resources."""
        if self._owns_client:
            await self._client.aclose()

    async def iter_updated_since(
        self, cursor: dt.datetime | None, *, page_token: str | None = None
    ) -> typ.AsyncIterator[MergeRequestRecord]:
        """Yield merge requests updated strictly after ``cursor``.

        ``cursor=None`` fetches without a lower bound. ``page_token`` resumes
        from a page reported by :attr:`resume_token` in an earlier attempt.
        """
        params: dict[str, str | int] = {
            "order_by": "updated_at",
            "sort": "asc",
            "scope": "all",
            "per_page": self._config.page_size,
        }
        if cursor is not None:
            if cursor.tzinfo is None:
                raise GitLabConfigError.naive_cursor()
            cursor = cursor.astimezone(dt.UTC)
            params["updated_after"] = cursor.isoformat()

        page = int(page_token) if page_token else 1
        while True:
            self._resume_token = str(page)
            response = await self._get_page(params, page)
            records = _decode_page(response, page)
            for record in records:
                # updated_after is inclusive upstream; drop the boundary record.
                if cursor is not None and record.updated_at <= cursor:
                    continue
                yield record

            next_page = _next_page(response, page)
            if next_page is None:
                self._resume_token = None
                return
            page = next_page

    async def _get_page(
        self, params: dict[str, str | int], page: int
    ) -> httpx.Response:
        """Request one page, applying the rate-limit and transient budgets."""
        rate_limited = 0
        transient = 0
        while True:
            try:
                response = await self._client.get(
                    self._config.merge_requests_url,
                    params={**params, "page": page},
                )
            except httpx.TransportError as exc:
                transient += 1
                await self._backoff_transient(
                    page, transient, cause=type(exc).__name__, exc=exc
                )
                continue

            status = response.status_code
            if status == _HTTP_TOO_MANY_REQUESTS:
                rate_limited += 1
                await self._backoff_rate_limited(page, rate_limited, response)
                continue
            if status >= _HTTP_SERVER_ERROR_THRESHOLD:
                transient += 1
                await self._backoff_transient(
                    page, transient, cause=f"HTTP {status}", status_code=status
                )
                continue
            if status >= _HTTP_CLIENT_ERROR_THRESHOLD:
                raise InvalidResponse.http_status(page, status, response.text)
            return response

    async def _backoff_rate_limited(
        self, page: int, attempt: int, response: httpx.Response
    ) -> None:
        policy = self._config.rate_limit_backoff
        if not policy.should_retry(attempt):
            raise RateLimitExceeded.for_page(page, attempt)
        delay = policy.delay_for(attempt, retry_after=_parse_retry_after(response))
        log_warning(
            logger,
            "GitLab rate limited page=%d attempt=%d/%d backoff=%.1fs",
            page,
            attempt,
            policy.max_attempts,
            delay,
        )
        await self._sleep(delay)

    async def _backoff_transient(
        self,
        page: int,
        attempt: int,
        *,
        cause: str,
        status_code: int | None = None,
        exc: BaseException | None = None,
    ) -> None:
        policy = self._config.transient_backoff
        if not policy.should_retry(attempt):
            raise TransientFetchError.for_page(
                page, attempt, status_code=status_code, cause=cause
            ) from exc
        delay = policy.delay_for(attempt)
        log_warning(
            logger,
            "GitLab transient failure page=%d attempt=%d/%d cause=%s backoff=%.1fs",
            page,
            attempt,
            policy.max_attempts,
            cause,
            delay,
        )
        await self._sleep(delay)


__all__ = [
    "GitLabClientConfig",
    "GitLabCredentials",
    "GitLabMergeRequestClient",
    "MergeRequestSource",
]
