"""GitLab fetch errors raised by the merge request client."""

from __future__ import annotations


class GitLabFetchError(RuntimeError):
    """Base class for failures that abort a merge request fetch."""

    def __init__(
        self,
        message: str,
        *,
        page: int | None = None,
        status_code: int | None = None,
    ) -> None:
        """Attach the failing page and HTTP status for diagnosis."""
        self.page = page
        self.status_code = status_code
        super().__init__(message)


class RateLimitExceeded(GitLabFetchError):  # noqa: N818 - operator-facing name
    """Raised when a page keeps returning HTTP 429 after all attempts."""

    @classmethod
    def for_page(cls, page: int, attempts: int) -> RateLimitExceeded:
        """Return an error for a page that stayed rate limited."""
        return cls(
            f"GitLab rate limit persisted on page {page} after {attempts} attempts",
            page=page,
            status_code=429,
        )


class TransientFetchError(GitLabFetchError):
    """Raised when network failures or 5xx responses outlast the retry budget."""

    @classmethod
    def for_page(
        cls,
        page: int,
        attempts: int,
        *,
        status_code: int | None = None,
        cause: str,
    ) -> TransientFetchError:
        """Return an error for a page whose transient failures persisted."""
        return cls(
            f"GitLab page {page} failed after {attempts} attempts: {cause}",
            page=page,
            status_code=status_code,
        )


class InvalidResponse(GitLabFetchError):  # noqa: N818 - operator-facing name
    """Raised for non-retryable responses: 4xx statuses or malformed bodies."""

    @classmethod
    def http_status(cls, page: int, status_code: int, body: str) -> InvalidResponse:
        """Return an error for a non-retryable HTTP status."""
        return cls(
            f"GitLab HTTP {status_code} on page {page}: {body[:200]}",
            page=page,
            status_code=status_code,
        )

    @classmethod
    def malformed(cls, page: int, status_code: int, detail: str) -> InvalidResponse:
        """Return an error for a body that does not match the expected shape."""
        return cls(
            f"GitLab page {page} returned a malformed body: {detail}",
            page=page,
            status_code=status_code,
        )


class GitLabConfigError(RuntimeError):
    """Raised when the GitLab client is configured with unusable values."""

    @classmethod
    def empty_token(cls) -> GitLabConfigError:
        """Return an error when the access token is blank."""
        return cls("GitLab token must be non-empty")

    @classmethod
    def naive_cursor(cls) -> GitLabConfigError:
        """Return an error when the fetch cursor lacks a timezone."""
        return cls("updated_since cursor must be timezone-aware")
