"""GitLab merge request client, records, and fetch errors."""

from __future__ import annotations

from .client import (
    GitLabClientConfig,
    GitLabCredentials,
    GitLabMergeRequestClient,
    MergeRequestSource,
)
from .errors import (
    GitLabConfigError,
    GitLabFetchError,
    InvalidResponse,
    RateLimitExceeded,
    TransientFetchError,
)
from .models import (
    MergeRequestKey,
    MergeRequestPayload,
    MergeRequestRecord,
    MergeRequestState,
)

__all__ = [
    "GitLabClientConfig",
    "GitLabConfigError",
    "GitLabCredentials",
    "GitLabFetchError",
    "GitLabMergeRequestClient",
    "InvalidResponse",
    "MergeRequestKey",
    "MergeRequestPayload",
    "MergeRequestRecord",
    "MergeRequestSource",
    "MergeRequestState",
    "RateLimitExceeded",
    "TransientFetchError",
]
