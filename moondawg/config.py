"""Environment-driven configuration for the merge request sync worker.

Usage
-----
Build a configuration with defaults for everything but the project:

>>> config = SyncConfig(project_id=42)
>>> config.record_ttl
datetime.timedelta(days=7)

Or load from ``MOONDAWG_*`` environment variables:

>>> import os
>>> os.environ["MOONDAWG_PROJECT_ID"] = "42"
>>> SyncConfig.from_env().project_id
42

"""

from __future__ import annotations

import dataclasses as dc
import datetime as dt
import enum
import os
import typing as typ

from moondawg.retry import ExponentialBackoff, LinearBackoff

_ENV_PREFIX = "MOONDAWG_"


class ConfigError(ValueError):
    """Raised when an environment variable holds an unusable value."""

    @classmethod
    def missing(cls, name: str) -> ConfigError:
        """Return an error for a required variable that is unset."""
        return cls(f"{name} is required")

    @classmethod
    def not_integer(cls, name: str, raw: str) -> ConfigError:
        """Return an error for a value that does not parse as an integer."""
        return cls(f"{name} must be an integer, got: {raw!r}")

    @classmethod
    def not_positive(cls, name: str, value: float) -> ConfigError:
        """Return an error for a value below one."""
        return cls(f"{name} must be positive, got: {value}")

    @classmethod
    def not_a_choice(
        cls, name: str, raw: str, choices: typ.Iterable[str]
    ) -> ConfigError:
        """Return an error for a value outside an enumerated set."""
        allowed = ", ".join(sorted(choices))
        return cls(f"{name} must be one of {allowed}, got: {raw!r}")


class CredentialSource(enum.StrEnum):
    """Where the worker reads its GitLab token and username from."""

    ENV = "env"
    SSM = "ssm"


class StoreBackend(enum.StrEnum):
    """Persistence backend for merge requests and checkpoints."""

    SQL = "sql"
    DYNAMODB = "dynamodb"


def _env(name: str) -> str:
    return os.environ.get(f"{_ENV_PREFIX}{name}", "").strip()


def _positive_int(name: str, default: int) -> int:
    raw = _env(name)
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise ConfigError.not_integer(f"{_ENV_PREFIX}{name}", raw) from exc
    if value < 1:
        raise ConfigError.not_positive(f"{_ENV_PREFIX}{name}", value)
    return value


def _string(name: str, default: str) -> str:
    return _env(name) or default


E = typ.TypeVar("E", bound=enum.StrEnum)


def _choice(name: str, enum_type: type[E], default: E) -> E:
    raw = _env(name)
    if not raw:
        return default
    try:
        return enum_type(raw.lower())
    except ValueError as exc:
        raise ConfigError.not_a_choice(
            f"{_ENV_PREFIX}{name}", raw, (member.value for member in enum_type)
        ) from exc


@dc.dataclass(frozen=True, slots=True)
class SyncConfig:
    """Runtime knobs for one GitLab project sync.

    Attributes
    ----------
    project_id
        Numeric GitLab project whose merge requests are synced.
    gitlab_url
        Base URL of the GitLab REST API (``.../api/v4``).
    poll_interval_s
        Expected interval between scheduler ticks. The worker does not sleep
        on it; it is reported in run summaries so lag can be judged.
    record_ttl
        Lifetime of each stored merge request, refreshed on every upsert.
    page_size
        ``per_page`` requested from GitLab.
    request_timeout_s, store_timeout_s
        Per-call bounds on page requests and store operations.
    rate_limit_max_attempts, transient_max_attempts, store_max_attempts
        Attempt budgets (first call included) for HTTP 429 responses,
        network failures, and unavailable-store errors.
    backoff_base_s, backoff_cap_s
        Exponential schedule used for fetch retries.

    """

    project_id: int
    gitlab_url: str = "https://gitlab.com/api/v4"
    poll_interval_s: int = 300
    record_ttl: dt.timedelta = dt.timedelta(hours=168)
    page_size: int = 100
    request_timeout_s: float = 10.0
    store_timeout_s: float = 5.0
    rate_limit_max_attempts: int = 5
    transient_max_attempts: int = 3
    store_max_attempts: int = 3
    backoff_base_s: float = 1.0
    backoff_cap_s: float = 60.0
    token_param: str = "/moondawg/gitlab/token"
    username_param: str = "/moondawg/gitlab/username"
    credential_source: CredentialSource = CredentialSource.ENV
    store_backend: StoreBackend = StoreBackend.SQL
    database_url: str = "sqlite+aiosqlite:///moondawg.db"
    dynamodb_table_name: str = "moondawg-merge-requests"
    dynamodb_checkpoint_table_name: str = "moondawg-sync-checkpoints"

    @property
    def source_key(self) -> str:
        """Checkpoint key identifying this ingestion source."""
        return f"gitlab:project:{self.project_id}"

    @property
    def rate_limit_backoff(self) -> ExponentialBackoff:
        """Retry schedule for HTTP 429 responses."""
        return ExponentialBackoff(
            max_attempts=self.rate_limit_max_attempts,
            base_delay_s=self.backoff_base_s,
            max_delay_s=self.backoff_cap_s,
        )

    @property
    def transient_backoff(self) -> ExponentialBackoff:
        """Retry schedule for timeouts, resets, and 5xx responses."""
        return ExponentialBackoff(
            max_attempts=self.transient_max_attempts,
            base_delay_s=self.backoff_base_s,
            max_delay_s=self.backoff_cap_s,
        )

    @property
    def store_backoff(self) -> LinearBackoff:
        """Retry schedule for records whose upsert hit an unavailable store."""
        return LinearBackoff(max_attempts=self.store_max_attempts)

    @classmethod
    def from_env(cls) -> SyncConfig:
        """Create configuration from ``MOONDAWG_*`` environment variables.

        Raises
        ------
        ConfigError
            If ``MOONDAWG_PROJECT_ID`` is unset or any numeric or enumerated
            variable holds an invalid value.

        """
        if not _env("PROJECT_ID"):
            raise ConfigError.missing(f"{_ENV_PREFIX}PROJECT_ID")
        defaults = cls(project_id=0)
        return cls(
            project_id=_positive_int("PROJECT_ID", 0),
            gitlab_url=_string("GITLAB_URL", defaults.gitlab_url).rstrip("/"),
            poll_interval_s=_positive_int(
                "POLL_INTERVAL_SECONDS", defaults.poll_interval_s
            ),
            record_ttl=dt.timedelta(hours=_positive_int("RECORD_TTL_HOURS", 168)),
            page_size=_positive_int("PAGE_SIZE", defaults.page_size),
            request_timeout_s=float(_positive_int("REQUEST_TIMEOUT_SECONDS", 10)),
            store_timeout_s=float(_positive_int("STORE_TIMEOUT_SECONDS", 5)),
            rate_limit_max_attempts=_positive_int(
                "RATE_LIMIT_MAX_ATTEMPTS", defaults.rate_limit_max_attempts
            ),
            transient_max_attempts=_positive_int(
                "TRANSIENT_MAX_ATTEMPTS", defaults.transient_max_attempts
            ),
            store_max_attempts=_positive_int(
                "STORE_MAX_ATTEMPTS", defaults.store_max_attempts
            ),
            backoff_base_s=float(_positive_int("BACKOFF_BASE_SECONDS", 1)),
            backoff_cap_s=float(_positive_int("BACKOFF_CAP_SECONDS", 60)),
            token_param=_string("TOKEN_PARAM", defaults.token_param),
            username_param=_string("USERNAME_PARAM", defaults.username_param),
            credential_source=_choice(
                "CREDENTIAL_SOURCE", CredentialSource, defaults.credential_source
            ),
            store_backend=_choice(
                "STORE_BACKEND", StoreBackend, defaults.store_backend
            ),
            database_url=_string("DATABASE_URL", defaults.database_url),
            dynamodb_table_name=_string(
                "DYNAMODB_TABLE_NAME", defaults.dynamodb_table_name
            ),
            dynamodb_checkpoint_table_name=_string(
                "DYNAMODB_CHECKPOINT_TABLE_NAME",
                defaults.dynamodb_checkpoint_table_name,
            ),
        )


__all__ = ["ConfigError", "CredentialSource", "StoreBackend", "SyncConfig"]
