"""Bounded retry schedules for page fetches and store writes.

Attempts are counted from one and include the first call, so a policy with
``max_attempts=3`` performs at most two retries. Delays are returned rather
than slept so callers can inject a fake ``sleep`` in tests.
"""

from __future__ import annotations

import asyncio
import collections.abc as cabc
import dataclasses as dc
import typing as typ

Sleep: typ.TypeAlias = "cabc.Callable[[float], cabc.Awaitable[None]]"


async def default_sleep(seconds: float) -> None:
    """Suspend the current task for ``seconds``."""
    await asyncio.sleep(seconds)


@dc.dataclass(frozen=True, slots=True)
class ExponentialBackoff:
    """Doubling delay starting at ``base_delay_s`` and capped at ``max_delay_s``.

    A server-provided delay (``Retry-After``) replaces the computed one as
    given; ``max_delay_s`` only caps the doubling schedule.
    """

    max_attempts: int
    base_delay_s: float = 1.0
    max_delay_s: float = 60.0

    def __post_init__(self) -> None:
        """Reject schedules that would never attempt the call."""
        if self.max_attempts < 1:
            msg = f"max_attempts must be positive, got: {self.max_attempts}"
            raise ValueError(msg)

    def delay_for(self, attempt: int, *, retry_after: float | None = None) -> float:
        """Return the wait before retrying after failed attempt ``attempt``."""
        if retry_after is not None and retry_after >= 0:
            return retry_after
        delay = self.base_delay_s * (2 ** (attempt - 1))
        return min(delay, self.max_delay_s)

    def should_retry(self, attempt: int) -> bool:
        """Return True while another attempt is allowed after ``attempt``."""
        return attempt < self.max_attempts


@dc.dataclass(frozen=True, slots=True)
class LinearBackoff:
    """Delay growing by ``step_s`` per failed attempt (1s, 2s, 3s, ...)."""

    max_attempts: int
    step_s: float = 1.0

    def __post_init__(self) -> None:
        """Reject schedules that would never attempt the call."""
        if self.max_attempts < 1:
            msg = f"max_attempts must be positive, got: {self.max_attempts}"
            raise ValueError(msg)

    def delay_for(self, attempt: int) -> float:
        """Return the wait before retrying after failed attempt ``attempt``."""
        return self.step_s * attempt

    def should_retry(self, attempt: int) -> bool:
        """Return True while another attempt is allowed after ``attempt``."""
        return attempt < self.max_attempts


__all__ = ["ExponentialBackoff", "LinearBackoff", "Sleep", "default_sleep"]
