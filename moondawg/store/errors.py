"""Errors raised by the merge request and checkpoint stores."""

from __future__ import annotations


class StoreError(RuntimeError):
    """Base class for persistence failures.

    ``retryable`` tells the orchestrator whether repeating the same write can
    succeed; only :class:`StoreUnavailable` sets it.
    """

    retryable: bool = False

    def __init__(self, message: str, *, key: str | None = None) -> None:
        """Attach the affected record key, when one is known."""
        self.key = key
        super().__init__(message)


class StoreUnavailable(StoreError):  # noqa: N818 - operator-facing name
    """Raised when the backend is unreachable, throttled, or timed out."""

    retryable = True

    @classmethod
    def timed_out(
        cls, operation: str, timeout_s: float, *, key: str | None = None
    ) -> StoreUnavailable:
        """Return an error for an operation that exceeded its time budget."""
        return cls(f"{operation} timed out after {timeout_s:.1f}s", key=key)

    @classmethod
    def backend(
        cls, operation: str, detail: str, *, key: str | None = None
    ) -> StoreUnavailable:
        """Return an error wrapping a backend connectivity failure."""
        return cls(f"{operation} failed: {detail}", key=key)


class ValidationError(StoreError):
    """Raised when a record is missing or carries an invalid key field."""

    @classmethod
    def invalid_field(
        cls, field: str, value: object, *, key: str | None = None
    ) -> ValidationError:
        """Return an error naming the offending field."""
        return cls(f"invalid {field}: {value!r}", key=key)


__all__ = ["StoreError", "StoreUnavailable", "ValidationError"]
