"""Typed merge request records and the GitLab payload schema."""

from __future__ import annotations

import dataclasses
import datetime as dt
import enum
import typing as typ

import msgspec


class MergeRequestState(enum.StrEnum):
    """Lifecycle states stored for a merge request."""

    OPENED = "opened"
    MERGED = "merged"
    CLOSED = "closed"


@dataclasses.dataclass(frozen=True, slots=True, order=True)
class MergeRequestKey:
    """Composite identity of a merge request: project and project-local iid."""

    project_id: int
    iid: int

    def __str__(self) -> str:
        """Render as ``project_id!iid``, GitLab's reference style."""
        return f"{self.project_id}!{self.iid}"


@dataclasses.dataclass(frozen=True, slots=True)
class MergeRequestRecord:
    """A merge request snapshot as persisted by the upsert store."""

    project_id: int
    iid: int
    title: str
    updated_at: dt.datetime
    state: MergeRequestState

    @property
    def key(self) -> MergeRequestKey:
        """Return the composite key identifying this record."""
        return MergeRequestKey(self.project_id, self.iid)


class MergeRequestPayload(msgspec.Struct, kw_only=True):
    """Fields read from one element of ``GET /projects/:id/merge_requests``.

    Unknown fields are ignored; missing or mistyped fields fail decoding so
    malformed pages surface as errors instead of half-filled records.

    Attributes
    ----------
    project_id : int
        Numeric project id owning the merge request.
    iid : int
        Project-local merge request number.
    title : str
        Merge request title.
    updated_at : datetime
        Last modification time; must carry a UTC offset.
    state : str
        One of ``opened``, ``merged``, ``closed``, or ``locked``.

    """

    project_id: int
    iid: int
    title: str
    updated_at: dt.datetime
    state: typ.Literal["opened", "merged", "closed", "locked"]

    def to_record(self) -> MergeRequestRecord:
        """Convert into a :class:`MergeRequestRecord`.

        ``locked`` is a transient state GitLab uses while merging, so it is
        stored as ``opened``.
        """
        if self.updated_at.tzinfo is None:
            msg = f"updated_at for {self.project_id}!{self.iid} has no UTC offset"
            raise ValueError(msg)
        state = (
            MergeRequestState.OPENED
            if self.state == "locked"
            else MergeRequestState(self.state)
        )
        return MergeRequestRecord(
            project_id=self.project_id,
            iid=self.iid,
            title=self.title,
            updated_at=self.updated_at.astimezone(dt.UTC),
            state=state,
        )


__all__ = [
    "MergeRequestKey",
    "MergeRequestPayload",
    "MergeRequestRecord",
    "MergeRequestState",
]
