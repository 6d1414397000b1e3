"""Persistence for merge requests (upsert with TTL) and sync checkpoints."""

from __future__ import annotations

from .checkpoints import Checkpoint, CheckpointStore, SqlCheckpointStore
from .errors import StoreError, StoreUnavailable, ValidationError
from .records import (
    RecordStore,
    SqlRecordStore,
    UpsertOutcome,
    upsert_each,
    validate_record,
)
from .storage import MergeRequestRow, SyncCheckpoint, init_storage

__all__ = [
    "Checkpoint",
    "CheckpointStore",
    "MergeRequestRow",
    "RecordStore",
    "SqlCheckpointStore",
    "SqlRecordStore",
    "StoreError",
    "StoreUnavailable",
    "SyncCheckpoint",
    "UpsertOutcome",
    "ValidationError",
    "init_storage",
    "upsert_each",
    "validate_record",
]
