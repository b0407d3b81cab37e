"""
CDC (Change Data Capture) module: insert replication over MongoDB change streams.
"""

from .errors import (
    RelayError,
    StoreError,
    StoreConnectionError,
    ResumeUnavailable,
    WriteConflict,
    DuplicateKey,
    ApplyError,
    CheckpointError,
    FeedError,
)
from .models import ChangeEvent, ApplyOutcome, LoopState, OperationKind, RunSummary
from .filters import LoopPreventionFilter
from .writer import IdempotentWriter
from .checkpoint_store import CheckpointStore, MongoCheckpointStore, SQLCheckpointStore, RelayCheckpoint
from .capture_loop import CaptureLoop, RelayConfig

__all__ = [
    "RelayError",
    "StoreError",
    "StoreConnectionError",
    "ResumeUnavailable",
    "WriteConflict",
    "DuplicateKey",
    "ApplyError",
    "CheckpointError",
    "FeedError",
    "ChangeEvent",
    "ApplyOutcome",
    "LoopState",
    "OperationKind",
    "RunSummary",
    "LoopPreventionFilter",
    "IdempotentWriter",
    "CheckpointStore",
    "MongoCheckpointStore",
    "SQLCheckpointStore",
    "RelayCheckpoint",
    "CaptureLoop",
    "RelayConfig",
]
