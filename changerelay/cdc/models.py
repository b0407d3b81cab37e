"""
Relay data model: captured change events, apply outcomes and run summaries.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from .errors import FeedError


class OperationKind(str, Enum):
    """Change stream operation types the relay knows about."""
    INSERT = "insert"
    UPDATE = "update"
    REPLACE = "replace"
    DELETE = "delete"


class ApplyOutcome(str, Enum):
    """Result of applying one document to the destination."""
    APPLIED = "applied"
    SKIPPED = "skipped"
    FAILED = "failed"


class LoopState(str, Enum):
    """Capture loop lifecycle."""
    STARTING = "starting"
    STREAMING = "streaming"
    DRAINING = "draining"
    CLOSED = "closed"


@dataclass(frozen=True)
class ChangeEvent:
    """One event delivered by the change stream."""
    operation_kind: str
    document_key: Any
    full_document: Optional[Dict[str, Any]]
    position: Dict[str, Any]
    cluster_time: Any = None

    @property
    def is_insert(self) -> bool:
        return self.operation_kind == OperationKind.INSERT.value

    @classmethod
    def from_change(cls, change: Dict[str, Any]) -> "ChangeEvent":
        """
        Build an event from a raw change stream document.

        Raises:
            FeedError: If the change carries no resume token (``_id``)
        """
        position = change.get("_id")
        if not position:
            raise FeedError("Change event has no resume token")

        document_key = (change.get("documentKey") or {}).get("_id")
        full_document = change.get("fullDocument")
        if document_key is None and full_document:
            document_key = full_document.get("_id")

        return cls(
            operation_kind=change.get("operationType", "unknown"),
            document_key=document_key,
            full_document=full_document,
            position=position,
            cluster_time=change.get("clusterTime"),
        )


class RunSummary(BaseModel):
    """Result of one relay run."""
    sync_marker: str
    state: LoopState = LoopState.STARTING
    applied: int = 0
    skipped: int = 0
    failed: int = 0
    ignored: int = 0
    unacknowledged: int = 0
    last_position: Optional[Dict[str, Any]] = None
    started_at: datetime = Field(default_factory=datetime.utcnow)
    finished_at: Optional[datetime] = None
    error: Optional[str] = None

    @property
    def processed(self) -> int:
        return self.applied + self.skipped
