"""
Data store capability surface used by the relay.

The capture loop, writer and checkpoint store only talk to these interfaces,
so they can run against MongoDB or against in-process fakes.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional


class ChangeFeed(ABC):
    """An open, ordered change stream subscription."""

    @abstractmethod
    def try_next(self) -> Optional[Dict[str, Any]]:
        """
        Return the next change, or None if nothing arrived within the await window.

        Raises:
            StoreConnectionError: Transient failure, the feed may be reopened
            ResumeUnavailable: The feed can no longer resume from its position
        """

    @abstractmethod
    def close(self) -> None:
        """Release feed resources. Safe to call more than once."""

    @property
    def resume_token(self) -> Optional[Dict[str, Any]]:
        """Position after the last delivered event, if the feed tracks one."""
        return None

    def __enter__(self) -> "ChangeFeed":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


class DataStore(ABC):
    """Handle on one collection plus its small checkpoint records."""

    name: str = "store"

    @abstractmethod
    def open_change_feed(
        self,
        pipeline: List[Dict[str, Any]],
        resume_after: Optional[Dict[str, Any]] = None,
        max_await_time_ms: int = 1000,
        batch_size: int = 100
    ) -> ChangeFeed:
        """
        Open a change stream filtered server-side by ``pipeline``.

        Raises:
            ResumeUnavailable: If ``resume_after`` is older than the retention window
            StoreConnectionError: If the store is unreachable
        """

    @abstractmethod
    def find_by_key(self, key: Any) -> Optional[Dict[str, Any]]:
        """Return the document with ``_id == key`` or None."""

    @abstractmethod
    def insert(self, document: Dict[str, Any]) -> None:
        """
        Insert one document.

        Raises:
            DuplicateKey: If a document with the same ``_id`` already exists
        """

    @abstractmethod
    def upsert_checkpoint(self, checkpoint_id: str, position: Dict[str, Any]) -> None:
        """Create or overwrite the checkpoint record ``checkpoint_id``."""

    @abstractmethod
    def get_checkpoint(self, checkpoint_id: str) -> Optional[Dict[str, Any]]:
        """Return the stored position or None if the record is absent."""

    @abstractmethod
    def delete_checkpoint(self, checkpoint_id: str) -> None:
        """Remove the checkpoint record, if any."""

    @abstractmethod
    def close(self) -> None:
        """Release the underlying client. Safe to call more than once."""
