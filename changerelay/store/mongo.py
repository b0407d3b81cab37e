"""
MongoDB data store handle built on pymongo.

Wraps one collection (watched or written) and the ``ResumeTokens`` checkpoint
collection next to it, translating driver exceptions into relay errors.
"""

import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

import pymongo
from pymongo.change_stream import ChangeStream
from pymongo.errors import (
    ConnectionFailure,
    DuplicateKeyError,
    OperationFailure,
    PyMongoError,
    ServerSelectionTimeoutError,
)

from ..cdc.errors import (
    DuplicateKey,
    RelayError,
    ResumeUnavailable,
    StoreConnectionError,
    StoreError,
    WriteConflict,
)
from .base import ChangeFeed, DataStore

logger = logging.getLogger(__name__)

DUPLICATE_KEY_CODE = 11000
WRITE_CONFLICT_CODE = 112
# CappedPositionLost, ChangeStreamFatalError, ChangeStreamHistoryLost
RESUME_LOST_CODES = frozenset({136, 280, 286})


def translate_error(error: PyMongoError, action: str) -> RelayError:
    """Map a pymongo exception onto the relay error taxonomy."""
    if isinstance(error, (ConnectionFailure, ServerSelectionTimeoutError)):
        return StoreConnectionError(f"{action}: {error}")

    code = getattr(error, "code", None)
    if isinstance(error, DuplicateKeyError) or code == DUPLICATE_KEY_CODE:
        return DuplicateKey(f"{action}: {error}")
    if code == WRITE_CONFLICT_CODE:
        return WriteConflict(f"{action}: {error}")
    if isinstance(error, OperationFailure) and code in RESUME_LOST_CODES:
        return ResumeUnavailable(f"{action}: {error}")

    return StoreError(f"{action}: {error}")


@contextmanager
def _translated(action: str) -> Iterator[None]:
    try:
        yield
    except PyMongoError as e:
        raise translate_error(e, action) from e


class MongoChangeFeed(ChangeFeed):
    """Pull-based wrapper around a pymongo ``ChangeStream``."""

    def __init__(self, stream: ChangeStream, collection_name: str):
        self._stream = stream
        self._collection_name = collection_name
        self._closed = False

    @property
    def resume_token(self) -> Optional[Dict[str, Any]]:
        return self._stream.resume_token

    def try_next(self) -> Optional[Dict[str, Any]]:
        with _translated(f"Reading change stream on {self._collection_name}"):
            return self._stream.try_next()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self._stream.close()
        except PyMongoError as e:
            logger.warning(
                f"Error closing change stream: {e}",
                extra={"collection": self._collection_name}
            )


class MongoDataStore(DataStore):
    """
    Data store handle on a MongoDB collection.

    Example:
        >>> client = pymongo.MongoClient(uri)
        >>> store = MongoDataStore(client, "shop", "orders", name="atlas")
        >>> store.find_by_key(order_id)
    """

    def __init__(
        self,
        client: pymongo.MongoClient,
        database: str,
        collection: str,
        checkpoint_collection: str = "ResumeTokens",
        name: Optional[str] = None,
        owns_client: bool = True
    ):
        """
        Args:
            client: Connected MongoClient
            database: Database holding both collections
            collection: Collection that is watched or written
            checkpoint_collection: Collection storing checkpoint records
            name: Label used in logs and metrics
            owns_client: Close the client in ``close()``
        """
        self.client = client
        self.db = client[database]
        self.collection = self.db[collection]
        self.checkpoints = self.db[checkpoint_collection]
        self.name = name or f"{database}.{collection}"
        self._owns_client = owns_client
        self._closed = False

    def open_change_feed(
        self,
        pipeline: List[Dict[str, Any]],
        resume_after: Optional[Dict[str, Any]] = None,
        max_await_time_ms: int = 1000,
        batch_size: int = 100
    ) -> MongoChangeFeed:
        stream_options: Dict[str, Any] = {
            "batch_size": batch_size,
            "max_await_time_ms": max_await_time_ms,
        }
        if resume_after:
            stream_options["resume_after"] = resume_after

        logger.info(
            f"Opening change stream on {self.name}",
            extra={"store": self.name, "has_resume_token": resume_after is not None}
        )
        with _translated(f"Opening change stream on {self.name}"):
            stream = self.collection.watch(pipeline=pipeline, **stream_options)
        return MongoChangeFeed(stream, self.name)

    def find_by_key(self, key: Any) -> Optional[Dict[str, Any]]:
        with _translated(f"Looking up {key!r} in {self.name}"):
            return self.collection.find_one({"_id": key})

    def insert(self, document: Dict[str, Any]) -> None:
        with _translated(f"Inserting {document.get('_id')!r} into {self.name}"):
            self.collection.insert_one(document)

    def upsert_checkpoint(self, checkpoint_id: str, position: Dict[str, Any]) -> None:
        with _translated(f"Saving checkpoint {checkpoint_id} in {self.name}"):
            self.checkpoints.update_one(
                {"_id": checkpoint_id},
                {"$set": {"token": position, "updated_at": datetime.utcnow()}},
                upsert=True
            )

    def get_checkpoint(self, checkpoint_id: str) -> Optional[Dict[str, Any]]:
        with _translated(f"Loading checkpoint {checkpoint_id} from {self.name}"):
            record = self.checkpoints.find_one({"_id": checkpoint_id})
        return record.get("token") if record else None

    def delete_checkpoint(self, checkpoint_id: str) -> None:
        with _translated(f"Deleting checkpoint {checkpoint_id} from {self.name}"):
            self.checkpoints.delete_one({"_id": checkpoint_id})

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._owns_client:
            self.client.close()
            logger.info(f"Closed connection to {self.name}", extra={"store": self.name})
