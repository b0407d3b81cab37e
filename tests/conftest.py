"""Shared fixtures: in-process fake data stores for the relay components."""

import os
import sys
import time
from typing import Any, Callable, Dict, List, Optional

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from changerelay.cdc.capture_loop import CaptureLoop, RelayConfig
from changerelay.cdc.checkpoint_store import MongoCheckpointStore
from changerelay.cdc.errors import DuplicateKey, ResumeUnavailable
from changerelay.cdc.filters import LoopPreventionFilter
from changerelay.cdc.writer import IdempotentWriter
from changerelay.store.base import ChangeFeed, DataStore

OWN_MARKER = "atlas-changestream"
PEER_MARKER = "legacy-changestream"


def _lookup(document: Dict[str, Any], path: str) -> Any:
    value: Any = document
    for part in path.split("."):
        if not isinstance(value, dict):
            return None
        value = value.get(part)
    return value


def _matches(match: Dict[str, Any], change: Dict[str, Any]) -> bool:
    """Evaluate the subset of $match the relay uses."""
    for path, condition in match.items():
        value = _lookup(change, path)
        if isinstance(condition, dict):
            if "$nin" in condition and value in condition["$nin"]:
                return False
            if "$ne" in condition and value == condition["$ne"]:
                return False
        elif value != condition:
            return False
    return True


class FakeChangeFeed(ChangeFeed):
    """Reads the owning store's event log from a start index, live."""

    def __init__(self, store: "FakeDataStore", start: int, pipeline: List[Dict[str, Any]], max_await_time_ms: int):
        self.store = store
        self.index = start
        self.match = pipeline[0]["$match"] if pipeline and store.apply_pipeline else {}
        self.max_await = max_await_time_ms / 1000.0
        self.closed = False
        self._resume_token = None

    @property
    def resume_token(self):
        return self._resume_token

    def try_next(self) -> Optional[Dict[str, Any]]:
        assert not self.closed, "read from a closed feed"
        if self.store.feed_errors:
            raise self.store.feed_errors.pop(0)

        while self.index < len(self.store.events):
            change = self.store.events[self.index]
            self.index += 1
            self._resume_token = change["_id"]
            if _matches(self.match, change):
                self.store.delivered.append(change)
                return change

        if self.store.idle_hook is not None:
            self.store.idle_hook()
        else:
            time.sleep(self.max_await)
        return None

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self.store.feed_closes += 1


class FakeDataStore(DataStore):
    """
    In-memory data store with an append-only change log.

    Error lists are consumed front to back, one entry per call.
    """

    def __init__(self, name: str = "fake"):
        self.name = name
        self.events: List[Dict[str, Any]] = []
        self.delivered: List[Dict[str, Any]] = []
        self.documents: Dict[Any, Dict[str, Any]] = {}
        self.insert_order: List[Any] = []
        self.checkpoints: Dict[str, Any] = {}
        self.checkpoint_saves: List[Any] = []
        self.expired_positions: List[Any] = []

        self.open_calls: List[Dict[str, Any]] = []
        self.feeds: List[FakeChangeFeed] = []
        self.feed_closes = 0
        self.find_calls = 0
        self.insert_calls = 0
        self.close_calls = 0
        self.closed = False
        self.apply_pipeline = True

        self.open_errors: List[Exception] = []
        self.feed_errors: List[Exception] = []
        self.find_errors: List[Exception] = []
        self.insert_errors: List[Exception] = []
        self.checkpoint_read_errors: List[Exception] = []
        self.checkpoint_write_errors: List[Exception] = []

        self.idle_hook: Optional[Callable[[], None]] = None
        self.on_open: Optional[Callable[[], None]] = None
        self.before_insert: Optional[Callable[[Dict[str, Any]], None]] = None

    # -- test helpers --

    def emit(self, operation: str, document: Optional[Dict[str, Any]], key: Any = None) -> Dict[str, Any]:
        seq = len(self.events) + 1
        change = {
            "_id": {"_data": f"{seq:08d}"},
            "operationType": operation,
            "documentKey": {"_id": key if key is not None else document["_id"]},
            "fullDocument": dict(document) if document is not None else None,
        }
        self.events.append(change)
        return change

    def emit_insert(self, document: Dict[str, Any]) -> Dict[str, Any]:
        return self.emit("insert", document)

    # -- DataStore --

    def open_change_feed(self, pipeline, resume_after=None, max_await_time_ms=1000, batch_size=100):
        self.open_calls.append({"pipeline": pipeline, "resume_after": resume_after})
        if self.open_errors:
            raise self.open_errors.pop(0)

        if resume_after is None:
            start = len(self.events)
        else:
            positions = [change["_id"] for change in self.events]
            if resume_after in self.expired_positions or resume_after not in positions:
                raise ResumeUnavailable(f"resume token {resume_after!r} is no longer in the oplog")
            start = positions.index(resume_after) + 1

        feed = FakeChangeFeed(self, start, pipeline, max_await_time_ms)
        self.feeds.append(feed)
        if self.on_open is not None:
            self.on_open()
        return feed

    def find_by_key(self, key):
        self.find_calls += 1
        if self.find_errors:
            raise self.find_errors.pop(0)
        document = self.documents.get(key)
        return dict(document) if document is not None else None

    def insert(self, document):
        self.insert_calls += 1
        if self.before_insert is not None:
            self.before_insert(document)
        if self.insert_errors:
            raise self.insert_errors.pop(0)
        if document["_id"] in self.documents:
            raise DuplicateKey(f"duplicate key {document['_id']!r}")
        self.documents[document["_id"]] = dict(document)
        self.insert_order.append(document["_id"])

    def upsert_checkpoint(self, checkpoint_id, position):
        if self.checkpoint_write_errors:
            raise self.checkpoint_write_errors.pop(0)
        self.checkpoints[checkpoint_id] = position
        self.checkpoint_saves.append(position)

    def get_checkpoint(self, checkpoint_id):
        if self.checkpoint_read_errors:
            raise self.checkpoint_read_errors.pop(0)
        return self.checkpoints.get(checkpoint_id)

    def delete_checkpoint(self, checkpoint_id):
        self.checkpoints.pop(checkpoint_id, None)

    def close(self):
        self.close_calls += 1
        self.closed = True


@pytest.fixture
def source_store():
    return FakeDataStore("source")


@pytest.fixture
def destination_store():
    return FakeDataStore("destination")


@pytest.fixture
def fast_config():
    """No real waiting between retries."""
    return RelayConfig(max_await_time_ms=10, max_retries=2, retry_backoff_seconds=0, max_retry_delay=0)


@pytest.fixture
def make_loop(source_store, destination_store, fast_config):
    """Build a capture loop that stops as soon as the feed is caught up."""
    def _make(stop_when_idle: bool = True, config: Optional[RelayConfig] = None) -> CaptureLoop:
        loop = CaptureLoop(
            source=source_store,
            writer=IdempotentWriter(destination_store, OWN_MARKER),
            checkpoint_store=MongoCheckpointStore(source_store),
            loop_filter=LoopPreventionFilter(OWN_MARKER, [PEER_MARKER]),
            config=config or fast_config
        )
        if stop_when_idle:
            source_store.idle_hook = lambda: loop.stop("caught up")
        return loop
    return _make
