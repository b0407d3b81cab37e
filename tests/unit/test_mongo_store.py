"""Unit tests for the MongoDB data store handle."""

from unittest.mock import MagicMock

import mongomock
import pytest
from pymongo.errors import (
    AutoReconnect,
    DuplicateKeyError,
    OperationFailure,
    PyMongoError,
    ServerSelectionTimeoutError,
)

from changerelay.cdc.errors import (
    DuplicateKey,
    ResumeUnavailable,
    StoreConnectionError,
    StoreError,
    WriteConflict,
)
from changerelay.store.mongo import MongoChangeFeed, MongoDataStore, translate_error


@pytest.fixture
def mongo_client():
    return mongomock.MongoClient()


@pytest.fixture
def store(mongo_client):
    return MongoDataStore(mongo_client, "shop", "orders", name="atlas")


def mock_store():
    client = MagicMock()
    collection = MagicMock()
    client.__getitem__.return_value.__getitem__.return_value = collection
    return MongoDataStore(client, "shop", "orders"), client, collection


class TestMongoDataStore:
    """Test MongoDataStore against mongomock."""

    def test_default_name(self, mongo_client):
        assert MongoDataStore(mongo_client, "shop", "orders").name == "shop.orders"

    def test_insert_and_find(self, store, mongo_client):
        store.insert({"_id": "a1", "value": 5})

        assert store.find_by_key("a1") == {"_id": "a1", "value": 5}
        assert mongo_client["shop"]["orders"].count_documents({}) == 1

    def test_find_missing_returns_none(self, store):
        assert store.find_by_key("missing") is None

    def test_duplicate_insert(self, store):
        store.insert({"_id": "a1"})
        with pytest.raises(DuplicateKey):
            store.insert({"_id": "a1"})

    def test_checkpoint_roundtrip(self, store, mongo_client):
        assert store.get_checkpoint("latestToken") is None

        store.upsert_checkpoint("latestToken", {"_data": "01"})
        store.upsert_checkpoint("latestToken", {"_data": "02"})

        records = list(mongo_client["shop"]["ResumeTokens"].find())
        assert len(records) == 1
        assert records[0]["_id"] == "latestToken"
        assert "updated_at" in records[0]
        assert store.get_checkpoint("latestToken") == {"_data": "02"}

    def test_delete_checkpoint(self, store):
        store.upsert_checkpoint("latestToken", {"_data": "01"})
        store.delete_checkpoint("latestToken")
        assert store.get_checkpoint("latestToken") is None

    def test_open_change_feed_passes_options(self):
        store, _, collection = mock_store()
        pipeline = [{"$match": {"operationType": "insert"}}]

        feed = store.open_change_feed(pipeline, resume_after={"_data": "01"}, max_await_time_ms=500, batch_size=10)

        collection.watch.assert_called_once_with(
            pipeline=pipeline,
            batch_size=10,
            max_await_time_ms=500,
            resume_after={"_data": "01"}
        )
        assert isinstance(feed, MongoChangeFeed)

    def test_open_change_feed_from_now(self):
        store, _, collection = mock_store()

        store.open_change_feed([])

        assert "resume_after" not in collection.watch.call_args.kwargs

    def test_open_change_feed_history_lost(self):
        store, _, collection = mock_store()
        collection.watch.side_effect = OperationFailure("resume point no longer in oplog", code=286)

        with pytest.raises(ResumeUnavailable):
            store.open_change_feed([], resume_after={"_data": "01"})

    def test_lookup_connection_failure(self):
        store, _, collection = mock_store()
        collection.find_one.side_effect = ServerSelectionTimeoutError("no servers")

        with pytest.raises(StoreConnectionError):
            store.find_by_key("a1")

    def test_close_is_idempotent(self):
        store, client, _ = mock_store()

        store.close()
        store.close()

        client.close.assert_called_once()

    def test_shared_client_not_closed(self):
        client = MagicMock()
        store = MongoDataStore(client, "shop", "orders", owns_client=False)

        store.close()

        client.close.assert_not_called()


class TestMongoChangeFeed:
    """Test MongoChangeFeed."""

    def test_try_next(self):
        stream = MagicMock()
        stream.try_next.return_value = {"_id": {"_data": "01"}}
        stream.resume_token = {"_data": "01"}
        feed = MongoChangeFeed(stream, "orders")

        assert feed.try_next() == {"_id": {"_data": "01"}}
        assert feed.resume_token == {"_data": "01"}

    def test_try_next_connection_lost(self):
        stream = MagicMock()
        stream.try_next.side_effect = AutoReconnect("connection reset")
        feed = MongoChangeFeed(stream, "orders")

        with pytest.raises(StoreConnectionError):
            feed.try_next()

    def test_close_is_idempotent(self):
        stream = MagicMock()
        feed = MongoChangeFeed(stream, "orders")

        feed.close()
        feed.close()

        stream.close.assert_called_once()

    def test_close_error_logged_not_raised(self):
        stream = MagicMock()
        stream.close.side_effect = AutoReconnect("gone")

        MongoChangeFeed(stream, "orders").close()


class TestTranslateError:
    """Test translate_error."""

    @pytest.mark.parametrize("error,expected", [
        (AutoReconnect("reset"), StoreConnectionError),
        (ServerSelectionTimeoutError("no servers"), StoreConnectionError),
        (DuplicateKeyError("E11000", code=11000), DuplicateKey),
        (OperationFailure("E11000 duplicate key", code=11000), DuplicateKey),
        (OperationFailure("write conflict", code=112), WriteConflict),
        (OperationFailure("capped position lost", code=136), ResumeUnavailable),
        (OperationFailure("history lost", code=286), ResumeUnavailable),
        (OperationFailure("unauthorized", code=13), StoreError),
        (PyMongoError("unknown"), StoreError),
    ])
    def test_mapping(self, error, expected):
        translated = translate_error(error, "Testing")
        assert type(translated) is expected
        assert str(translated).startswith("Testing: ")
