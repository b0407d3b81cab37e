"""
Relay bootstrap and shutdown.

Wires the stores, loop-prevention filter, writer and capture loop together,
runs them for a bounded or unbounded time, and always releases the store
handles however the run ends.
"""

import logging
import signal
import threading
from contextlib import ExitStack
from typing import Optional

import pymongo

from config.settings import Settings
from .cdc.capture_loop import CaptureLoop, RelayConfig
from .cdc.checkpoint_store import CheckpointStore, MongoCheckpointStore, SQLCheckpointStore
from .cdc.filters import LoopPreventionFilter
from .cdc.models import RunSummary
from .cdc.writer import IdempotentWriter
from .store.base import DataStore
from .store.mongo import MongoDataStore
from .utils.logging import RunContext

logger = logging.getLogger(__name__)


class Relay:
    """
    One direction of a (possibly bidirectional) insert relay.

    The relay owns its store handles and checkpoint store: ``run()`` closes
    all of them on exit, so a Relay instance runs once.

    Example:
        >>> relay = build_relay(get_settings())
        >>> summary = relay.run(duration=300)
    """

    def __init__(
        self,
        source: DataStore,
        destination: DataStore,
        checkpoint_store: CheckpointStore,
        sync_marker: str,
        peer_markers=(),
        config: Optional[RelayConfig] = None
    ):
        self.source = source
        self.destination = destination
        self.checkpoint_store = checkpoint_store
        self.loop_filter = LoopPreventionFilter(sync_marker, peer_markers)
        self.writer = IdempotentWriter(destination, sync_marker)
        self.loop = CaptureLoop(
            source=source,
            writer=self.writer,
            checkpoint_store=checkpoint_store,
            loop_filter=self.loop_filter,
            config=config
        )

        self._original_handlers = {}

    def stop(self, reason: str = "cancelled") -> None:
        """Request an orderly shutdown. Safe to call from any thread."""
        self.loop.stop(reason)

    def run(self, duration: Optional[float] = None) -> RunSummary:
        """
        Run the relay (blocking call).

        Args:
            duration: Stop after this many seconds; None runs until ``stop()``
                      or SIGTERM/SIGINT

        Returns:
            RunSummary of the run

        Raises:
            RelayError: Fatal error; store handles are closed regardless
        """
        with RunContext(), ExitStack() as stack:
            stack.callback(self.close)

            if duration is not None:
                timer = threading.Timer(duration, self.stop, kwargs={"reason": f"run duration of {duration}s elapsed"})
                timer.daemon = True
                timer.start()
                stack.callback(timer.cancel)

            self._setup_signal_handlers()
            stack.callback(self._restore_signal_handlers)

            logger.info(
                f"Relay starting: {self.source.name} -> {self.destination.name}",
                extra={
                    "sync_marker": self.writer.sync_marker,
                    "excluded_markers": self.loop_filter.excluded_markers,
                    "duration_seconds": duration
                }
            )
            summary = self.loop.run()
            logger.info(
                "Relay finished",
                extra={
                    "applied": summary.applied,
                    "skipped": summary.skipped,
                    "failed": summary.failed,
                    "unacknowledged": summary.unacknowledged
                }
            )
            return summary

    def close(self) -> None:
        """Release the checkpoint store and both store handles."""
        for handle in (self.checkpoint_store, self.source, self.destination):
            self._close_handle(handle)

    def _close_handle(self, handle) -> None:
        try:
            handle.close()
        except Exception as e:
            # Keep closing the remaining handles
            logger.error(f"Error releasing {type(handle).__name__}: {e}", exc_info=True)

    def _setup_signal_handlers(self) -> None:
        """Set up signal handlers for graceful shutdown (main thread only)."""
        if threading.current_thread() is not threading.main_thread():
            return

        def signal_handler(signum, frame):
            logger.info(f"Received shutdown signal {signum}")
            self.stop(f"signal {signum}")

        for signum in (signal.SIGTERM, signal.SIGINT):
            self._original_handlers[signum] = signal.signal(signum, signal_handler)

    def _restore_signal_handlers(self) -> None:
        """Restore original signal handlers."""
        for signum, handler in self._original_handlers.items():
            signal.signal(signum, handler)
        self._original_handlers.clear()


def _mongo_client(uri: str, connect_timeout: int, server_selection_timeout: int) -> pymongo.MongoClient:
    return pymongo.MongoClient(
        uri,
        connectTimeoutMS=connect_timeout * 1000,
        serverSelectionTimeoutMS=server_selection_timeout * 1000
    )


def build_relay(settings: Settings) -> Relay:
    """Create a Relay with MongoDB stores and the configured checkpoint backend."""
    source_client = _mongo_client(
        settings.source.uri,
        settings.source.connect_timeout,
        settings.source.server_selection_timeout
    )
    destination_client = _mongo_client(
        settings.destination.uri,
        settings.destination.connect_timeout,
        settings.destination.server_selection_timeout
    )

    source = MongoDataStore(
        source_client,
        settings.source.database,
        settings.source.collection,
        checkpoint_collection=settings.checkpoint.collection,
        name=f"source:{settings.source.database}.{settings.source.collection}"
    )
    destination = MongoDataStore(
        destination_client,
        settings.destination.database,
        settings.destination.collection,
        name=f"destination:{settings.destination.database}.{settings.destination.collection}"
    )

    try:
        checkpoint_store = build_checkpoint_store(settings, source)
    except Exception:
        source.close()
        destination.close()
        raise

    relay_settings = settings.relay
    config = RelayConfig(
        max_await_time_ms=relay_settings.max_await_time_ms,
        batch_size=relay_settings.batch_size,
        max_retries=relay_settings.max_retries,
        retry_backoff_seconds=relay_settings.retry_backoff_seconds,
        max_retry_delay=relay_settings.max_retry_delay
    )
    return Relay(
        source=source,
        destination=destination,
        checkpoint_store=checkpoint_store,
        sync_marker=relay_settings.sync_marker,
        peer_markers=relay_settings.peer_markers,
        config=config
    )


def build_checkpoint_store(settings: Settings, source: DataStore) -> CheckpointStore:
    """Checkpoint store for the configured backend."""
    if settings.checkpoint.backend == "sql":
        return SQLCheckpointStore(
            settings.checkpoint.database_url,
            collection=settings.source.collection,
            checkpoint_id=settings.checkpoint.checkpoint_id
        )
    return MongoCheckpointStore(source, checkpoint_id=settings.checkpoint.checkpoint_id)
