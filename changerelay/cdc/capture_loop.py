"""
Change stream capture loop with crash recovery.

Lifecycle: STARTING -> STREAMING -> DRAINING -> CLOSED.

1. Load the resume token from the checkpoint store
2. Open the filtered change stream (resuming from the token if one exists)
3. Pull events one at a time, apply each to the destination
4. Persist the event's resume token only after the apply succeeded
5. Retry transient failures with exponential backoff; an event that keeps
   failing is left unacknowledged and the checkpoint is held before it
6. Stop promptly on request, letting the in-flight event finish

Checkpoints advance strictly in feed order and only past applied events,
which gives at-least-once delivery; the idempotent writer turns redeliveries
into skips.
"""

import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from bson import Timestamp

from ..monitoring.metrics import apply_total, loop_state, relay_errors_total, relay_lag_seconds
from ..store.base import ChangeFeed, DataStore
from .checkpoint_store import CheckpointStore
from .errors import ApplyError, CheckpointError, RelayError, StoreConnectionError, StoreError
from .filters import LoopPreventionFilter
from .models import ApplyOutcome, ChangeEvent, LoopState, RunSummary
from .writer import IdempotentWriter

logger = logging.getLogger(__name__)


@dataclass
class RelayConfig:
    """Runtime configuration for the capture loop."""
    max_await_time_ms: int = 1000  # Max wait per pull before re-checking for stop
    batch_size: int = 100  # Server-side cursor batch size
    max_retries: int = 5
    retry_backoff_seconds: float = 2.0  # Delay doubles per attempt: 2, 4, 8, ...
    max_retry_delay: float = 60.0

    def __post_init__(self):
        """Validate configuration values."""
        if self.max_await_time_ms <= 0:
            raise ValueError("max_await_time_ms must be positive")
        if self.batch_size <= 0:
            raise ValueError("batch_size must be positive")
        if self.max_retries < 0:
            raise ValueError("max_retries must be non-negative")
        if self.retry_backoff_seconds < 0:
            raise ValueError("retry_backoff_seconds must be non-negative")
        if self.max_retry_delay < 0:
            raise ValueError("max_retry_delay must be non-negative")

    def backoff_delay(self, attempt: int) -> float:
        return min(self.retry_backoff_seconds * 2 ** (attempt - 1), self.max_retry_delay)


class CaptureLoop:
    """
    Consume a change stream and replicate inserts to the destination.

    Events are processed strictly sequentially, in feed order. ``run()`` is
    blocking; ``stop()`` may be called from any thread.

    Thread Safety: NOT thread-safe apart from ``stop()``. One instance per stream.

    Example:
        >>> loop = CaptureLoop(
        ...     source=source_store,
        ...     writer=IdempotentWriter(destination_store, "atlas-changestream"),
        ...     checkpoint_store=MongoCheckpointStore(source_store),
        ...     loop_filter=LoopPreventionFilter("atlas-changestream", ["legacy-changestream"]),
        ... )
        >>> summary = loop.run()
    """

    def __init__(
        self,
        source: DataStore,
        writer: IdempotentWriter,
        checkpoint_store: CheckpointStore,
        loop_filter: LoopPreventionFilter,
        config: Optional[RelayConfig] = None
    ):
        if loop_filter.own_marker != writer.sync_marker:
            raise ValueError(
                f"Filter marker {loop_filter.own_marker!r} does not match "
                f"writer marker {writer.sync_marker!r}"
            )

        self.source = source
        self.writer = writer
        self.checkpoint_store = checkpoint_store
        self.loop_filter = loop_filter
        self.config = config or RelayConfig()
        self.sync_marker = writer.sync_marker

        self.state = LoopState.STARTING
        self.summary = RunSummary(sync_marker=self.sync_marker)
        self._stop_event = threading.Event()
        self._feed: Optional[ChangeFeed] = None
        self._checkpoint_pinned = False

    @property
    def stop_requested(self) -> bool:
        return self._stop_event.is_set()

    def stop(self, reason: str = "requested") -> None:
        """Ask the loop to drain and close. Returns immediately."""
        if not self._stop_event.is_set():
            logger.info(
                f"Stopping capture loop ({reason})",
                extra={"sync_marker": self.sync_marker, "reason": reason}
            )
        self._stop_event.set()

    def run(self) -> RunSummary:
        """
        Run until stopped or a fatal error occurs.

        Returns:
            RunSummary of the run

        Raises:
            CheckpointError: Checkpoint could not be loaded, or saving kept failing
            ResumeUnavailable: The stored position fell out of the feed's retention
            StoreConnectionError: Source unreachable at start or after retries
        """
        self.summary = RunSummary(sync_marker=self.sync_marker)
        self._checkpoint_pinned = False
        try:
            self._start()
            self._stream()
        except RelayError as e:
            self.summary.error = f"{type(e).__name__}: {e}"
            relay_errors_total.labels(sync_marker=self.sync_marker, error_type=type(e).__name__).inc()
            logger.error(
                f"Capture loop failed in state {self.state.value}: {e}",
                extra={"sync_marker": self.sync_marker, "state": self.state.value, "error_type": type(e).__name__}
            )
            raise
        finally:
            self._close()
        return self.summary

    def _set_state(self, state: LoopState) -> None:
        self.state = state
        self.summary.state = state
        for candidate in LoopState:
            loop_state.labels(sync_marker=self.sync_marker, state=candidate.value).set(
                1 if candidate is state else 0
            )
        logger.debug(f"Capture loop {state.value}", extra={"sync_marker": self.sync_marker})

    def _start(self) -> None:
        self._set_state(LoopState.STARTING)

        position = self.checkpoint_store.load()
        self.summary.last_position = position
        if position:
            logger.info(
                "Resuming from checkpoint",
                extra={"sync_marker": self.sync_marker, "store": self.source.name}
            )
        else:
            logger.info(
                "No checkpoint found, starting from the current moment",
                extra={"sync_marker": self.sync_marker, "store": self.source.name}
            )

        self._feed = self._open_feed(position)
        self._set_state(LoopState.STREAMING)

    def _open_feed(self, position: Optional[Dict[str, Any]]) -> ChangeFeed:
        return self.source.open_change_feed(
            pipeline=self.loop_filter.pipeline(),
            resume_after=position,
            max_await_time_ms=self.config.max_await_time_ms,
            batch_size=self.config.batch_size
        )

    def _stream(self) -> None:
        attempt = 0
        while not self._stop_event.is_set():
            try:
                change = self._feed.try_next()
            except StoreConnectionError as e:
                attempt += 1
                self._reopen_feed(e, attempt)
                continue

            attempt = 0
            if change is None:
                continue
            self._handle(ChangeEvent.from_change(change))

        self._set_state(LoopState.DRAINING)

    def _reopen_feed(self, error: StoreConnectionError, attempt: int) -> None:
        # Last position the feed delivered; every delivered insert has been applied
        position = self._feed.resume_token or self.summary.last_position
        self._feed.close()

        while True:
            if attempt > self.config.max_retries:
                raise StoreConnectionError(
                    f"Change stream lost after {self.config.max_retries} retries: {error}"
                ) from error
            if self._backoff(error, attempt):
                return
            try:
                self._feed = self._open_feed(position)
                logger.info("Change stream reopened", extra={"sync_marker": self.sync_marker})
                return
            except StoreConnectionError as e:
                error = e
                attempt += 1

    def _handle(self, event: ChangeEvent) -> None:
        if not event.is_insert:
            self.summary.ignored += 1
            logger.warning(
                f"Ignoring {event.operation_kind} event for {event.document_key!r}",
                extra={"sync_marker": self.sync_marker, "operation": event.operation_kind}
            )
            return

        self._record_lag(event)
        outcome = self._apply(event)
        if outcome is None or outcome is ApplyOutcome.FAILED:
            return
        if self._checkpoint_pinned:
            # Acknowledge in feed order: nothing past an unacknowledged event
            logger.debug(
                f"Checkpoint held before an unacknowledged event, not saving {event.document_key!r}",
                extra={"sync_marker": self.sync_marker, "document_key": str(event.document_key)}
            )
            return
        self._save_checkpoint(event.position)

    def _apply(self, event: ChangeEvent) -> Optional[ApplyOutcome]:
        """
        Apply with in-place retries.

        Returns:
            The writer's outcome, ApplyOutcome.FAILED once retries are exhausted,
            or None if a stop was requested while retrying
        """
        attempt = 0
        while True:
            try:
                outcome = self.writer.apply(event.full_document)
            except (ApplyError, StoreError) as e:
                attempt += 1
                self.summary.failed += 1
                apply_total.labels(sync_marker=self.sync_marker, outcome=ApplyOutcome.FAILED.value).inc()
                relay_errors_total.labels(sync_marker=self.sync_marker, error_type=type(e).__name__).inc()
                logger.error(
                    str(e),
                    extra={
                        "sync_marker": self.sync_marker,
                        "document_key": str(event.document_key),
                        "outcome": ApplyOutcome.FAILED.value,
                        "attempt": attempt
                    }
                )
                if attempt > self.config.max_retries:
                    self._leave_unacknowledged(event, attempt)
                    return ApplyOutcome.FAILED
                if self._stop_event.is_set() or self._backoff(e, attempt):
                    logger.warning(
                        f"Stop requested, document {event.document_key!r} left unacknowledged",
                        extra={"sync_marker": self.sync_marker, "document_key": str(event.document_key)}
                    )
                    return None
                continue

            if outcome is ApplyOutcome.APPLIED:
                self.summary.applied += 1
            else:
                self.summary.skipped += 1
            return outcome

    def _leave_unacknowledged(self, event: ChangeEvent, attempts: int) -> None:
        """Give up on one event for this run and hold the checkpoint before it."""
        self.summary.unacknowledged += 1
        self._checkpoint_pinned = True
        logger.error(
            f"Giving up on document {event.document_key!r} after {attempts} attempts, "
            "checkpoint held so it is redelivered on the next run",
            extra={
                "sync_marker": self.sync_marker,
                "document_key": str(event.document_key),
                "attempts": attempts
            }
        )

    def _save_checkpoint(self, position: Dict[str, Any]) -> None:
        attempt = 0
        while True:
            try:
                self.checkpoint_store.save(position)
                self.summary.last_position = position
                return
            except CheckpointError as e:
                attempt += 1
                relay_errors_total.labels(sync_marker=self.sync_marker, error_type=type(e).__name__).inc()
                logger.error(
                    f"Failed to save checkpoint: {e}",
                    extra={"sync_marker": self.sync_marker, "attempt": attempt}
                )
                if attempt > self.config.max_retries:
                    raise
                if self._backoff(e, attempt):
                    logger.warning(
                        "Stop requested before the checkpoint was saved, event will be redelivered",
                        extra={"sync_marker": self.sync_marker}
                    )
                    return

    def _backoff(self, error: Exception, attempt: int) -> bool:
        """
        Wait before the next attempt.

        Returns:
            True if a stop was requested while waiting
        """
        delay = self.config.backoff_delay(attempt)
        logger.warning(
            f"Error occurred, retrying in {delay}s (attempt {attempt}/{self.config.max_retries})",
            extra={
                "sync_marker": self.sync_marker,
                "attempt": attempt,
                "max_retries": self.config.max_retries,
                "delay_seconds": delay,
                "error": str(error),
                "error_type": type(error).__name__
            }
        )
        return self._stop_event.wait(delay)

    def _record_lag(self, event: ChangeEvent) -> None:
        """Export lag between the source cluster time and now."""
        if not isinstance(event.cluster_time, Timestamp):
            return
        lag = max(0.0, time.time() - event.cluster_time.time)
        relay_lag_seconds.labels(sync_marker=self.sync_marker).set(lag)

    def _close(self) -> None:
        if self.state is not LoopState.DRAINING:
            self._set_state(LoopState.DRAINING)
        if self._feed is not None:
            self._feed.close()
            self._feed = None
        self._set_state(LoopState.CLOSED)
        self.summary.finished_at = datetime.utcnow()

        logger.info(
            "Capture loop closed",
            extra={
                "sync_marker": self.sync_marker,
                "applied": self.summary.applied,
                "skipped": self.summary.skipped,
                "failed": self.summary.failed,
                "ignored": self.summary.ignored
            }
        )
