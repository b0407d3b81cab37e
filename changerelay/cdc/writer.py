"""
Idempotent destination writer.

Applies a captured document once: existence check by ``_id``, insert when
absent, skip when present. First write wins; redelivered events collapse to
a single destination document.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from ..monitoring.metrics import apply_total
from ..store.base import DataStore
from .errors import ApplyError, RelayError, WriteConflict
from .filters import SYNC_DT_FIELD, SYNC_SOURCE_FIELD
from .models import ApplyOutcome

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class IdempotentWriter:
    """
    Write captured documents to the destination, tagged with provenance.

    Thread Safety: NOT thread-safe. One writer per capture loop.

    Example:
        >>> writer = IdempotentWriter(destination, sync_marker="atlas-changestream")
        >>> writer.apply({"_id": "a1", "value": 5})
        <ApplyOutcome.APPLIED: 'applied'>
    """

    def __init__(
        self,
        destination: DataStore,
        sync_marker: str,
        clock: Optional[Callable[[], datetime]] = None
    ):
        if not sync_marker:
            raise ValueError("sync_marker must be a non-empty string")
        self.destination = destination
        self.sync_marker = sync_marker
        self._clock = clock or _utcnow

    def tag(self, document: Dict[str, Any]) -> Dict[str, Any]:
        """Return a copy of ``document`` stamped with this relay's marker and time."""
        tagged = dict(document)
        tagged[SYNC_SOURCE_FIELD] = self.sync_marker
        tagged[SYNC_DT_FIELD] = self._clock()
        return tagged

    def apply(self, document: Optional[Dict[str, Any]]) -> ApplyOutcome:
        """
        Apply one document to the destination.

        Returns:
            ApplyOutcome.APPLIED if inserted, ApplyOutcome.SKIPPED if the key
            already existed (including a lost insert race)

        Raises:
            StoreConnectionError: Destination unreachable
            ApplyError: Any other failure, the document was not written
        """
        if not document:
            raise ApplyError("Change event carries no document")
        if "_id" not in document:
            raise ApplyError("Document has no _id")

        key = document["_id"]
        tagged = self.tag(document)

        try:
            if self.destination.find_by_key(key) is not None:
                return self._skipped(key, "already present")
            self.destination.insert(tagged)
        except WriteConflict as e:
            return self._skipped(key, f"concurrent write ({type(e).__name__})")
        except RelayError:
            raise
        except Exception as e:
            raise ApplyError(f"Failed to apply document {key!r}: {e}") from e

        apply_total.labels(sync_marker=self.sync_marker, outcome=ApplyOutcome.APPLIED.value).inc()
        logger.info(
            f"Document {key!r} inserted into {self.destination.name}",
            extra={"document_key": str(key), "outcome": ApplyOutcome.APPLIED.value}
        )
        return ApplyOutcome.APPLIED

    def _skipped(self, key: Any, reason: str) -> ApplyOutcome:
        apply_total.labels(sync_marker=self.sync_marker, outcome=ApplyOutcome.SKIPPED.value).inc()
        logger.info(
            f"Document {key!r} skipped: {reason}",
            extra={"document_key": str(key), "outcome": ApplyOutcome.SKIPPED.value, "reason": reason}
        )
        return ApplyOutcome.SKIPPED
