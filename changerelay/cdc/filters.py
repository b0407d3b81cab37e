"""
Loop prevention for bidirectional relays.

Each relay stamps the documents it writes with its own ``sync_source`` marker.
The change stream subscription excludes inserts carrying that marker or a
peer relay's marker, so a write produced by a relay is never replicated back.
The predicate is pushed down to the server as a ``$match`` stage.
"""

from typing import Any, Dict, Iterable, List

from .models import OperationKind

SYNC_SOURCE_FIELD = "sync_source"
SYNC_DT_FIELD = "sync_dt"


class LoopPreventionFilter:
    """
    Server-side change stream filter.

    Example:
        >>> f = LoopPreventionFilter("atlas-changestream", ["legacy-changestream"])
        >>> collection.watch(pipeline=f.pipeline())
    """

    def __init__(self, own_marker: str, peer_markers: Iterable[str] = ()):
        if not own_marker:
            raise ValueError("own_marker must be a non-empty string")
        peers = [m for m in peer_markers if m]
        if own_marker in peers:
            raise ValueError(
                f"Marker {own_marker!r} is used by both directions; each relay needs its own marker"
            )
        self.own_marker = own_marker
        self.peer_markers = tuple(dict.fromkeys(peers))

    @property
    def excluded_markers(self) -> List[str]:
        return [self.own_marker, *self.peer_markers]

    def match_stage(self) -> Dict[str, Any]:
        return {
            "$match": {
                "operationType": OperationKind.INSERT.value,
                f"fullDocument.{SYNC_SOURCE_FIELD}": {"$nin": self.excluded_markers},
            }
        }

    def pipeline(self) -> List[Dict[str, Any]]:
        """Aggregation pipeline for ``Collection.watch``."""
        return [self.match_stage()]

    def accepts(self, change: Dict[str, Any]) -> bool:
        """Evaluate the same predicate locally on a raw change document."""
        if change.get("operationType") != OperationKind.INSERT.value:
            return False
        document = change.get("fullDocument") or {}
        return document.get(SYNC_SOURCE_FIELD) not in self.excluded_markers

    def __repr__(self) -> str:
        return f"LoopPreventionFilter(own_marker={self.own_marker!r}, peer_markers={list(self.peer_markers)!r})"
