"""
Error taxonomy for the change stream relay.

Store adapters translate driver exceptions into these types so the capture
loop can tell benign, per-event and fatal failures apart.
"""


class RelayError(Exception):
    """Base exception for relay errors."""
    pass


class StoreError(RelayError):
    """A data store operation failed."""
    pass


class StoreConnectionError(StoreError, ConnectionError):
    """Data store is unreachable (network, server selection, timeouts)."""
    pass


class ResumeUnavailable(RelayError):
    """
    The change stream cannot resume from the stored position.

    Raised when the checkpoint fell out of the oplog retention window.
    Requires operator intervention (resync and checkpoint reset).
    """
    pass


class WriteConflict(StoreError):
    """Write collided with a concurrent writer. Treated as a skip."""
    pass


class DuplicateKey(WriteConflict):
    """Document with the same key was inserted by another writer."""
    pass


class ApplyError(RelayError):
    """Applying a captured document to the destination failed."""
    pass


class CheckpointError(RelayError):
    """Error saving/loading checkpoint."""
    pass


class FeedError(RelayError):
    """The change stream delivered something the relay cannot process."""
    pass
