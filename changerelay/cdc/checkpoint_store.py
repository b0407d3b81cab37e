"""
Checkpoint stores for change stream resume tokens.

Two backends share one contract:
- MongoCheckpointStore keeps a ``latestToken`` record next to the watched
  collection, through the data store handle.
- SQLCheckpointStore keeps it in a relational table via SQLAlchemy.

``load()`` returns None when no checkpoint exists; every other failure is
raised as CheckpointError so the capture loop can decide what to do.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, Optional
import logging

from bson import json_util
from sqlalchemy import create_engine, Column, String, DateTime, Text, BigInteger, Integer, UniqueConstraint, Index, text
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from sqlalchemy.exc import SQLAlchemyError, OperationalError
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type

from ..monitoring.metrics import checkpoint_loads_total, checkpoint_saves_total
from ..store.base import DataStore
from .errors import CheckpointError, RelayError

logger = logging.getLogger(__name__)

DEFAULT_CHECKPOINT_ID = "latestToken"

Base = declarative_base()


def validate_resume_token(token: Any) -> bool:
    """Resume tokens are non-empty documents (usually ``{"_data": ...}``)."""
    return isinstance(token, dict) and len(token) > 0


class CheckpointStore(ABC):
    """Persists the last fully applied change stream position."""

    backend: str = "unknown"

    @abstractmethod
    def load(self) -> Optional[Dict[str, Any]]:
        """Return the last saved position, or None if there is none."""

    @abstractmethod
    def save(self, position: Dict[str, Any]) -> None:
        """Upsert the checkpoint. Idempotent for the same position."""

    @abstractmethod
    def reset(self) -> None:
        """Forget the checkpoint so the next run starts from now."""

    def close(self) -> None:
        """Release resources held by the store."""


class MongoCheckpointStore(CheckpointStore):
    """
    Checkpoint record kept in the source store's checkpoint collection.

    Example:
        >>> store = MongoCheckpointStore(source_store)
        >>> store.save(change["_id"])
        >>> store.load()
    """

    backend = "mongo"

    def __init__(self, store: DataStore, checkpoint_id: str = DEFAULT_CHECKPOINT_ID):
        self.store = store
        self.checkpoint_id = checkpoint_id

    def load(self) -> Optional[Dict[str, Any]]:
        try:
            token = self.store.get_checkpoint(self.checkpoint_id)
        except RelayError as e:
            checkpoint_loads_total.labels(backend=self.backend, status='error').inc()
            logger.error(
                f"Failed to load checkpoint {self.checkpoint_id}: {e}",
                extra={"checkpoint_id": self.checkpoint_id, "store": self.store.name}
            )
            raise CheckpointError(f"Failed to load checkpoint: {e}") from e

        if token is None:
            checkpoint_loads_total.labels(backend=self.backend, status='not_found').inc()
            logger.info(
                f"No checkpoint {self.checkpoint_id} found",
                extra={"checkpoint_id": self.checkpoint_id, "store": self.store.name}
            )
            return None

        if not validate_resume_token(token):
            checkpoint_loads_total.labels(backend=self.backend, status='invalid').inc()
            raise CheckpointError(f"Stored checkpoint {self.checkpoint_id} is not a valid resume token")

        checkpoint_loads_total.labels(backend=self.backend, status='success').inc()
        return token

    def save(self, position: Dict[str, Any]) -> None:
        if not validate_resume_token(position):
            raise CheckpointError("Invalid resume token structure")
        try:
            self.store.upsert_checkpoint(self.checkpoint_id, position)
        except RelayError as e:
            checkpoint_saves_total.labels(backend=self.backend, status='error').inc()
            raise CheckpointError(f"Failed to save checkpoint: {e}") from e

        checkpoint_saves_total.labels(backend=self.backend, status='success').inc()
        logger.debug(
            f"Saved checkpoint {self.checkpoint_id}",
            extra={"checkpoint_id": self.checkpoint_id, "store": self.store.name}
        )

    def reset(self) -> None:
        try:
            self.store.delete_checkpoint(self.checkpoint_id)
        except RelayError as e:
            raise CheckpointError(f"Failed to reset checkpoint: {e}") from e
        logger.warning(
            f"Checkpoint {self.checkpoint_id} reset",
            extra={"checkpoint_id": self.checkpoint_id, "store": self.store.name}
        )


class RelayCheckpoint(Base):
    """
    Relay checkpoint model.

    Stores:
    - checkpoint_id: Fixed record identifier (``latestToken``)
    - collection: Watched collection
    - resume_token: Resume token as canonical extended JSON
    - records_processed: Checkpoints written so far
    - created_at: First checkpoint time
    - updated_at: Last update time
    """
    __tablename__ = "relay_checkpoints"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    checkpoint_id = Column(String(255), nullable=False, index=True)
    collection = Column(String(255), nullable=False, index=True)
    resume_token = Column(Text, nullable=False)
    records_processed = Column(BigInteger, default=0)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint('checkpoint_id', 'collection', name='uq_relay_checkpoints_id_collection'),
        Index('idx_relay_checkpoints_updated_at', 'updated_at'),
    )


class SQLCheckpointStore(CheckpointStore):
    """
    Relational checkpoint store.

    Features:
    - Transactional upsert with row-level locking
    - Automatic retry on transient failures
    - Any BSON resume token round-trips (stored as extended JSON)

    Example:
        >>> store = SQLCheckpointStore(database_url, collection="orders")
        >>> store.save(resume_token)
        >>> token = store.load()
    """

    backend = "sql"

    def __init__(
        self,
        database_url: str,
        collection: str,
        checkpoint_id: str = DEFAULT_CHECKPOINT_ID
    ):
        """
        Args:
            database_url: SQLAlchemy connection URL
            collection: Watched collection the checkpoint belongs to
            checkpoint_id: Record identifier

        Raises:
            CheckpointError: If database connection fails
        """
        self.collection = collection
        self.checkpoint_id = checkpoint_id
        self.records_processed = 0
        try:
            engine_options: Dict[str, Any] = {"pool_pre_ping": True, "echo": False}
            if not database_url.startswith("sqlite"):
                engine_options.update(pool_size=5, max_overflow=10, pool_recycle=3600)
            self.engine = create_engine(database_url, **engine_options)

            self.SessionLocal = sessionmaker(
                bind=self.engine,
                autoflush=False
            )

            Base.metadata.create_all(self.engine)

            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))

            logger.info(
                "SQLCheckpointStore initialized",
                extra={"collection": collection, "checkpoint_id": checkpoint_id}
            )

        except SQLAlchemyError as e:
            logger.error(f"Failed to initialize SQLCheckpointStore: {e}")
            raise CheckpointError(f"Database connection failed: {e}") from e

    def _query(self, session: Session):
        return session.query(RelayCheckpoint).filter_by(
            checkpoint_id=self.checkpoint_id,
            collection=self.collection
        )

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception_type(OperationalError),
        reraise=True
    )
    def _upsert(self, serialized: str) -> None:
        session = self.SessionLocal()
        try:
            with session.begin():
                checkpoint = self._query(session).with_for_update().first()
                if checkpoint:
                    checkpoint.resume_token = serialized
                    checkpoint.records_processed = self.records_processed + 1
                    checkpoint.updated_at = datetime.utcnow()
                else:
                    session.add(RelayCheckpoint(
                        checkpoint_id=self.checkpoint_id,
                        collection=self.collection,
                        resume_token=serialized,
                        records_processed=self.records_processed + 1
                    ))
        finally:
            session.close()

    def save(self, position: Dict[str, Any]) -> None:
        """
        Save checkpoint (upsert).

        Raises:
            CheckpointError: If the token is invalid or the save fails after retries
        """
        if not validate_resume_token(position):
            raise CheckpointError("Invalid resume token structure")

        try:
            self._upsert(json_util.dumps(position))
        except SQLAlchemyError as e:
            checkpoint_saves_total.labels(backend=self.backend, status='error').inc()
            logger.error(
                f"Database error saving checkpoint: {e}",
                extra={"checkpoint_id": self.checkpoint_id, "collection": self.collection}
            )
            raise CheckpointError(f"Database error: {e}") from e

        self.records_processed += 1
        checkpoint_saves_total.labels(backend=self.backend, status='success').inc()
        logger.debug(
            f"Saved checkpoint {self.checkpoint_id}",
            extra={
                "checkpoint_id": self.checkpoint_id,
                "collection": self.collection,
                "records_processed": self.records_processed
            }
        )

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception_type(OperationalError),
        reraise=True
    )
    def _fetch(self) -> Optional[RelayCheckpoint]:
        session = self.SessionLocal()
        try:
            checkpoint = self._query(session).first()
            if checkpoint is not None:
                session.expunge(checkpoint)
            return checkpoint
        finally:
            session.close()

    def load(self) -> Optional[Dict[str, Any]]:
        """
        Load the checkpoint.

        Returns:
            Resume token if a checkpoint exists, None otherwise

        Raises:
            CheckpointError: If the read fails or the stored token is unreadable
        """
        try:
            checkpoint = self._fetch()
        except SQLAlchemyError as e:
            checkpoint_loads_total.labels(backend=self.backend, status='error').inc()
            logger.error(
                f"Database error loading checkpoint: {e}",
                extra={"checkpoint_id": self.checkpoint_id, "collection": self.collection}
            )
            raise CheckpointError(f"Database error: {e}") from e

        if checkpoint is None:
            checkpoint_loads_total.labels(backend=self.backend, status='not_found').inc()
            logger.info(
                f"No checkpoint found for collection {self.collection}",
                extra={"checkpoint_id": self.checkpoint_id, "collection": self.collection}
            )
            return None

        try:
            token = json_util.loads(checkpoint.resume_token)
        except ValueError as e:
            checkpoint_loads_total.labels(backend=self.backend, status='invalid').inc()
            raise CheckpointError(f"Stored checkpoint is not valid JSON: {e}") from e

        if not validate_resume_token(token):
            checkpoint_loads_total.labels(backend=self.backend, status='invalid').inc()
            raise CheckpointError("Stored checkpoint is not a valid resume token")

        self.records_processed = checkpoint.records_processed or 0
        checkpoint_loads_total.labels(backend=self.backend, status='success').inc()
        logger.info(
            f"Loaded checkpoint for collection {self.collection}",
            extra={
                "checkpoint_id": self.checkpoint_id,
                "collection": self.collection,
                "records_processed": self.records_processed
            }
        )
        return token

    def reset(self) -> None:
        """Delete the checkpoint (operator resync)."""
        session = self.SessionLocal()
        try:
            with session.begin():
                checkpoint = self._query(session).first()
                if checkpoint:
                    session.delete(checkpoint)
        except SQLAlchemyError as e:
            raise CheckpointError(f"Database error: {e}") from e
        finally:
            session.close()

        self.records_processed = 0
        logger.warning(
            f"Checkpoint {self.checkpoint_id} reset for collection {self.collection}",
            extra={"checkpoint_id": self.checkpoint_id, "collection": self.collection}
        )

    def close(self) -> None:
        """Close database connections."""
        if hasattr(self, 'engine'):
            self.engine.dispose()
            logger.info("SQLCheckpointStore connections closed")
