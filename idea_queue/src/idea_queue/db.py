"""
Database models and operations using SQLAlchemy.

Supports both SQLite and PostgreSQL backends. All timestamps are stored
in UTC; SQLite hands them back naive, so readers go through ``as_utc``.
"""

from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Optional, Generator

from sqlalchemy import (
    create_engine,
    event,
    Column,
    Integer,
    String,
    Text,
    DateTime,
    Boolean,
    ForeignKey,
    Index,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import (
    declarative_base,
    sessionmaker,
    relationship,
    Session,
)

from .config import get_settings
from .logging_conf import get_logger

logger = get_logger(__name__)
Base = declarative_base()


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes read back from SQLite."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Subscriber(Base):
    """
    A person receiving items. Authentication lives elsewhere; the only
    credential stored here is the protocol token.
    """
    __tablename__ = "subscribers"

    id = Column(Integer, primary_key=True, autoincrement=True)
    email = Column(String(320), nullable=False, unique=True)
    name = Column(String(200), nullable=True)
    protocol_token = Column(String(64), nullable=True, unique=True, index=True)
    created_at = Column(DateTime(timezone=True), default=utc_now)

    subscriptions = relationship("FeedSubscription", back_populates="subscriber", cascade="all, delete-orphan")


class FeedSubscription(Base):
    """
    One subscriber's interest in one feed URL.
    """
    __tablename__ = "feed_subscriptions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    subscriber_id = Column(Integer, ForeignKey("subscribers.id", ondelete="CASCADE"), nullable=False, index=True)
    feed_url = Column(String(2048), nullable=False, index=True)
    display_name = Column(String(200), nullable=False)
    category = Column(String(100), nullable=False, default="custom")
    enabled = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), default=utc_now)
    last_fetched_at = Column(DateTime(timezone=True), nullable=True)
    last_error = Column(Text, nullable=True)

    subscriber = relationship("Subscriber", back_populates="subscriptions")

    __table_args__ = (
        UniqueConstraint("subscriber_id", "feed_url", name="uq_subscription_subscriber_feed"),
    )


class Item(Base):
    """
    Global item, shared by every subscriber. Unique by canonical URL.
    """
    __tablename__ = "items"

    id = Column(Integer, primary_key=True, autoincrement=True)
    title = Column(String(1024), nullable=False)
    canonical_url = Column(String(2048), nullable=True, unique=True)
    summary = Column(Text, nullable=False, default="")
    source_name = Column(String(200), nullable=False)
    category = Column(String(100), nullable=True)
    origin_feed_url = Column(String(2048), nullable=True)
    content_kind = Column(String(20), nullable=False, default="article")
    published_at = Column(DateTime(timezone=True), nullable=True)
    ingested_at = Column(DateTime(timezone=True), default=utc_now, index=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "url": self.canonical_url,
            "summary": self.summary,
            "source": self.source_name,
            "category": self.category,
            "content_kind": self.content_kind,
            "published_at": as_utc(self.published_at).isoformat() if self.published_at else None,
            "ingested_at": as_utc(self.ingested_at).isoformat() if self.ingested_at else None,
        }


class QueueEntry(Base):
    """
    An item a subscriber still owes a decision on.
    """
    __tablename__ = "queue_entries"

    id = Column(Integer, primary_key=True, autoincrement=True)
    subscriber_id = Column(Integer, ForeignKey("subscribers.id", ondelete="CASCADE"), nullable=False)
    item_id = Column(Integer, ForeignKey("items.id", ondelete="CASCADE"), nullable=False, index=True)
    added_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)

    item = relationship("Item")

    __table_args__ = (
        UniqueConstraint("subscriber_id", "item_id", name="uq_queue_subscriber_item"),
        Index("ix_queue_entries_added", "added_at"),
    )


class Decision(Base):
    """
    A subscriber's accept/reject of an item, with an optional note.
    """
    __tablename__ = "decisions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    subscriber_id = Column(Integer, ForeignKey("subscribers.id", ondelete="CASCADE"), nullable=False, index=True)
    item_id = Column(Integer, ForeignKey("items.id", ondelete="CASCADE"), nullable=False, index=True)
    accepted = Column(Boolean, nullable=False)
    note = Column(Text, nullable=True)
    decided_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)

    item = relationship("Item")

    __table_args__ = (
        UniqueConstraint("subscriber_id", "item_id", name="uq_decision_subscriber_item"),
    )


class RunLog(Base):
    """
    Log of ingestion passes for monitoring.
    """
    __tablename__ = "run_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    run_id = Column(String(50), nullable=False, unique=True, index=True)
    kind = Column(String(20), nullable=False, default="pass")  # pass, refresh

    started_at = Column(DateTime(timezone=True), default=utc_now)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    status = Column(String(20), default="RUNNING")  # RUNNING, SUCCESS, FAILED

    feeds_fetched = Column(Integer, default=0)
    items_new = Column(Integer, default=0)
    items_existing = Column(Integer, default=0)
    entries_queued = Column(Integer, default=0)
    entries_pruned = Column(Integer, default=0)

    error_message = Column(Text, nullable=True)


class Database:
    """Database connection and operation manager."""

    def __init__(self, url: Optional[str] = None):
        """
        Initialize database connection.

        Args:
            url: Database URL (defaults to settings)
        """
        settings = get_settings()
        self.url = url or settings.effective_database_url

        connect_args = {}
        if self.url.startswith("sqlite"):
            connect_args["check_same_thread"] = False

        self.engine = create_engine(
            self.url,
            connect_args=connect_args,
            echo=False,
        )

        if self.url.startswith("sqlite"):
            # Queue entries must never outlive their item or subscriber
            @event.listens_for(self.engine, "connect")
            def _enable_foreign_keys(dbapi_connection, connection_record):
                cursor = dbapi_connection.cursor()
                cursor.execute("PRAGMA foreign_keys=ON")
                cursor.close()

        self.SessionLocal = sessionmaker(
            bind=self.engine,
            autocommit=False,
            autoflush=False,
            expire_on_commit=False,
        )

        logger.info("database_initialized", url=self.url[:50] + "...")

    def create_tables(self) -> None:
        """Create all tables if they don't exist."""
        Base.metadata.create_all(self.engine)
        logger.info("database_tables_created")

    def get_session(self) -> Session:
        """Get a new database session."""
        return self.SessionLocal()

    @contextmanager
    def session_scope(self) -> Generator[Session, None, None]:
        """Session that commits on success and rolls back on error."""
        session = self.get_session()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # Run logs
    def start_run(self, run_id: str, kind: str = "pass") -> RunLog:
        """Record the start of an ingestion pass."""
        with self.session_scope() as session:
            run = RunLog(run_id=run_id, kind=kind)
            session.add(run)
        return run

    def complete_run(
        self,
        run_id: str,
        status: str = "SUCCESS",
        feeds_fetched: int = 0,
        items_new: int = 0,
        items_existing: int = 0,
        entries_queued: int = 0,
        entries_pruned: int = 0,
        error_message: Optional[str] = None,
    ) -> None:
        """Record completion of an ingestion pass."""
        with self.session_scope() as session:
            session.query(RunLog).filter(
                RunLog.run_id == run_id
            ).update({
                "completed_at": utc_now(),
                "status": status,
                "feeds_fetched": feeds_fetched,
                "items_new": items_new,
                "items_existing": items_existing,
                "entries_queued": entries_queued,
                "entries_pruned": entries_pruned,
                "error_message": error_message,
            })

    def get_stats(self) -> dict:
        """Get database statistics."""
        with self.session_scope() as session:
            return {
                "total_items": session.query(func.count(Item.id)).scalar(),
                "total_queue_entries": session.query(func.count(QueueEntry.id)).scalar(),
                "total_decisions": session.query(func.count(Decision.id)).scalar(),
                "total_subscribers": session.query(func.count(Subscriber.id)).scalar(),
                "total_subscriptions": session.query(func.count(FeedSubscription.id)).scalar(),
                "total_runs": session.query(func.count(RunLog.id)).scalar(),
                "successful_runs": session.query(func.count(RunLog.id)).filter(
                    RunLog.status == "SUCCESS"
                ).scalar(),
            }


# Singleton instance
_db_instance: Optional[Database] = None


def get_database() -> Database:
    """Get or create database instance."""
    global _db_instance
    if _db_instance is None:
        _db_instance = Database()
        _db_instance.create_tables()
    return _db_instance

