"""
Per-subscriber fan-out queue and decision records.

A queue entry means "this subscriber has not decided on this item yet".
Recording a decision replaces the entry with a decision row.
"""

from typing import Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from .db import Database, Decision, Item, QueueEntry, Subscriber, utc_now
from .logging_conf import get_logger

logger = get_logger(__name__)


class FanoutQueue:
    """Queue operations for all subscribers."""

    def __init__(self, db: Database):
        self.db = db

    def enqueue(self, subscriber_id: int, item_id: int) -> bool:
        """
        Queue ``item_id`` for ``subscriber_id``.

        Returns True when a new entry was written. Repeats and items the
        subscriber already decided on are no-ops.
        """
        session = self.db.get_session()
        try:
            decided = session.query(Decision.id).filter(
                Decision.subscriber_id == subscriber_id,
                Decision.item_id == item_id,
            ).first()
            if decided is not None:
                return False

            session.add(QueueEntry(
                subscriber_id=subscriber_id,
                item_id=item_id,
                added_at=utc_now(),
            ))
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                if self.is_queued(subscriber_id, item_id):
                    return False
                if session.get(Subscriber, subscriber_id) is None:
                    # Deleted after the pass resolved its fetch set
                    logger.info(
                        "enqueue_skipped_missing_subscriber",
                        subscriber_id=subscriber_id,
                        item_id=item_id,
                    )
                    return False
                raise
            return True
        finally:
            session.close()

    def is_queued(self, subscriber_id: int, item_id: int) -> bool:
        with self.db.session_scope() as session:
            return session.query(QueueEntry.id).filter(
                QueueEntry.subscriber_id == subscriber_id,
                QueueEntry.item_id == item_id,
            ).first() is not None

    def pending(self, subscriber_id: int, limit: int = 50) -> list[Item]:
        """Items waiting for a decision, newest first."""
        with self.db.session_scope() as session:
            return session.query(Item).join(
                QueueEntry, QueueEntry.item_id == Item.id
            ).filter(
                QueueEntry.subscriber_id == subscriber_id
            ).order_by(
                Item.published_at.desc(), QueueEntry.id.desc()
            ).limit(limit).all()

    def count(self, subscriber_id: Optional[int] = None) -> int:
        with self.db.session_scope() as session:
            query = session.query(func.count(QueueEntry.id))
            if subscriber_id is not None:
                query = query.filter(QueueEntry.subscriber_id == subscriber_id)
            return query.scalar()

    # Decisions
    def record_decision(
        self,
        subscriber_id: int,
        item_id: int,
        accepted: bool,
        note: Optional[str] = None,
    ) -> Decision:
        """Save (or overwrite) a decision and take the item off the queue."""
        with self.db.session_scope() as session:
            decision = session.query(Decision).filter(
                Decision.subscriber_id == subscriber_id,
                Decision.item_id == item_id,
            ).first()
            if decision is None:
                decision = Decision(subscriber_id=subscriber_id, item_id=item_id)
                session.add(decision)
            decision.accepted = accepted
            decision.note = note
            decision.decided_at = utc_now()

            session.query(QueueEntry).filter(
                QueueEntry.subscriber_id == subscriber_id,
                QueueEntry.item_id == item_id,
            ).delete(synchronize_session=False)

        logger.info(
            "decision_recorded",
            subscriber_id=subscriber_id,
            item_id=item_id,
            accepted=accepted,
        )
        return decision

    def undo_decision(self, subscriber_id: int, item_id: int) -> bool:
        """Drop a decision and put the item back on the queue."""
        with self.db.session_scope() as session:
            removed = session.query(Decision).filter(
                Decision.subscriber_id == subscriber_id,
                Decision.item_id == item_id,
            ).delete(synchronize_session=False)

        if removed:
            self.enqueue(subscriber_id, item_id)
            logger.info("decision_undone", subscriber_id=subscriber_id, item_id=item_id)
        return bool(removed)
