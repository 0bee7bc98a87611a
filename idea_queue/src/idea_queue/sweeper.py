"""
Retention sweeper for undecided queue entries.
"""

from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select

from .db import Database, Decision, QueueEntry, utc_now
from .logging_conf import get_logger

logger = get_logger(__name__)

DEFAULT_HORIZON = timedelta(days=7)


class RetentionSweeper:

    def __init__(self, db: Database):
        self.db = db

    def prune_stale(
        self,
        horizon: timedelta = DEFAULT_HORIZON,
        now: Optional[datetime] = None,
    ) -> int:
        """
        Delete queue entries added before ``now - horizon``.

        Entries whose (subscriber, item) pair has a decision are kept; the
        decision flow should already have removed them.
        """
        cutoff = (now or utc_now()) - horizon
        decided = select(Decision.id).where(
            Decision.subscriber_id == QueueEntry.subscriber_id,
            Decision.item_id == QueueEntry.item_id,
        ).correlate(QueueEntry).exists()

        with self.db.session_scope() as session:
            removed = session.query(QueueEntry).filter(
                QueueEntry.added_at < cutoff,
                ~decided,
            ).delete(synchronize_session=False)

        logger.info("queue_pruned", removed=removed, cutoff=cutoff.isoformat())
        return removed
