"""
Tests for the fan-out queue, decisions and the retention sweeper.
"""

from datetime import timedelta

import pytest
from sqlalchemy.exc import IntegrityError

from idea_queue.db import QueueEntry, Subscriber, utc_now
from idea_queue.fanout import FanoutQueue
from idea_queue.store import Candidate, ItemStore
from idea_queue.sweeper import RetentionSweeper


@pytest.fixture
def queue(db):
    return FanoutQueue(db)


@pytest.fixture
def item_id(db):
    store = ItemStore(db)
    return store.resolve_or_create(Candidate(
        title="Story",
        url="https://example.com/story",
        summary="Summary",
        source_name="Example",
    )).item_id


class TestEnqueue:
    """Tests for queueing items."""

    def test_enqueue_is_idempotent(self, queue, alice, item_id):
        assert queue.enqueue(alice.id, item_id) is True
        assert queue.enqueue(alice.id, item_id) is False
        assert queue.count(alice.id) == 1

    def test_queues_are_per_subscriber(self, queue, alice, bob, item_id):
        queue.enqueue(alice.id, item_id)
        queue.enqueue(bob.id, item_id)

        assert queue.count(alice.id) == 1
        assert queue.count(bob.id) == 1
        assert queue.count() == 2

    def test_pending_returns_items(self, queue, alice, item_id):
        queue.enqueue(alice.id, item_id)

        pending = queue.pending(alice.id)

        assert [item.id for item in pending] == [item_id]

    def test_decided_item_not_requeued(self, queue, alice, item_id):
        queue.enqueue(alice.id, item_id)
        queue.record_decision(alice.id, item_id, accepted=False)

        assert queue.enqueue(alice.id, item_id) is False
        assert queue.count(alice.id) == 0

    def test_missing_subscriber_skipped(self, db, queue, bob, item_id):
        with db.session_scope() as session:
            session.delete(session.get(Subscriber, bob.id))

        assert queue.enqueue(bob.id, item_id) is False
        assert queue.count() == 0

    def test_missing_item_still_raises(self, queue, alice):
        with pytest.raises(IntegrityError):
            queue.enqueue(alice.id, 9999)


class TestDecisions:
    """Tests for recording decisions."""

    def test_decision_removes_queue_entry(self, queue, alice, item_id):
        queue.enqueue(alice.id, item_id)

        decision = queue.record_decision(alice.id, item_id, accepted=True, note="great")

        assert decision.accepted is True
        assert decision.note == "great"
        assert not queue.is_queued(alice.id, item_id)

    def test_decision_can_be_changed(self, db, queue, alice, item_id):
        queue.record_decision(alice.id, item_id, accepted=True)
        queue.record_decision(alice.id, item_id, accepted=False, note="changed my mind")

        assert db.get_stats()["total_decisions"] == 1

    def test_undo_requeues(self, queue, alice, item_id):
        queue.enqueue(alice.id, item_id)
        queue.record_decision(alice.id, item_id, accepted=True)

        assert queue.undo_decision(alice.id, item_id) is True
        assert queue.is_queued(alice.id, item_id)

    def test_undo_without_decision(self, queue, alice, item_id):
        assert queue.undo_decision(alice.id, item_id) is False


class TestRetentionSweeper:
    """Tests for pruning stale queue entries."""

    def test_old_entry_pruned(self, db, queue, alice, item_id):
        queue.enqueue(alice.id, item_id)

        removed = RetentionSweeper(db).prune_stale(now=utc_now() + timedelta(days=8))

        assert removed == 1
        assert queue.count(alice.id) == 0

    def test_recent_entry_kept(self, db, queue, alice, item_id):
        queue.enqueue(alice.id, item_id)

        removed = RetentionSweeper(db).prune_stale(now=utc_now() + timedelta(days=6))

        assert removed == 0
        assert queue.is_queued(alice.id, item_id)

    def test_decided_entry_kept(self, db, queue, alice, item_id):
        """An entry that somehow coexists with a decision is not swept."""
        queue.record_decision(alice.id, item_id, accepted=True)
        with db.session_scope() as session:
            session.add(QueueEntry(subscriber_id=alice.id, item_id=item_id, added_at=utc_now()))

        removed = RetentionSweeper(db).prune_stale(now=utc_now() + timedelta(days=8))

        assert removed == 0
        assert queue.is_queued(alice.id, item_id)

    def test_custom_horizon(self, db, queue, alice, item_id):
        queue.enqueue(alice.id, item_id)

        removed = RetentionSweeper(db).prune_stale(
            horizon=timedelta(days=1),
            now=utc_now() + timedelta(days=2),
        )

        assert removed == 1
