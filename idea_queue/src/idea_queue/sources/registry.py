"""
Feed registry backed by subscriber feed subscriptions.

Many subscribers can point at the same feed URL. A pass fetches each URL
once, so the registry groups enabled subscriptions by URL and carries the
list of subscribers that want each feed.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy.exc import IntegrityError

from .base import FetchTarget
from ..db import Database, FeedSubscription, Subscriber, utc_now
from ..logging_conf import get_logger
from ..subscribers import SubscriberNotFoundError

logger = get_logger(__name__)

DEFAULT_CATEGORY = "custom"


class SubscriptionExistsError(Exception):
    """The subscriber already follows this feed URL."""


class SubscriptionNotFoundError(Exception):
    """No such subscription for this subscriber."""


class FeedRegistry:
    """
    Resolves which feeds to fetch and who wants each one, and manages
    subscriptions on behalf of subscribers.
    """

    def __init__(self, db: Database):
        self.db = db

    # ------------------------------------------------------------------
    # Fetch sets
    # ------------------------------------------------------------------

    def distinct_fetch_set(self) -> list[FetchTarget]:
        """
        One target per unique enabled feed URL, in first-subscribed order.
        """
        targets: dict[str, FetchTarget] = {}

        with self.db.session_scope() as session:
            subscriptions = session.query(FeedSubscription).filter(
                FeedSubscription.enabled.is_(True)
            ).order_by(
                FeedSubscription.created_at, FeedSubscription.id
            ).all()

            for sub in subscriptions:
                target = targets.get(sub.feed_url)
                if target is None:
                    target = FetchTarget(
                        feed_url=sub.feed_url,
                        source_name=sub.display_name,
                        category=sub.category or DEFAULT_CATEGORY,
                    )
                    targets[sub.feed_url] = target
                if sub.subscriber_id not in target.subscriber_ids:
                    target.subscriber_ids.append(sub.subscriber_id)

        logger.debug(
            "fetch_set_resolved",
            feeds=len(targets),
            subscriptions=sum(len(t.subscriber_ids) for t in targets.values()),
        )
        return list(targets.values())

    def subscriptions_for(self, subscriber_id: int) -> list[FetchTarget]:
        """A single subscriber's enabled feeds, without global grouping."""
        with self.db.session_scope() as session:
            subscriptions = session.query(FeedSubscription).filter(
                FeedSubscription.subscriber_id == subscriber_id,
                FeedSubscription.enabled.is_(True),
            ).order_by(
                FeedSubscription.created_at, FeedSubscription.id
            ).all()

            return [
                FetchTarget(
                    feed_url=sub.feed_url,
                    source_name=sub.display_name,
                    category=sub.category or DEFAULT_CATEGORY,
                    subscriber_ids=[subscriber_id],
                )
                for sub in subscriptions
            ]

    def record_fetch(
        self,
        feed_url: str,
        subscriber_ids: list[int],
        error: Optional[str] = None,
        fetched_at: Optional[datetime] = None,
    ) -> int:
        """Stamp the fetch attempt (and its error, if any) on subscriptions."""
        with self.db.session_scope() as session:
            return session.query(FeedSubscription).filter(
                FeedSubscription.feed_url == feed_url,
                FeedSubscription.subscriber_id.in_(subscriber_ids),
            ).update(
                {
                    "last_fetched_at": fetched_at or utc_now(),
                    "last_error": error,
                },
                synchronize_session=False,
            )

    # ------------------------------------------------------------------
    # Subscription management
    # ------------------------------------------------------------------

    def add_subscription(
        self,
        subscriber_id: int,
        feed_url: str,
        display_name: str,
        category: Optional[str] = None,
    ) -> FeedSubscription:
        """Subscribe to a feed. Raises ``SubscriptionExistsError`` on repeats."""
        feed_url = feed_url.strip()
        if not feed_url or not display_name.strip():
            raise ValueError("feed URL and name are required")

        session = self.db.get_session()
        try:
            if session.get(Subscriber, subscriber_id) is None:
                raise SubscriberNotFoundError(f"Subscriber {subscriber_id} not found")

            sub = FeedSubscription(
                subscriber_id=subscriber_id,
                feed_url=feed_url,
                display_name=display_name.strip(),
                category=category or DEFAULT_CATEGORY,
            )
            session.add(sub)
            session.commit()
        except IntegrityError:
            session.rollback()
            raise SubscriptionExistsError(f"Already subscribed to {feed_url}")
        finally:
            session.close()

        logger.info("subscription_added", subscriber_id=subscriber_id, url=feed_url)
        return sub

    def list_subscriptions(self, subscriber_id: int) -> list[FeedSubscription]:
        """All of a subscriber's subscriptions, newest first."""
        with self.db.session_scope() as session:
            return session.query(FeedSubscription).filter(
                FeedSubscription.subscriber_id == subscriber_id
            ).order_by(
                FeedSubscription.created_at.desc(), FeedSubscription.id.desc()
            ).all()

    def update_subscription(
        self,
        subscriber_id: int,
        subscription_id: int,
        display_name: Optional[str] = None,
        category: Optional[str] = None,
        enabled: Optional[bool] = None,
    ) -> FeedSubscription:
        """Rename, recategorize, enable or disable a subscription."""
        with self.db.session_scope() as session:
            sub = self._owned(session, subscriber_id, subscription_id)
            if display_name is not None:
                sub.display_name = display_name
            if category is not None:
                sub.category = category
            if enabled is not None:
                sub.enabled = enabled

        logger.info(
            "subscription_updated",
            subscriber_id=subscriber_id,
            subscription_id=subscription_id,
            enabled=sub.enabled,
        )
        return sub

    def delete_subscription(self, subscriber_id: int, subscription_id: int) -> None:
        with self.db.session_scope() as session:
            session.delete(self._owned(session, subscriber_id, subscription_id))

        logger.info("subscription_deleted", subscriber_id=subscriber_id, subscription_id=subscription_id)

    @staticmethod
    def _owned(session, subscriber_id: int, subscription_id: int) -> FeedSubscription:
        sub = session.query(FeedSubscription).filter(
            FeedSubscription.id == subscription_id,
            FeedSubscription.subscriber_id == subscriber_id,
        ).first()
        if sub is None:
            raise SubscriptionNotFoundError(f"Subscription {subscription_id} not found")
        return sub
