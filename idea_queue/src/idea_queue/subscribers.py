"""
Subscribers and their protocol tokens.

A protocol token is a capability: whoever holds it acts as the subscriber
on the stream endpoints. Regenerating a token invalidates the old one at
once, because lookups always go through the stored value.
"""

import uuid
from typing import Optional

from .db import Database, Subscriber
from .logging_conf import get_logger

logger = get_logger(__name__)


class SubscriberNotFoundError(Exception):
    """No subscriber with this id."""


def _new_token() -> str:
    return str(uuid.uuid4())


def create_subscriber(db: Database, email: str, name: Optional[str] = None) -> Subscriber:
    with db.session_scope() as session:
        subscriber = Subscriber(email=email.strip().lower(), name=name)
        session.add(subscriber)
    logger.info("subscriber_created", subscriber_id=subscriber.id)
    return subscriber


def get_subscriber(db: Database, subscriber_id: int) -> Subscriber:
    with db.session_scope() as session:
        subscriber = session.get(Subscriber, subscriber_id)
    if subscriber is None:
        raise SubscriberNotFoundError(f"Subscriber {subscriber_id} not found")
    return subscriber


def subscriber_for_token(db: Database, token: Optional[str]) -> Optional[Subscriber]:
    """Resolve a protocol token, or ``None`` if it is unknown."""
    if not token:
        return None
    with db.session_scope() as session:
        return session.query(Subscriber).filter(
            Subscriber.protocol_token == token
        ).first()


def ensure_token(db: Database, subscriber_id: int) -> str:
    """Return the subscriber's token, issuing one on first use."""
    with db.session_scope() as session:
        subscriber = session.get(Subscriber, subscriber_id)
        if subscriber is None:
            raise SubscriberNotFoundError(f"Subscriber {subscriber_id} not found")
        if not subscriber.protocol_token:
            subscriber.protocol_token = _new_token()
            logger.info("protocol_token_issued", subscriber_id=subscriber_id)
        return subscriber.protocol_token


def regenerate_token(db: Database, subscriber_id: int) -> str:
    """Replace the subscriber's token; the previous one stops working."""
    with db.session_scope() as session:
        subscriber = session.get(Subscriber, subscriber_id)
        if subscriber is None:
            raise SubscriberNotFoundError(f"Subscriber {subscriber_id} not found")
        subscriber.protocol_token = _new_token()
        token = subscriber.protocol_token

    logger.info("protocol_token_regenerated", subscriber_id=subscriber_id)
    return token
