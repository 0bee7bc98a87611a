"""
Global item store and URL deduplication.

Items are shared by every subscriber and identified by their canonical URL.
Deduplication relies on the unique constraint on ``items.canonical_url``
rather than an application lock: two writers racing on the same URL both
try to insert, one wins, and the loser rolls back and re-reads the winner's
row.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .db import Database, Item, utc_now
from .logging_conf import get_logger

logger = get_logger(__name__)

PROTOCOL_ORIGIN = "protocol"


class ContentKind:
    VIDEO = "video"
    PAPER = "paper"
    CHANGELOG = "changelog"
    RELEASE = "release"
    ARTICLE = "article"


def infer_content_kind(url: Optional[str], source_name: str = "") -> str:
    """Classify an item from its URL and source name. First match wins."""
    url = (url or "").lower()
    source = (source_name or "").lower()

    if "youtube.com" in url or "youtu.be" in url:
        return ContentKind.VIDEO
    if "arxiv.org" in url or "/paper" in url:
        return ContentKind.PAPER
    if "changelog" in source or "/changelog" in url:
        return ContentKind.CHANGELOG
    if "/releases/" in url or "/release/" in url:
        return ContentKind.RELEASE
    if "vimeo.com" in url or "/watch" in url:
        return ContentKind.VIDEO
    return ContentKind.ARTICLE


@dataclass
class Candidate:
    """An item about to be stored, as produced by a feed pass."""
    title: str
    url: Optional[str]
    summary: str
    source_name: str
    category: Optional[str] = None
    origin_feed_url: Optional[str] = None
    published_at: Optional[datetime] = None


@dataclass
class ResolveResult:
    item_id: int
    created: bool


class ItemStore:
    """Single source of truth for items."""

    def __init__(self, db: Database):
        self.db = db

    def find_by_url(self, session: Session, url: str) -> Optional[Item]:
        return session.query(Item).filter(Item.canonical_url == url).first()

    def resolve_or_create(self, candidate: Candidate) -> ResolveResult:
        """
        Return the existing item for ``candidate.url`` or create it.

        Candidates without a URL have no identity to deduplicate on and
        always create a new item.
        """
        session = self.db.get_session()
        try:
            if candidate.url:
                existing = self.find_by_url(session, candidate.url)
                if existing is not None:
                    return ResolveResult(item_id=existing.id, created=False)

            item = Item(
                title=candidate.title,
                canonical_url=candidate.url or None,
                summary=candidate.summary or "",
                source_name=candidate.source_name,
                category=candidate.category,
                origin_feed_url=candidate.origin_feed_url,
                content_kind=infer_content_kind(candidate.url, candidate.source_name),
                published_at=candidate.published_at,
                ingested_at=utc_now(),
            )
            session.add(item)
            try:
                session.commit()
            except IntegrityError:
                # Another writer inserted the same URL first
                session.rollback()
                existing = self.find_by_url(session, candidate.url) if candidate.url else None
                if existing is None:
                    raise
                logger.debug("item_insert_conflict", url=candidate.url, item_id=existing.id)
                return ResolveResult(item_id=existing.id, created=False)

            logger.debug("item_created", item_id=item.id, kind=item.content_kind, url=candidate.url)
            return ResolveResult(item_id=item.id, created=True)
        finally:
            session.close()

    def add_manual_item(
        self,
        title: str,
        source: str,
        summary: str,
        url: Optional[str] = None,
        category: Optional[str] = None,
    ) -> ResolveResult:
        """
        Add an item that did not come from a feed. It is not queued for
        anyone.
        """
        return self.resolve_or_create(Candidate(
            title=title,
            url=url or None,
            summary=summary,
            source_name=source,
            category=category or "custom",
            origin_feed_url=PROTOCOL_ORIGIN,
        ))

    def get_item(self, item_id: int) -> Optional[Item]:
        with self.db.session_scope() as session:
            return session.get(Item, item_id)

    def get_by_url(self, url: str) -> Optional[Item]:
        with self.db.session_scope() as session:
            return self.find_by_url(session, url)

    def count_items(self) -> int:
        with self.db.session_scope() as session:
            return session.query(func.count(Item.id)).scalar()
