"""
Base types shared by the feed reader and the registry.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterator, Optional


@dataclass
class ParsedItem:
    """
    One normalized item read from a feed document.

    Every field except ``published_at`` is plain text; a missing date stays
    ``None`` rather than being defaulted to the fetch time.
    """
    title: str
    link: str
    description: str = ""
    published_at: Optional[datetime] = None

    def __str__(self) -> str:
        return f"{self.title[:60]} <{self.link}>"


@dataclass
class FeedReadResult:
    """
    Outcome of reading one feed.

    ``items`` is a generator: it can be consumed once. When ``error`` is set
    the generator is empty.
    """
    feed_url: str
    items: Iterator[ParsedItem]
    error: Optional[str] = None
    status_code: Optional[int] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class FetchTarget:
    """
    A feed to fetch once during a pass, and everyone who wants it.

    ``source_name`` and ``category`` come from the earliest subscription to
    the URL; they label items created from this feed.
    """
    feed_url: str
    source_name: str
    category: str
    subscriber_ids: list[int] = field(default_factory=list)

    def __str__(self) -> str:
        return f"{self.source_name} ({self.feed_url[:50]}) x{len(self.subscriber_ids)}"
