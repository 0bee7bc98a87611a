"""
Feed sources module.

Provides:
- RSS 2.0 / Atom reading and parsing (``FeedReader``)
- The registry of subscriber feed subscriptions (``FeedRegistry``)
"""

from .base import FeedReadResult, FetchTarget, ParsedItem
from .rss import FeedReader
from .registry import FeedRegistry

__all__ = [
    "FeedReader",
    "FeedRegistry",
    "FeedReadResult",
    "FetchTarget",
    "ParsedItem",
]
