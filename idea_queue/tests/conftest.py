"""
Shared fixtures: an isolated settings environment and a fresh SQLite
database per test.
"""

from datetime import datetime, timezone

import pytest

from idea_queue.config import clear_settings_cache
from idea_queue.db import Database
from idea_queue.sources.base import FeedReadResult, ParsedItem
from idea_queue.subscribers import create_subscriber


@pytest.fixture(autouse=True)
def isolated_settings(monkeypatch, tmp_path):
    """Keep tests away from any local .env or shared database file."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("DATABASE_PATH", str(tmp_path / "default.db"))
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.delenv("PUBLIC_BASE_URL", raising=False)
    monkeypatch.setenv("ENABLE_SCHEDULER", "false")
    clear_settings_cache()
    yield
    clear_settings_cache()


@pytest.fixture
def db(tmp_path):
    database = Database(url=f"sqlite:///{tmp_path / 'test.db'}")
    database.create_tables()
    yield database
    database.engine.dispose()


@pytest.fixture
def alice(db):
    return create_subscriber(db, "alice@example.com", "Alice")


@pytest.fixture
def bob(db):
    return create_subscriber(db, "bob@example.com", "Bob")


NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


class FakeReader:
    """
    Stands in for ``FeedReader``: serves canned items (or an error) per URL
    and records every fetch.
    """

    def __init__(self, feeds=None, errors=None):
        self.feeds = feeds or {}
        self.errors = errors or {}
        self.calls = []

    async def read(self, feed_url):
        self.calls.append(feed_url)
        if feed_url in self.errors:
            return FeedReadResult(feed_url=feed_url, items=iter(()), error=self.errors[feed_url])
        return FeedReadResult(feed_url=feed_url, items=iter(list(self.feeds.get(feed_url, []))))


def make_item(title, link, published_at=NOW, description="Summary text"):
    return ParsedItem(title=title, link=link, description=description, published_at=published_at)
