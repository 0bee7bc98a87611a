"""
Tests for the RSS/Atom feed reader.

Tests:
- RSS 2.0 and Atom parsing
- Field fallbacks (description/summary/content, published/updated)
- Dropping incomplete items
- Fetch failures: HTTP errors, timeouts, malformed documents
"""

from datetime import datetime, timezone

import httpx
import pytest

from idea_queue.normalize import AGGREGATOR_POINTS_COMMENTS
from idea_queue.sources.rss import FeedReader


RSS_DOC = """<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0">
  <channel>
    <title>Example News</title>
    <link>https://news.example.com/</link>
    <item>
      <title><![CDATA[Tom &amp; Jerry return]]></title>
      <link>https://news.example.com/tom-jerry</link>
      <description>&lt;p&gt;The duo is &lt;b&gt;back&lt;/b&gt;.&lt;/p&gt;</description>
      <pubDate>Sat, 01 Jun 2024 10:00:00 GMT</pubDate>
    </item>
    <item>
      <title>Undated story</title>
      <link>https://news.example.com/undated</link>
      <description>No date here</description>
    </item>
    <item>
      <title>Missing link</title>
      <description>Should be dropped</description>
    </item>
    <item>
      <link>https://news.example.com/no-title</link>
      <description>Should be dropped too</description>
    </item>
  </channel>
</rss>
"""

ATOM_DOC = """<?xml version="1.0" encoding="utf-8"?>
<feed xmlns="http://www.w3.org/2005/Atom">
  <title>Example Releases</title>
  <id>urn:example:releases</id>
  <updated>2024-06-01T09:30:00Z</updated>
  <entry>
    <title>v2.0 released</title>
    <id>urn:example:releases:2</id>
    <link href="https://github.com/example/project/releases/tag/v2.0"/>
    <updated>2024-06-01T09:30:00Z</updated>
    <content type="html">&lt;p&gt;Big release&lt;/p&gt;</content>
  </entry>
</feed>
"""

AGGREGATOR_DOC = """<?xml version="1.0"?>
<rss version="2.0"><channel><title>Aggregator</title>
  <item>
    <title>Show: a tiny compiler</title>
    <link>https://example.org/compiler</link>
    <description>Article URL: https://example.org/compiler Points: 120 # Comments: 45</description>
    <pubDate>Sat, 01 Jun 2024 11:00:00 GMT</pubDate>
  </item>
</channel></rss>
"""

EMPTY_DOC = """<?xml version="1.0"?>
<rss version="2.0"><channel><title>Quiet feed</title></channel></rss>
"""


def reader_for(handler, rules=()):
    return FeedReader(timeout=2.0, rules=rules, transport=httpx.MockTransport(handler))


class TestParse:
    """Tests for parsing already fetched documents."""

    def test_rss_items_normalized(self):
        """Well-formed RSS yields cleaned items; incomplete ones are dropped."""
        result = FeedReader(rules=()).parse("https://news.example.com/rss", RSS_DOC)
        items = list(result.items)

        assert result.ok
        assert [item.link for item in items] == [
            "https://news.example.com/tom-jerry",
            "https://news.example.com/undated",
        ]

        first = items[0]
        assert first.title == "Tom & Jerry return"
        assert first.description == "The duo is back ."
        assert first.published_at == datetime(2024, 6, 1, 10, 0, tzinfo=timezone.utc)

    def test_undated_item_kept_without_date(self):
        result = FeedReader(rules=()).parse("https://news.example.com/rss", RSS_DOC)
        undated = [item for item in result.items if item.title == "Undated story"][0]

        assert undated.published_at is None
        assert undated.description == "No date here"

    def test_atom_entry(self):
        """Atom entries use href links, content and updated dates."""
        result = FeedReader(rules=()).parse("https://example.com/atom", ATOM_DOC)
        items = list(result.items)

        assert len(items) == 1
        assert items[0].link == "https://github.com/example/project/releases/tag/v2.0"
        assert items[0].description == "Big release"
        assert items[0].published_at == datetime(2024, 6, 1, 9, 30, tzinfo=timezone.utc)

    def test_summary_rules_applied(self):
        reader = FeedReader(rules=(AGGREGATOR_POINTS_COMMENTS,))
        items = list(reader.parse("https://agg.example.com/rss", AGGREGATOR_DOC).items)

        assert items[0].description == "120 points · 45 comments"

    def test_empty_feed_is_not_an_error(self):
        result = FeedReader(rules=()).parse("https://quiet.example.com/rss", EMPTY_DOC)

        assert result.ok
        assert list(result.items) == []

    def test_malformed_document_reads_empty(self):
        result = FeedReader(rules=()).parse("https://bad.example.com/rss", "this is not a feed at all")

        assert not result.ok
        assert result.error.startswith("parse error")
        assert list(result.items) == []

    def test_items_are_lazy(self):
        """Items are produced on demand and can be consumed once."""
        result = FeedReader(rules=()).parse("https://news.example.com/rss", RSS_DOC)

        assert next(result.items).title == "Tom & Jerry return"
        assert len(list(result.items)) == 1


class TestRead:
    """Tests for fetching over HTTP."""

    async def test_successful_fetch(self):
        reader = reader_for(lambda request: httpx.Response(200, content=RSS_DOC.encode("utf-8")))

        result = await reader.read("https://news.example.com/rss")

        assert result.ok
        assert result.status_code == 200
        assert len(list(result.items)) == 2

    async def test_user_agent_sent(self):
        seen = {}

        def handler(request):
            seen["ua"] = request.headers.get("user-agent")
            return httpx.Response(200, content=EMPTY_DOC.encode("utf-8"))

        reader = FeedReader(timeout=2.0, user_agent="TestAgent/1.0", rules=(), transport=httpx.MockTransport(handler))
        await reader.read("https://quiet.example.com/rss")

        assert seen["ua"] == "TestAgent/1.0"

    async def test_server_error_reads_empty(self):
        reader = reader_for(lambda request: httpx.Response(500, text="oops"))

        result = await reader.read("https://down.example.com/rss")

        assert result.error == "HTTP 500"
        assert result.status_code == 500
        assert list(result.items) == []

    async def test_timeout_reads_empty(self):
        def handler(request):
            raise httpx.ReadTimeout("too slow", request=request)

        result = await reader_for(handler).read("https://slow.example.com/rss")

        assert result.error == "timeout after 2s"
        assert list(result.items) == []

    async def test_connection_error_reads_empty(self):
        calls = []

        def handler(request):
            calls.append(request.url)
            raise httpx.ConnectError("refused", request=request)

        result = await reader_for(handler).read("https://gone.example.com/rss")

        assert result.error.startswith("fetch error: ConnectError")
        assert len(calls) == 2  # retried once

    async def test_malformed_body_reads_empty(self):
        reader = reader_for(lambda request: httpx.Response(200, text="<html><body>Not RSS</body></html>"))

        result = await reader.read("https://html.example.com/")

        assert not result.ok
        assert list(result.items) == []
