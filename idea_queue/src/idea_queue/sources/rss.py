"""
RSS/Atom feed reader.

Fetches a feed document and turns it into a lazy sequence of normalized
items. Reading never raises: transport errors, timeouts, non-2xx responses
and unparsable documents all come back as an empty result with the cause
recorded in ``FeedReadResult.error``.
"""

import calendar
from datetime import datetime, timezone
from typing import Iterator, Optional, Union

import feedparser
import httpx
from dateutil import parser as date_parser
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from .base import FeedReadResult, ParsedItem
from ..config import get_settings
from ..logging_conf import get_logger
from ..normalize import (
    NormalizationRule,
    clean_description,
    clean_link,
    clean_title,
    resolve_rules,
)

logger = get_logger(__name__)


# =============================================================================
# Field extraction. Each field is looked up independently and may be missing.
# =============================================================================

def extract_title(entry: dict) -> str:
    return clean_title(entry.get("title"))


def extract_link(entry: dict) -> str:
    link = entry.get("link")
    if not link:
        # Atom entries whose only link has a non-alternate rel
        for candidate in entry.get("links", []):
            if candidate.get("href"):
                link = candidate["href"]
                break
    return clean_link(link)


def extract_description(
    entry: dict,
    rules: tuple[NormalizationRule, ...] = (),
) -> str:
    """Description, summary, then content; the first non-empty one wins."""
    raw = entry.get("description") or entry.get("summary")
    if not raw:
        for content in entry.get("content", []):
            if content.get("value"):
                raw = content["value"]
                break
    return clean_description(raw, rules)


def extract_published(entry: dict) -> Optional[datetime]:
    """Published, updated, then created date. ``None`` when none parse."""
    for key in ("published_parsed", "updated_parsed", "created_parsed"):
        parsed = entry.get(key)
        if parsed:
            try:
                # feedparser normalizes to a UTC struct_time
                return datetime.fromtimestamp(calendar.timegm(parsed), tz=timezone.utc)
            except (ValueError, OverflowError):
                continue

    for key in ("published", "updated", "created"):
        date_str = entry.get(key)
        if date_str:
            try:
                dt = date_parser.parse(date_str)
            except (ValueError, OverflowError):
                continue
            if dt.tzinfo is None:
                dt = dt.replace(tzinfo=timezone.utc)
            return dt.astimezone(timezone.utc)

    return None


class FeedReader:
    """
    Reader for RSS 2.0 and Atom feeds.

    Supports:
    - ``<item>`` and ``<entry>`` blocks, CDATA and escaped HTML
    - Per-reader summary normalization rules
    - A hard per-fetch timeout; a timed out fetch reads as empty
    """

    def __init__(
        self,
        timeout: Optional[float] = None,
        user_agent: Optional[str] = None,
        rules: Optional[tuple[NormalizationRule, ...]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize the reader.

        Args:
            timeout: Seconds before a fetch is abandoned (defaults to settings)
            user_agent: User-Agent header sent to feed hosts
            rules: Summary rules; defaults to the ones named in settings
            transport: Optional httpx transport (tests use MockTransport)
        """
        settings = get_settings()
        self.timeout = timeout if timeout is not None else settings.fetch_timeout_seconds
        self.user_agent = user_agent or settings.user_agent
        self.rules = rules if rules is not None else resolve_rules(settings.summary_rules_list)
        self._transport = transport

    @retry(
        retry=retry_if_exception_type(httpx.ConnectError),
        stop=stop_after_attempt(2),
        wait=wait_exponential(multiplier=0.5, max=2),
        reraise=True,
    )
    async def _get(self, url: str) -> httpx.Response:
        async with httpx.AsyncClient(
            timeout=self.timeout,
            follow_redirects=True,
            headers={"User-Agent": self.user_agent},
            transport=self._transport,
        ) as client:
            return await client.get(url)

    async def read(self, feed_url: str) -> FeedReadResult:
        """Fetch and parse one feed."""
        logger.debug("fetching_feed", url=feed_url)

        try:
            response = await self._get(feed_url)
        except httpx.TimeoutException:
            return self._failed(feed_url, f"timeout after {self.timeout:g}s")
        except httpx.HTTPError as e:
            return self._failed(feed_url, f"fetch error: {e.__class__.__name__}: {e}")

        if not response.is_success:
            return self._failed(feed_url, f"HTTP {response.status_code}", response.status_code)

        result = self.parse(feed_url, response.content)
        result.status_code = response.status_code
        return result

    def parse(self, feed_url: str, document: Union[str, bytes]) -> FeedReadResult:
        """Parse an already fetched document."""
        if isinstance(document, str):
            # feedparser treats short strings as paths or URLs
            document = document.encode("utf-8")

        feed = feedparser.parse(document)

        if not feed.entries and (feed.bozo or not feed.get("version")):
            cause = feed.get("bozo_exception") or "not a feed document"
            return self._failed(feed_url, f"parse error: {cause}")

        if feed.bozo:
            logger.warning(
                "feed_parse_warning",
                url=feed_url,
                error=str(feed.get("bozo_exception")),
            )

        logger.debug("feed_parsed", url=feed_url, total_entries=len(feed.entries))
        return FeedReadResult(feed_url=feed_url, items=self._iter_items(feed.entries))

    def _iter_items(self, entries: list) -> Iterator[ParsedItem]:
        for entry in entries:
            title = extract_title(entry)
            link = extract_link(entry)
            if not title or not link:
                continue
            yield ParsedItem(
                title=title,
                link=link,
                description=extract_description(entry, self.rules),
                published_at=extract_published(entry),
            )

    def _failed(
        self,
        feed_url: str,
        error: str,
        status_code: Optional[int] = None,
    ) -> FeedReadResult:
        logger.warning("feed_read_failed", url=feed_url, error=error)
        return FeedReadResult(
            feed_url=feed_url,
            items=iter(()),
            error=error,
            status_code=status_code,
        )
