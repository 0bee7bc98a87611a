"""
Ingestion pass: fetch every registered feed, store new items and fan them
out to subscriber queues.

Workflow for one pass:
1. Ask the registry for the distinct fetch set
2. Read each feed (15s timeout; failures read as empty)
3. Keep items published in the last 24 hours, newest first, at most 10
4. Resolve or create each item in the global store
5. Queue it for every subscriber of the feed
6. Prune stale undecided queue entries

Feeds are fetched one at a time by default. That bounds outbound requests
per pass and keeps a single writer for the store; ``ingest_concurrency``
raises the fetch parallelism, but distribution stays in registry order.
Dedup correctness never depends on ordering: it is enforced by the unique
URL constraint in the store.
"""

import asyncio
import uuid
from contextlib import aclosing
from dataclasses import dataclass, field, asdict
from datetime import datetime, timedelta
from typing import Callable, Iterable, Optional

from sqlalchemy.exc import DBAPIError, IntegrityError

from .config import get_settings
from .db import Database, get_database, utc_now
from .fanout import FanoutQueue
from .logging_conf import get_logger, bind_context, unbind_context
from .sources.base import FeedReadResult, FetchTarget, ParsedItem
from .sources.registry import FeedRegistry
from .sources.rss import FeedReader
from .store import Candidate, ItemStore
from .sweeper import RetentionSweeper

logger = get_logger(__name__)


class IngestAbortedError(Exception):
    """The store failed mid-pass; the pass did not complete."""

    def __init__(self, run_id: str, message: str):
        super().__init__(f"Run {run_id} aborted: {message}")
        self.run_id = run_id


@dataclass
class FeedStats:
    """What happened to one feed during a pass."""
    feed_url: str
    subscribers: int
    fetched: int = 0
    candidates: int = 0
    new: int = 0
    existing: int = 0
    queued: int = 0
    error: Optional[str] = None


@dataclass
class PassReport:
    """Aggregate result of a pass or a single-subscriber refresh."""
    run_id: str
    kind: str = "pass"
    status: str = "RUNNING"
    new_items: int = 0
    existing_items: int = 0
    queued: int = 0
    pruned: int = 0
    feeds: list[FeedStats] = field(default_factory=list)

    @property
    def feeds_failed(self) -> int:
        return sum(1 for f in self.feeds if f.error)

    def add(self, stats: FeedStats) -> None:
        self.feeds.append(stats)
        self.new_items += stats.new
        self.existing_items += stats.existing
        self.queued += stats.queued

    def to_dict(self) -> dict:
        data = asdict(self)
        data["feeds_failed"] = self.feeds_failed
        return data


def select_candidates(
    items: Iterable[ParsedItem],
    now: datetime,
    recency: timedelta,
    limit: int,
) -> list[ParsedItem]:
    """
    Items published within ``recency`` of ``now``, newest first, capped.

    Undated items are left out: there is no way to know they are recent.
    """
    cutoff = now - recency
    recent = [
        item for item in items
        if item.published_at is not None and item.published_at >= cutoff
    ]
    recent.sort(key=lambda item: item.published_at, reverse=True)
    return recent[:limit]


class IngestionRunner:
    """
    Drives ingestion passes over the registry.
    """

    def __init__(
        self,
        db: Optional[Database] = None,
        reader: Optional[FeedReader] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        """
        Initialize all components.

        Args:
            db: Database (defaults to the shared instance)
            reader: Feed reader (defaults to one built from settings)
            clock: Returns the current UTC time; tests pin it
        """
        self.settings = get_settings()
        self.db = db or get_database()
        self.reader = reader or FeedReader()
        self.clock = clock

        self.registry = FeedRegistry(self.db)
        self.store = ItemStore(self.db)
        self.queue = FanoutQueue(self.db)
        self.sweeper = RetentionSweeper(self.db)

    async def run_pass(self) -> PassReport:
        """Fetch every registered feed once, then prune stale entries."""
        return await self._run("pass", self.registry.distinct_fetch_set, prune=True)

    async def refresh_subscriber(self, subscriber_id: int) -> PassReport:
        """
        Fetch only one subscriber's enabled feeds.

        Safe to run alongside a scheduled pass. Callers are expected to
        rate-limit it per subscriber.
        """
        return await self._run(
            "refresh",
            lambda: self.registry.subscriptions_for(subscriber_id),
            prune=False,
            subscriber_id=subscriber_id,
        )

    async def _run(
        self,
        kind: str,
        resolve_targets: Callable[[], list[FetchTarget]],
        prune: bool,
        **context,
    ) -> PassReport:
        run_id = str(uuid.uuid4())[:8]
        report = PassReport(run_id=run_id, kind=kind)
        bind_context(run_id=run_id)

        try:
            self.db.start_run(run_id, kind=kind)
            targets = resolve_targets()
            logger.info(f"{kind}_starting", feeds=len(targets), **context)

            async with aclosing(self._read_all(targets)) as results:
                async for target, result in results:
                    report.add(self._distribute(target, result))

            if prune:
                report.pruned = self.sweeper.prune_stale(
                    horizon=timedelta(days=self.settings.retention_days),
                    now=self.clock(),
                )

            report.status = "SUCCESS"
            self._complete(report)

            logger.info(
                f"{kind}_completed",
                feeds=len(report.feeds),
                feeds_failed=report.feeds_failed,
                new_items=report.new_items,
                existing_items=report.existing_items,
                queued=report.queued,
                pruned=report.pruned,
            )
            return report

        except DBAPIError as e:
            report.status = "FAILED"
            logger.error(f"{kind}_aborted", error=str(e))
            try:
                self._complete(report, error_message=str(e))
            except DBAPIError:
                logger.error("run_log_unavailable", run_id=run_id)
            raise IngestAbortedError(run_id, "store unavailable") from e

        finally:
            unbind_context("run_id")

    async def _read_all(self, targets: list[FetchTarget]):
        """Yield (target, result) in registry order."""
        concurrency = self.settings.ingest_concurrency

        if concurrency <= 1:
            for target in targets:
                yield target, await self.reader.read(target.feed_url)
            return

        semaphore = asyncio.Semaphore(concurrency)

        async def bounded(target: FetchTarget) -> FeedReadResult:
            async with semaphore:
                return await self.reader.read(target.feed_url)

        tasks = [asyncio.create_task(bounded(t)) for t in targets]
        try:
            for target, task in zip(targets, tasks):
                yield target, await task
        finally:
            for task in tasks:
                task.cancel()

    def _distribute(self, target: FetchTarget, result: FeedReadResult) -> FeedStats:
        """Store and queue one feed's candidates."""
        stats = FeedStats(feed_url=target.feed_url, subscribers=len(target.subscriber_ids))
        now = self.clock()

        try:
            items = list(result.items)
            stats.fetched = len(items)
            stats.error = result.error

            if not items:
                # Still stamp the attempt so stalled feeds are visible
                self.registry.record_fetch(target.feed_url, target.subscriber_ids, result.error, now)
                logger.info("feed_empty", url=target.feed_url, error=result.error)
                return stats

            candidates = select_candidates(
                items,
                now=now,
                recency=timedelta(hours=self.settings.recency_hours),
                limit=self.settings.max_items_per_feed,
            )
            stats.candidates = len(candidates)

            for parsed in candidates:
                resolved = self.store.resolve_or_create(Candidate(
                    title=parsed.title,
                    url=parsed.link,
                    summary=parsed.description or f"New update from {target.source_name}.",
                    source_name=target.source_name,
                    category=target.category,
                    origin_feed_url=target.feed_url,
                    published_at=parsed.published_at,
                ))
                if resolved.created:
                    stats.new += 1
                else:
                    stats.existing += 1

                for subscriber_id in target.subscriber_ids:
                    if self.queue.enqueue(subscriber_id, resolved.item_id):
                        stats.queued += 1

            self.registry.record_fetch(target.feed_url, target.subscriber_ids, None, now)

        except IntegrityError as e:
            # Rows this feed points at changed under the pass
            stats.error = f"{e.__class__.__name__}: {e.orig}"
            logger.error("feed_distribution_conflict", url=target.feed_url, error=stats.error)
            self.registry.record_fetch(target.feed_url, target.subscriber_ids, stats.error, now)
            return stats
        except DBAPIError:
            raise
        except Exception as e:
            # One broken feed never stops the pass
            stats.error = f"{e.__class__.__name__}: {e}"
            logger.error("feed_distribution_failed", url=target.feed_url, error=stats.error)
            self.registry.record_fetch(target.feed_url, target.subscriber_ids, stats.error, now)
            return stats

        logger.info(
            "feed_distributed",
            url=target.feed_url,
            fetched=stats.fetched,
            candidates=stats.candidates,
            new=stats.new,
            existing=stats.existing,
            queued=stats.queued,
        )
        return stats

    def _complete(self, report: PassReport, error_message: Optional[str] = None) -> None:
        self.db.complete_run(
            report.run_id,
            status=report.status,
            feeds_fetched=len(report.feeds),
            items_new=report.new_items,
            items_existing=report.existing_items,
            entries_queued=report.queued,
            entries_pruned=report.pruned,
            error_message=error_message,
        )
