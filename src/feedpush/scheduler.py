"""Timer-driven polling pass for feedpush."""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime

import httpx

from feedpush.channel import NotificationChannel
from feedpush.config import DEFAULT_CONCURRENCY, DEFAULT_POLL_INTERVAL
from feedpush.database import Database
from feedpush.fetcher import fetch_and_store_feed, make_client
from feedpush.health import should_pause_feed
from feedpush.models import Feed, FetchOutcome, FetchSuccess, utcnow
from feedpush.policy import (
    entry_new_messages,
    feed_failed_messages,
    should_enqueue_entry_new_notifications,
)
from feedpush.timebox import DEFAULT_TIMEOUT

logger = logging.getLogger(__name__)


@dataclass
class PassSummary:
    """Counts from one scheduler pass."""

    paused: int = 0
    fetched: int = 0
    failed: int = 0
    notified: int = 0


async def run_scheduled_pass(
    db: Database,
    channel: NotificationChannel,
    client: httpx.AsyncClient | None = None,
    now: datetime | None = None,
    concurrency: int = DEFAULT_CONCURRENCY,
    fetch_timeout: float = DEFAULT_TIMEOUT,
) -> PassSummary:
    """Pause stale feeds, poll the rest and enqueue notifications."""
    now = now or utcnow()
    summary = PassSummary()
    feeds = db.get_unpaused_feeds()

    fetchable = []
    for feed in feeds:
        if not should_pause_feed(feed.last_success_at, feed.failing_since, now):
            fetchable.append(feed)
            continue
        summary.paused += 1
        try:
            summary.notified += _pause_feed(db, channel, feed, now)
        except Exception:
            logger.exception("Pausing feed %s failed", feed.id)

    if client is None:
        async with make_client() as own_client:
            outcomes = await _fetch_all(db, own_client, fetchable, now, concurrency, fetch_timeout)
    else:
        outcomes = await _fetch_all(db, client, fetchable, now, concurrency, fetch_timeout)

    previous_success = {feed.id: feed.last_success_at for feed in fetchable}
    for outcome in outcomes:
        summary.fetched += 1
        if not isinstance(outcome, FetchSuccess):
            summary.failed += 1
            continue
        if outcome.new_entry_count <= 0:
            continue
        if not should_enqueue_entry_new_notifications(previous_success.get(outcome.feed_id)):
            logger.info(
                "Feed %s: first successful fetch, not notifying about %d entries",
                outcome.feed_id,
                outcome.new_entry_count,
            )
            continue
        try:
            summary.notified += _notify_new_entries(db, channel, outcome)
        except Exception:
            logger.exception("Enqueueing notifications for feed %s failed", outcome.feed_id)

    logger.info(
        "Pass complete: %d fetched, %d failed, %d paused, %d notifications",
        summary.fetched,
        summary.failed,
        summary.paused,
        summary.notified,
    )
    return summary


def _pause_feed(
    db: Database, channel: NotificationChannel, feed: Feed, now: datetime
) -> int:
    """Pause a feed and notify its subscribers once per failure episode."""
    db.pause_feed(feed.id, now)
    logger.warning("Feed %s (%s) paused after 24h without a successful fetch", feed.id, feed.url)

    if feed.failed_notice_sent_at is not None:
        return 0

    messages = feed_failed_messages(feed, db.get_subscriber_ids(feed.id))
    channel.send_all(messages)
    db.mark_failed_notice_sent(feed.id, now)
    return len(messages)


async def _fetch_all(
    db: Database,
    client: httpx.AsyncClient,
    feeds: list[Feed],
    now: datetime,
    concurrency: int,
    fetch_timeout: float,
) -> list[FetchOutcome]:
    sem = asyncio.Semaphore(concurrency)

    async def fetch_one(feed: Feed) -> FetchOutcome:
        async with sem:
            return await fetch_and_store_feed(db, client, feed, now=now, timeout=fetch_timeout)

    return await asyncio.gather(*(fetch_one(feed) for feed in feeds))


def _notify_new_entries(
    db: Database, channel: NotificationChannel, outcome: FetchSuccess
) -> int:
    messages = entry_new_messages(outcome, db.get_subscriber_ids(outcome.feed_id))
    channel.send_all(messages)
    return len(messages)


async def start_scheduler(
    db: Database,
    channel: NotificationChannel,
    interval: int = DEFAULT_POLL_INTERVAL,
    concurrency: int = DEFAULT_CONCURRENCY,
    fetch_timeout: float = DEFAULT_TIMEOUT,
) -> None:
    """Run a pass every ``interval`` seconds, indefinitely."""
    logger.info("Scheduler started (interval: %ds, concurrency: %d)", interval, concurrency)

    while True:
        try:
            await run_scheduled_pass(
                db, channel, concurrency=concurrency, fetch_timeout=fetch_timeout
            )
        except Exception as e:
            logger.error("Scheduler pass failed: %s", e)

        await asyncio.sleep(interval)
