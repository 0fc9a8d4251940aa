"""Fetch one feed, store its new entries and update its health."""

import asyncio
import logging
from datetime import datetime

import httpx

from feedpush.crypto import entry_id
from feedpush.database import Database
from feedpush.feed_parser import parse_feed
from feedpush.models import (
    Entry,
    Feed,
    FetchFailure,
    FetchOutcome,
    FetchSuccess,
    LatestEntry,
    utcnow,
)
from feedpush.timebox import DEFAULT_TIMEOUT, fetch_with_timeout

logger = logging.getLogger(__name__)

USER_AGENT = "feedpush/0.1 (+https://example.invalid)"
ACCEPT = "application/rss+xml,application/atom+xml,application/xml,text/xml;q=0.9,*/*;q=0.8"
MAX_ENTRIES_PER_FETCH = 50


class FetchHTTPError(Exception):
    """Raised when a feed server answers with a non-success status."""

    def __init__(self, status_code: int):
        super().__init__(f"HTTP {status_code}")
        self.status_code = status_code


def make_client(**kwargs) -> httpx.AsyncClient:
    """HTTP client used for feed fetches."""
    return httpx.AsyncClient(
        follow_redirects=True,
        headers={"User-Agent": USER_AGENT, "Accept": ACCEPT},
        **kwargs,
    )


async def fetch_and_store_feed(
    db: Database,
    client: httpx.AsyncClient,
    feed: Feed,
    now: datetime | None = None,
    timeout: float = DEFAULT_TIMEOUT,
) -> FetchOutcome:
    """Fetch a feed once and record the result.

    Network errors, timeouts, non-2xx statuses and unparseable documents are
    all recorded as the same kind of failure. This function never raises; the
    caller always gets a FetchSuccess or FetchFailure.
    """
    now = now or utcnow()
    try:
        return await _fetch_and_store(db, client, feed, now, timeout)
    except Exception as e:
        error = str(e) or type(e).__name__
        http_status = e.status_code if isinstance(e, FetchHTTPError) else None
        logger.warning("Feed %s (%s) failed: %s", feed.id, feed.url, error)
        try:
            db.record_fetch_failure(feed.id, now, error)
            db.add_fetch_log(feed.id, now, ok=False, http_status=http_status, error=error)
        except Exception:
            logger.exception("Could not record failure for feed %s", feed.id)
        return FetchFailure(feed_id=feed.id, error=error)


async def _fetch_and_store(
    db: Database,
    client: httpx.AsyncClient,
    feed: Feed,
    now: datetime,
    timeout: float,
) -> FetchSuccess:
    response = await fetch_with_timeout(client, feed.url, timeout=timeout)
    if not response.is_success:
        raise FetchHTTPError(response.status_code)

    parsed = await asyncio.to_thread(parse_feed, response.content, str(response.url))

    entries = []
    for item in parsed.entries[:MAX_ENTRIES_PER_FETCH]:
        entries.append(
            Entry(
                id=entry_id(feed.id, item.guid_or_url),
                feed_id=feed.id,
                guid_or_url=item.guid_or_url,
                title=item.title,
                url=item.url,
                published_at=item.published_at,
                fetched_at=now,
            )
        )

    # Only rows the store actually inserted count as new.
    applied = db.insert_entries_if_absent(entries)
    new_entry_count = 0
    latest_entry = None
    for entry, inserted in zip(entries, applied):
        if inserted:
            new_entry_count += 1
            latest_entry = LatestEntry(title=entry.title, url=entry.url)

    db.record_fetch_success(feed.id, now, parsed.title, parsed.site_url)
    db.add_fetch_log(feed.id, now, ok=True, http_status=response.status_code)

    if new_entry_count:
        logger.info("Feed %s: %d new entries", feed.id, new_entry_count)

    return FetchSuccess(
        feed_id=feed.id,
        new_entry_count=new_entry_count,
        latest_entry=latest_entry,
        feed_title=parsed.title or feed.title,
    )
