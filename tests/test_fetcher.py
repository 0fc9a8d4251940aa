"""Tests for fetching and storing a single feed."""

import asyncio
from datetime import timedelta

import httpx

from feedpush.crypto import entry_id
from feedpush.fetcher import MAX_ENTRIES_PER_FETCH, fetch_and_store_feed
from feedpush.models import (
    FEED_ACTIVE,
    FEED_FAILING,
    Entry,
    FetchFailure,
    FetchSuccess,
    LatestEntry,
)


def _fetch(db, client, feed, now, **kwargs):
    async def go():
        async with client:
            return await fetch_and_store_feed(db, client, feed, now=now, **kwargs)

    return asyncio.run(go())


def test_counts_only_entries_the_store_inserted(db, add_feed, mock_client, now, sample_rss_xml):
    feed = add_feed()
    for guid in ("article-1", "article-2"):
        db.insert_entries_if_absent([
            Entry(id=entry_id(feed.id, guid), feed_id=feed.id, guid_or_url=guid,
                  title=guid, url="https://example.com/old", fetched_at=now)
        ])
    client = mock_client({feed.url: (200, sample_rss_xml)})

    outcome = _fetch(db, client, feed, now)

    assert isinstance(outcome, FetchSuccess)
    assert outcome.new_entry_count == 1
    assert outcome.feed_title == "Test Feed"
    assert outcome.latest_entry == LatestEntry(
        title="Third Article", url="https://example.com/article-3"
    )


def test_second_fetch_of_same_content_finds_nothing_new(db, add_feed, mock_client, now, sample_rss_xml):
    feed = add_feed()
    routes = {feed.url: (200, sample_rss_xml)}

    first = _fetch(db, mock_client(routes), feed, now)
    second = _fetch(db, mock_client(routes), feed, now + timedelta(minutes=15))

    assert first.new_entry_count == 3
    assert second.new_entry_count == 0
    assert second.latest_entry is None
    assert db.get_entry_count_for_feed(feed.id) == 3


def test_success_updates_feed_health_and_log(db, add_feed, mock_client, now, sample_rss_xml):
    feed = add_feed()
    db.record_fetch_failure(feed.id, now - timedelta(hours=2), "HTTP 500")

    _fetch(db, mock_client({feed.url: (200, sample_rss_xml)}), feed, now)

    stored = db.get_feed_by_id(feed.id)
    assert stored.status == FEED_ACTIVE
    assert stored.title == "Test Feed"
    assert stored.site_url == "https://example.com"
    assert stored.last_success_at == now
    assert stored.failing_since is None
    assert stored.fail_count == 0
    assert db.get_fetch_logs(feed.id)[-1]["http_status"] == 200


def test_takes_at_most_fifty_entries(db, add_feed, mock_client, now):
    items = "".join(
        f"<item><title>Item {n}</title><link>https://example.com/{n}</link></item>"
        for n in range(MAX_ENTRIES_PER_FETCH + 10)
    )
    xml = f'<?xml version="1.0"?><rss version="2.0"><channel><title>Big</title>{items}</channel></rss>'
    feed = add_feed()

    outcome = _fetch(db, mock_client({feed.url: (200, xml)}), feed, now)

    assert outcome.new_entry_count == MAX_ENTRIES_PER_FETCH
    assert db.get_entry_count_for_feed(feed.id) == MAX_ENTRIES_PER_FETCH


def test_http_error_is_a_failure(db, add_feed, mock_client, now):
    feed = add_feed(title="Kept")

    outcome = _fetch(db, mock_client({feed.url: (503, "busy")}), feed, now)

    assert outcome == FetchFailure(feed_id=feed.id, error="HTTP 503")
    stored = db.get_feed_by_id(feed.id)
    assert stored.status == FEED_FAILING
    assert stored.failing_since == now
    assert stored.fail_count == 1
    assert stored.title == "Kept"
    [log] = db.get_fetch_logs(feed.id)
    assert log["ok"] is False
    assert log["http_status"] == 503
    assert log["error"] == "HTTP 503"


def test_unparseable_body_counts_like_network_failure(db, add_feed, mock_client, now, sample_not_a_feed_xml):
    feed = add_feed()

    outcome = _fetch(db, mock_client({feed.url: (200, sample_not_a_feed_xml)}), feed, now)

    assert isinstance(outcome, FetchFailure)
    assert outcome.error == "Unsupported feed format"
    stored = db.get_feed_by_id(feed.id)
    assert stored.status == FEED_FAILING
    assert stored.fail_count == 1


def test_truncated_body_is_a_failure(db, add_feed, mock_client, now, sample_truncated_rss_xml):
    feed = add_feed()

    outcome = _fetch(db, mock_client({feed.url: (200, sample_truncated_rss_xml)}), feed, now)

    assert isinstance(outcome, FetchFailure)
    assert db.get_entry_count_for_feed(feed.id) == 0
    stored = db.get_feed_by_id(feed.id)
    assert stored.status == FEED_FAILING
    assert stored.last_success_at is None


def test_network_error_is_a_failure(db, add_feed, now):
    feed = add_feed()

    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    outcome = _fetch(db, client, feed, now)

    assert isinstance(outcome, FetchFailure)
    assert "connection refused" in outcome.error
    assert db.get_feed_by_id(feed.id).fail_count == 1


def test_slow_server_times_out(db, add_feed, now):
    feed = add_feed()

    async def handler(request):
        await asyncio.sleep(5)
        return httpx.Response(200, text="")

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    outcome = _fetch(db, client, feed, now, timeout=0.05)

    assert isinstance(outcome, FetchFailure)
    assert outcome.error.startswith("Timed out")
    assert db.get_feed_by_id(feed.id).status == FEED_FAILING


def test_failure_keeps_existing_failing_since(db, add_feed, mock_client, now):
    started = now - timedelta(hours=3)
    feed = add_feed()
    db.record_fetch_failure(feed.id, started, "HTTP 500")

    _fetch(db, mock_client({}), db.get_feed_by_id(feed.id), now)

    stored = db.get_feed_by_id(feed.id)
    assert stored.failing_since == started
    assert stored.fail_count == 2
