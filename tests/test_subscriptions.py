"""Tests for the subscription and device registration boundary."""

import pytest

from feedpush.models import FEED_ACTIVE, EntryNew
from feedpush.subscriptions import (
    MAX_SUBSCRIPTIONS_PER_USER,
    FeedLimitReached,
    SubscriptionError,
    send_test_notification,
    subscribe_to_feed,
    unsubscribe_from_feed,
    upsert_push_subscription,
)


def test_subscribe_creates_active_feed(db):
    feed = subscribe_to_feed(db, "u1", "https://example.com/feed.xml")

    stored = db.get_feed_by_id(feed.id)
    assert stored.status == FEED_ACTIVE
    assert stored.last_success_at is None
    assert db.get_subscriber_ids(feed.id) == ["u1"]


def test_subscribers_share_one_feed_row(db):
    first = subscribe_to_feed(db, "u1", "https://example.com/feed.xml")
    second = subscribe_to_feed(db, "u2", "https://example.com/feed.xml")

    assert first.id == second.id
    assert db.get_subscriber_ids(first.id) == ["u1", "u2"]


def test_subscribe_twice_is_a_no_op(db):
    first = subscribe_to_feed(db, "u1", "https://example.com/feed.xml")
    second = subscribe_to_feed(db, "u1", "https://example.com/feed.xml")

    assert first.id == second.id
    assert db.count_subscriptions("u1") == 1


def test_subscription_limit(db):
    for n in range(MAX_SUBSCRIPTIONS_PER_USER):
        subscribe_to_feed(db, "u1", f"https://example.com/{n}.xml")

    with pytest.raises(FeedLimitReached):
        subscribe_to_feed(db, "u1", "https://example.com/one-too-many.xml")

    # already-followed feeds stay idempotent at the limit
    subscribe_to_feed(db, "u1", "https://example.com/0.xml")
    assert db.count_subscriptions("u1") == MAX_SUBSCRIPTIONS_PER_USER


@pytest.mark.parametrize("url", ["", "not a url", "ftp://example.com/feed.xml"])
def test_rejects_invalid_urls(db, url):
    with pytest.raises(SubscriptionError):
        subscribe_to_feed(db, "u1", url)


def test_unsubscribe(db):
    feed = subscribe_to_feed(db, "u1", "https://example.com/feed.xml")

    assert unsubscribe_from_feed(db, "u1", feed.id) is True
    assert unsubscribe_from_feed(db, "u1", feed.id) is False
    assert db.get_subscriber_ids(feed.id) == []


def test_push_endpoint_moves_to_new_user(db):
    first = upsert_push_subscription(db, "u1", "https://push.example.com/a", "k1", "a1")
    second = upsert_push_subscription(db, "u2", "https://push.example.com/a", "k2", "a2")

    assert second.id == first.id
    assert second.user_id == "u2"
    assert second.p256dh == "k2"
    assert db.get_push_subscriptions("u1") == []


def test_push_registration_requires_keys(db):
    with pytest.raises(SubscriptionError):
        upsert_push_subscription(db, "u1", "https://push.example.com/a", "", "a1")


def test_send_test_notification_queues_entry_new(channel):
    send_test_notification(channel, "u1")

    [queued] = channel.receive_batch()
    assert isinstance(queued.body, EntryNew)
    assert queued.body.user_id == "u1"
    assert queued.body.feed_id == "test"
