"""Subscription and device registration for feedpush users."""

import logging
from urllib.parse import urlparse

from feedpush.channel import NotificationChannel
from feedpush.database import Database, new_id
from feedpush.models import EntryNew, Feed, PushSubscription, utcnow

logger = logging.getLogger(__name__)

MAX_SUBSCRIPTIONS_PER_USER = 15


class SubscriptionError(Exception):
    """Raised when a subscribe or registration request is invalid."""


class FeedLimitReached(SubscriptionError):
    """Raised when a user already holds the maximum number of feeds."""


def subscribe_to_feed(db: Database, user_id: str, feed_url: str) -> Feed:
    """Subscribe a user to a feed URL, creating the feed if it is new.

    Subscribing twice to the same feed is a no-op.

    Raises:
        SubscriptionError: If the URL is not http(s).
        FeedLimitReached: If the user is at MAX_SUBSCRIPTIONS_PER_USER.
    """
    feed_url = _validate_url(feed_url)

    feed = db.get_feed_by_url(feed_url)
    if feed and user_id in db.get_subscriber_ids(feed.id):
        return feed

    if db.count_subscriptions(user_id) >= MAX_SUBSCRIPTIONS_PER_USER:
        raise FeedLimitReached(
            f"Users may follow at most {MAX_SUBSCRIPTIONS_PER_USER} feeds"
        )

    if feed is None:
        feed = db.add_feed(Feed(id=new_id("feed"), url=feed_url))
        logger.info("Created feed %s for %s", feed.id, feed_url)

    db.add_subscription(user_id, feed.id, utcnow())
    return feed


def unsubscribe_from_feed(db: Database, user_id: str, feed_id: str) -> bool:
    """Remove a subscription. Returns False if there was none."""
    return db.delete_subscription(user_id, feed_id)


def upsert_push_subscription(
    db: Database, user_id: str, endpoint: str, p256dh: str, auth: str
) -> PushSubscription:
    """Register a push endpoint, or refresh an existing one.

    An endpoint belongs to one user at a time; registering it again moves it
    to the new user and replaces its keys.
    """
    if not endpoint or not p256dh or not auth:
        raise SubscriptionError("Missing subscription fields")

    now = utcnow()
    existing = db.get_push_subscription_by_endpoint(endpoint)
    if existing:
        db.update_push_subscription(existing.id, user_id, p256dh, auth, now)
        return db.get_push_subscription_by_endpoint(endpoint)

    return db.add_push_subscription(
        PushSubscription(
            id=new_id("ps"),
            user_id=user_id,
            endpoint=endpoint,
            p256dh=p256dh,
            auth=auth,
            created_at=now,
            last_used_at=now,
        )
    )


def send_test_notification(channel: NotificationChannel, user_id: str) -> EntryNew:
    """Enqueue a test notification for every device of a user."""
    message = EntryNew(
        user_id=user_id,
        feed_id="test",
        title="Test Notification",
        body=f"This is a test notification sent at {utcnow().isoformat()}",
        url="/",
    )
    channel.send(message)
    return message


def _validate_url(url: str) -> str:
    """Validate that the URL is an absolute http(s) URL."""
    url = (url or "").strip()
    try:
        result = urlparse(url)
    except ValueError:
        raise SubscriptionError("Invalid URL format")
    if not result.scheme or not result.netloc:
        raise SubscriptionError("Invalid URL format")
    if result.scheme not in ("http", "https"):
        raise SubscriptionError("Invalid URL format: only http and https are supported")
    return url
