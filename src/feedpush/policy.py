"""Which notifications to send and what they say."""

from datetime import datetime

from feedpush.models import EntryNew, Feed, FeedFailed, FetchSuccess


def should_enqueue_entry_new_notifications(previous_last_success_at: datetime | None) -> bool:
    """Return False on a feed's first ever successful fetch.

    The first fetch stores the whole backlog of a newly subscribed feed;
    notifying about it would flood every subscriber.
    """
    return previous_last_success_at is not None


def entry_new_messages(outcome: FetchSuccess, user_ids: list[str]) -> list[EntryNew]:
    """One message per subscriber describing the latest new entry."""
    latest = outcome.latest_entry
    if outcome.new_entry_count <= 0 or latest is None:
        return []

    title = f"New: {outcome.feed_title}" if outcome.feed_title else "New entry"
    if outcome.new_entry_count == 1:
        body = latest.title
    else:
        body = f"{latest.title} (+{outcome.new_entry_count - 1} more)"

    return [
        EntryNew(user_id=user_id, feed_id=outcome.feed_id, title=title, body=body, url=latest.url)
        for user_id in user_ids
    ]


def feed_failed_messages(feed: Feed, user_ids: list[str]) -> list[FeedFailed]:
    body = f"{feed.title or feed.url} has not fetched successfully in over 24 hours."
    return [
        FeedFailed(user_id=user_id, feed_id=feed.id, title="Feed failing", body=body, url="/")
        for user_id in user_ids
    ]
