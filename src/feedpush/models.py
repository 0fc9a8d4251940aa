"""Data models for feedpush."""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone


FEED_ACTIVE = "active"
FEED_FAILING = "failing"
FEED_PAUSED = "paused"

ENTRY_NEW = "entry:new"
FEED_FAILED = "feed:failed24h"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Feed:
    """A polled RSS/Atom source and its health fields."""

    id: str
    url: str
    title: str | None = None
    site_url: str | None = None
    status: str = FEED_ACTIVE
    last_fetch_at: datetime | None = None
    last_success_at: datetime | None = None
    last_error_at: datetime | None = None
    last_error: str | None = None
    fail_count: int = 0
    failing_since: datetime | None = None
    failed_notice_sent_at: datetime | None = None
    paused_at: datetime | None = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Entry:
    """A single item from a feed, keyed by a hash of feed id and guid."""

    id: str
    feed_id: str
    guid_or_url: str
    title: str
    url: str
    published_at: datetime | None = None
    fetched_at: datetime = field(default_factory=utcnow)


@dataclass
class PushSubscription:
    """One registered browser/device push endpoint."""

    id: str
    user_id: str
    endpoint: str
    p256dh: str
    auth: str
    created_at: datetime = field(default_factory=utcnow)
    last_used_at: datetime | None = None


# --- Notification messages ---


class MessageDecodeError(ValueError):
    """Raised when a queued message body is not a valid notification."""


@dataclass(frozen=True)
class EntryNew:
    user_id: str
    feed_id: str
    title: str
    body: str
    url: str

    type = ENTRY_NEW


@dataclass(frozen=True)
class FeedFailed:
    user_id: str
    feed_id: str
    title: str
    body: str
    url: str

    type = FEED_FAILED


NotifyMessage = EntryNew | FeedFailed

_MESSAGE_TYPES: dict[str, type[EntryNew] | type[FeedFailed]] = {
    ENTRY_NEW: EntryNew,
    FEED_FAILED: FeedFailed,
}

_WIRE_FIELDS = {
    "userId": "user_id",
    "feedId": "feed_id",
    "title": "title",
    "body": "body",
    "url": "url",
}


def message_to_dict(message: NotifyMessage) -> dict:
    """Convert a message to its wire representation."""
    return {
        "type": message.type,
        "userId": message.user_id,
        "feedId": message.feed_id,
        "title": message.title,
        "body": message.body,
        "url": message.url,
    }


def message_from_dict(data: dict) -> NotifyMessage:
    """Build a message from its wire representation.

    Raises:
        MessageDecodeError: If the type is unknown or a field is missing
            or not a string.
    """
    if not isinstance(data, dict):
        raise MessageDecodeError("Message body must be a JSON object")
    kind = data.get("type")
    cls = _MESSAGE_TYPES.get(kind) if isinstance(kind, str) else None
    if cls is None:
        raise MessageDecodeError(f"Unknown message type: {kind!r}")
    fields = {}
    for wire_name, name in _WIRE_FIELDS.items():
        if wire_name not in data:
            raise MessageDecodeError(f"Message is missing field {wire_name!r}")
        value = data[wire_name]
        if not isinstance(value, str):
            raise MessageDecodeError(f"Message field {wire_name!r} must be a string")
        fields[name] = value
    return cls(**fields)


def encode_message(message: NotifyMessage) -> str:
    return json.dumps(message_to_dict(message))


def decode_message(raw: str) -> NotifyMessage:
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise MessageDecodeError(f"Message body is not JSON: {e}")
    return message_from_dict(data)


# --- Fetch outcomes ---


@dataclass(frozen=True)
class LatestEntry:
    title: str
    url: str


@dataclass(frozen=True)
class FetchSuccess:
    feed_id: str
    new_entry_count: int
    latest_entry: LatestEntry | None
    feed_title: str | None

    ok = True


@dataclass(frozen=True)
class FetchFailure:
    feed_id: str
    error: str

    ok = False


FetchOutcome = FetchSuccess | FetchFailure


# --- Queue control results ---


@dataclass(frozen=True)
class Ack:
    """Message handled; remove it from the channel."""


@dataclass(frozen=True)
class RetryAfter:
    """Redeliver this message after a delay."""

    delay_seconds: int


@dataclass(frozen=True)
class RetryAllAfter:
    """Redeliver the whole batch after a delay."""

    delay_seconds: int


MessageResult = Ack | RetryAfter
