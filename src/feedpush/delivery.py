"""Push delivery worker.

Consumes batches from the notification channel and sends each message to
every push endpoint its user has registered. Delivery is at least once: a
message is retried as a whole when any endpoint fails, so endpoints that
already received it may receive it again.
"""

import asyncio
import json
import logging
from collections.abc import Callable, Sequence
from typing import Protocol

from pywebpush import WebPushException, webpush

from feedpush.channel import NotificationChannel, QueuedMessage
from feedpush.config import DEFAULT_CONCURRENCY, Settings
from feedpush.crypto import load_vapid_key
from feedpush.database import Database
from feedpush.models import (
    Ack,
    EntryNew,
    FeedFailed,
    MessageResult,
    NotifyMessage,
    PushSubscription,
    RetryAfter,
    RetryAllAfter,
    utcnow,
)

logger = logging.getLogger(__name__)

MISSING_KEY_RETRY_DELAY = 60
MESSAGE_RETRY_DELAY = 30
GONE_STATUSES = (404, 410)


class PushDeliveryError(Exception):
    """Raised when the push service rejects a message for a live endpoint."""

    def __init__(self, status_code: int):
        super().__init__(f"push_failed_{status_code}")
        self.status_code = status_code


class PushSender(Protocol):
    async def send(self, subscription: PushSubscription, payload: str) -> int:
        ...


class WebPushSender:
    """Signs, encrypts and posts Web Push messages with pywebpush."""

    def __init__(self, vapid, subject: str, timeout: float):
        self.vapid = vapid
        self.subject = subject
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings: Settings) -> "WebPushSender":
        return cls(
            load_vapid_key(settings.vapid_private_key),
            settings.vapid_subject,
            settings.push_timeout,
        )

    async def send(self, subscription: PushSubscription, payload: str) -> int:
        """Deliver a payload and return the push service's HTTP status."""
        try:
            async with asyncio.timeout(self.timeout):
                return await asyncio.to_thread(self._send, subscription, payload)
        except TimeoutError:
            raise PushDeliveryError(408)

    def _send(self, subscription: PushSubscription, payload: str) -> int:
        try:
            response = webpush(
                subscription_info={
                    "endpoint": subscription.endpoint,
                    "keys": {"p256dh": subscription.p256dh, "auth": subscription.auth},
                },
                data=payload,
                vapid_private_key=self.vapid,
                # webpush() fills in aud/exp, so each call needs its own dict
                vapid_claims={"sub": self.subject},
                content_encoding="aes128gcm",
                timeout=self.timeout,
            )
        except WebPushException as e:
            if e.response is not None:
                return e.response.status_code
            raise
        return response.status_code


def build_payload(message: NotifyMessage) -> str:
    """JSON payload shown by the service worker."""
    if not isinstance(message, (EntryNew, FeedFailed)):
        raise TypeError(f"Unknown notification: {message!r}")
    return json.dumps({
        "title": message.title,
        "body": message.body,
        "url": message.url,
        "kind": message.type,
        "feedId": message.feed_id,
    })


async def deliver_batch(
    batch: Sequence[QueuedMessage],
    db: Database,
    settings: Settings,
    make_sender: Callable[[Settings], PushSender] = WebPushSender.from_settings,
    concurrency: int = DEFAULT_CONCURRENCY,
) -> RetryAllAfter | list[MessageResult]:
    """Deliver a batch and decide the fate of each message.

    Returns RetryAllAfter without touching the store or the network when the
    signing key is not configured; otherwise one result per message, in
    batch order.
    """
    if not settings.vapid_private_key:
        logger.error("VAPID_PRIVATE_KEY is not set; deferring %d messages", len(batch))
        return RetryAllAfter(MISSING_KEY_RETRY_DELAY)

    try:
        sender = make_sender(settings)
    except Exception as e:
        logger.error("Could not load VAPID key; deferring %d messages: %s", len(batch), e)
        return RetryAllAfter(MISSING_KEY_RETRY_DELAY)

    sem = asyncio.Semaphore(concurrency)

    async def deliver_one(message: QueuedMessage) -> MessageResult:
        async with sem:
            return await deliver_message(db, sender, message.body)

    return list(await asyncio.gather(*(deliver_one(m) for m in batch)))


async def deliver_message(
    db: Database, sender: PushSender, message: NotifyMessage
) -> MessageResult:
    """Send one message to all of its user's endpoints."""
    try:
        subscriptions = db.get_push_subscriptions(message.user_id)
        if not subscriptions:
            return Ack()

        payload = build_payload(message)
        for sub in subscriptions:
            status = await sender.send(sub, payload)
            if status in GONE_STATUSES:
                logger.info("Removing expired push endpoint %s for user %s", sub.id, sub.user_id)
                db.delete_push_subscription(sub.id)
            elif not 200 <= status < 300:
                raise PushDeliveryError(status)
            else:
                db.touch_push_subscription(sub.id, utcnow())
        return Ack()
    except Exception as e:
        logger.warning(
            "Delivery of %s to user %s failed, retrying in %ds: %s",
            message.type,
            message.user_id,
            MESSAGE_RETRY_DELAY,
            e,
        )
        return RetryAfter(MESSAGE_RETRY_DELAY)


async def deliver_once(
    db: Database,
    channel: NotificationChannel,
    settings: Settings,
    max_messages: int = 10,
    make_sender: Callable[[Settings], PushSender] = WebPushSender.from_settings,
) -> int:
    """Receive, deliver and settle one batch. Returns the batch size."""
    batch = channel.receive_batch(max_messages=max_messages)
    if not batch:
        return 0

    result = await deliver_batch(
        batch, db, settings, make_sender=make_sender, concurrency=settings.delivery_concurrency
    )
    if isinstance(result, RetryAllAfter):
        channel.settle_all(batch, result)
    else:
        channel.settle(batch, result)
    return len(batch)


async def start_worker(
    db: Database,
    channel: NotificationChannel,
    settings: Settings,
    idle_delay: float = 5.0,
) -> None:
    """Deliver batches until cancelled, sleeping while the channel is empty."""
    logger.info("Delivery worker started (concurrency: %d)", settings.delivery_concurrency)

    while True:
        try:
            delivered = await deliver_once(db, channel, settings)
        except Exception as e:
            logger.error("Delivery batch failed: %s", e)
            delivered = 0

        if not delivered:
            await asyncio.sleep(idle_delay)
