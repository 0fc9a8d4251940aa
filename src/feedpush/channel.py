"""Durable at-least-once notification channel backed by SQLite.

Producers send batches of notification messages; consumers lease a batch,
process it and settle every message with an ack or a delayed retry. A leased
message that is never settled becomes visible again once its lease runs out,
so a crashed consumer loses nothing.
"""

import logging
import time
from collections.abc import Iterable, Iterator, Sequence
from dataclasses import dataclass
from typing import TypeVar

from feedpush.database import Database
from feedpush.models import (
    Ack,
    MessageDecodeError,
    MessageResult,
    NotifyMessage,
    RetryAfter,
    RetryAllAfter,
    decode_message,
    encode_message,
    utcnow,
)

logger = logging.getLogger(__name__)

MAX_BATCH_SIZE = 100
DEFAULT_VISIBILITY_TIMEOUT = 300

T = TypeVar("T")


def chunked(items: Sequence[T], size: int) -> Iterator[list[T]]:
    """Split items into consecutive lists of at most ``size``."""
    if size <= 0:
        raise ValueError("size must be positive")
    for start in range(0, len(items), size):
        yield list(items[start:start + size])


@dataclass
class QueuedMessage:
    """A leased message as seen by a consumer."""

    id: int
    body: NotifyMessage
    attempts: int


class NotificationChannel:
    """At-least-once queue of NotifyMessage values."""

    def __init__(
        self,
        db: Database,
        max_batch_size: int = MAX_BATCH_SIZE,
        clock=time.time,
    ):
        self.db = db
        self.max_batch_size = max_batch_size
        self._clock = clock

    def send(self, message: NotifyMessage) -> None:
        self.send_batch([message])

    def send_batch(self, messages: Sequence[NotifyMessage]) -> None:
        """Enqueue up to ``max_batch_size`` messages.

        Raises:
            ValueError: If the batch is larger than the channel allows.
        """
        if len(messages) > self.max_batch_size:
            raise ValueError(
                f"Batch of {len(messages)} exceeds limit of {self.max_batch_size}"
            )
        if not messages:
            return
        self.db.enqueue_messages(
            [encode_message(m) for m in messages], self._clock(), utcnow()
        )

    def send_all(self, messages: Sequence[NotifyMessage]) -> int:
        """Enqueue any number of messages in channel-sized batches.

        Returns the number of batches sent.
        """
        sent = 0
        for batch in chunked(messages, self.max_batch_size):
            self.send_batch(batch)
            sent += 1
        return sent

    def receive_batch(
        self,
        max_messages: int = 10,
        visibility_timeout: float = DEFAULT_VISIBILITY_TIMEOUT,
    ) -> list[QueuedMessage]:
        """Lease up to ``max_messages`` visible messages.

        Bodies that cannot be decoded are dropped and logged; redelivering
        them would never succeed.
        """
        now = self._clock()
        rows = self.db.lease_messages(max_messages, now, now + visibility_timeout)
        batch = []
        for row in rows:
            try:
                body = decode_message(row["body"])
            except MessageDecodeError as e:
                logger.error("Dropping undecodable message %s: %s", row["id"], e)
                self.db.delete_message(row["id"])
                continue
            batch.append(QueuedMessage(id=row["id"], body=body, attempts=row["attempts"]))
        return batch

    def settle(
        self,
        batch: Iterable[QueuedMessage],
        results: Iterable[MessageResult],
    ) -> None:
        """Apply one result per message, in order."""
        now = self._clock()
        for message, result in zip(batch, results, strict=True):
            if isinstance(result, Ack):
                self.db.delete_message(message.id)
            elif isinstance(result, RetryAfter):
                self.db.release_message(message.id, now + result.delay_seconds)
            else:
                raise TypeError(f"Unknown message result: {result!r}")

    def settle_all(self, batch: Iterable[QueuedMessage], result: RetryAllAfter) -> None:
        """Defer every message in the batch by the same delay."""
        visible_at = self._clock() + result.delay_seconds
        for message in batch:
            self.db.release_message(message.id, visible_at)
