"""SQLite database operations for feedpush."""

import sqlite3
import uuid
from datetime import datetime, timezone

from feedpush.models import (
    FEED_ACTIVE,
    FEED_FAILING,
    FEED_PAUSED,
    Entry,
    Feed,
    PushSubscription,
)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS feeds (
    id TEXT PRIMARY KEY,
    url TEXT UNIQUE NOT NULL,
    title TEXT,
    site_url TEXT,
    status TEXT NOT NULL DEFAULT 'active',
    last_fetch_at TEXT,
    last_success_at TEXT,
    last_error_at TEXT,
    last_error TEXT,
    fail_count INTEGER NOT NULL DEFAULT 0,
    failing_since TEXT,
    failed_notice_sent_at TEXT,
    paused_at TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS entries (
    id TEXT PRIMARY KEY,
    feed_id TEXT NOT NULL REFERENCES feeds(id) ON DELETE CASCADE,
    guid_or_url TEXT NOT NULL,
    title TEXT NOT NULL,
    url TEXT NOT NULL,
    published_at TEXT,
    fetched_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS subscriptions (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    feed_id TEXT NOT NULL REFERENCES feeds(id) ON DELETE CASCADE,
    created_at TEXT NOT NULL,
    UNIQUE(user_id, feed_id)
);

CREATE TABLE IF NOT EXISTS push_subscriptions (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    endpoint TEXT UNIQUE NOT NULL,
    p256dh TEXT NOT NULL,
    auth TEXT NOT NULL,
    created_at TEXT NOT NULL,
    last_used_at TEXT
);

CREATE TABLE IF NOT EXISTS fetch_logs (
    id TEXT PRIMARY KEY,
    feed_id TEXT NOT NULL,
    fetched_at TEXT NOT NULL,
    ok INTEGER NOT NULL,
    http_status INTEGER,
    error TEXT
);

CREATE TABLE IF NOT EXISTS notify_queue (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    body TEXT NOT NULL,
    visible_at REAL NOT NULL,
    attempts INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_feeds_status ON feeds(status);
CREATE INDEX IF NOT EXISTS idx_entries_feed_id ON entries(feed_id);
CREATE INDEX IF NOT EXISTS idx_subscriptions_feed_id ON subscriptions(feed_id);
CREATE INDEX IF NOT EXISTS idx_push_subscriptions_user_id ON push_subscriptions(user_id);
CREATE INDEX IF NOT EXISTS idx_fetch_logs_feed_id ON fetch_logs(feed_id);
CREATE INDEX IF NOT EXISTS idx_notify_queue_visible_at ON notify_queue(visible_at);
"""


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex}"


class Database:
    """SQLite store for feeds, entries, subscriptions and the notify queue."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._conn: sqlite3.Connection | None = None

    def connect(self) -> None:
        """Open database connection and initialize schema."""
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA foreign_keys=ON")
        self._conn.row_factory = sqlite3.Row
        self._conn.executescript(SCHEMA_SQL)
        self._conn.commit()

    def close(self) -> None:
        """Close database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("Database not connected. Call connect() first.")
        return self._conn

    # --- Feed operations ---

    def add_feed(self, feed: Feed) -> Feed:
        """Insert a new feed row."""
        self.conn.execute(
            """INSERT INTO feeds (id, url, title, site_url, status, last_fetch_at,
               last_success_at, last_error_at, last_error, fail_count, failing_since,
               failed_notice_sent_at, paused_at, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                feed.id,
                feed.url,
                feed.title,
                feed.site_url,
                feed.status,
                _dt_to_str(feed.last_fetch_at),
                _dt_to_str(feed.last_success_at),
                _dt_to_str(feed.last_error_at),
                feed.last_error,
                feed.fail_count,
                _dt_to_str(feed.failing_since),
                _dt_to_str(feed.failed_notice_sent_at),
                _dt_to_str(feed.paused_at),
                _dt_to_str(feed.created_at),
            ),
        )
        self.conn.commit()
        return feed

    def get_feed_by_id(self, feed_id: str) -> Feed | None:
        row = self.conn.execute(
            "SELECT * FROM feeds WHERE id = ?", (feed_id,)
        ).fetchone()
        return _row_to_feed(row) if row else None

    def get_feed_by_url(self, url: str) -> Feed | None:
        row = self.conn.execute(
            "SELECT * FROM feeds WHERE url = ?", (url,)
        ).fetchone()
        return _row_to_feed(row) if row else None

    def get_unpaused_feeds(self) -> list[Feed]:
        """Return every feed the scheduler may still poll."""
        rows = self.conn.execute(
            "SELECT * FROM feeds WHERE status != ? ORDER BY created_at, rowid",
            (FEED_PAUSED,),
        ).fetchall()
        return [_row_to_feed(r) for r in rows]

    def record_fetch_success(
        self,
        feed_id: str,
        now: datetime,
        title: str | None,
        site_url: str | None,
    ) -> None:
        """Mark a feed healthy and close any open failure episode.

        Title and site URL are only overwritten when the fetch supplied them.
        """
        self.conn.execute(
            """UPDATE feeds SET
                 title = COALESCE(?, title),
                 site_url = COALESCE(?, site_url),
                 status = ?,
                 last_fetch_at = ?,
                 last_success_at = ?,
                 last_error_at = NULL,
                 last_error = NULL,
                 fail_count = 0,
                 failing_since = NULL,
                 failed_notice_sent_at = NULL
               WHERE id = ?""",
            (title, site_url, FEED_ACTIVE, _dt_to_str(now), _dt_to_str(now), feed_id),
        )
        self.conn.commit()

    def record_fetch_failure(self, feed_id: str, now: datetime, error: str) -> None:
        """Count a failed fetch, opening a failure episode if none is open."""
        self.conn.execute(
            """UPDATE feeds SET
                 status = CASE WHEN status = ? THEN status ELSE ? END,
                 last_fetch_at = ?,
                 last_error_at = ?,
                 last_error = ?,
                 fail_count = fail_count + 1,
                 failing_since = COALESCE(failing_since, ?)
               WHERE id = ?""",
            (
                FEED_PAUSED,
                FEED_FAILING,
                _dt_to_str(now),
                _dt_to_str(now),
                error,
                _dt_to_str(now),
                feed_id,
            ),
        )
        self.conn.commit()

    def pause_feed(self, feed_id: str, now: datetime) -> None:
        """Pause a feed. paused_at keeps the first pause time."""
        self.conn.execute(
            "UPDATE feeds SET status = ?, paused_at = COALESCE(paused_at, ?) WHERE id = ?",
            (FEED_PAUSED, _dt_to_str(now), feed_id),
        )
        self.conn.commit()

    def mark_failed_notice_sent(self, feed_id: str, now: datetime) -> None:
        self.conn.execute(
            "UPDATE feeds SET failed_notice_sent_at = ? WHERE id = ?",
            (_dt_to_str(now), feed_id),
        )
        self.conn.commit()

    def add_fetch_log(
        self,
        feed_id: str,
        fetched_at: datetime,
        ok: bool,
        http_status: int | None = None,
        error: str | None = None,
    ) -> None:
        """Append a row to the fetch audit log."""
        self.conn.execute(
            """INSERT INTO fetch_logs (id, feed_id, fetched_at, ok, http_status, error)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (new_id("fl"), feed_id, _dt_to_str(fetched_at), int(ok), http_status, error),
        )
        self.conn.commit()

    def get_fetch_logs(self, feed_id: str) -> list[dict]:
        rows = self.conn.execute(
            "SELECT * FROM fetch_logs WHERE feed_id = ? ORDER BY fetched_at, rowid",
            (feed_id,),
        ).fetchall()
        return [
            {
                "feed_id": r["feed_id"],
                "fetched_at": r["fetched_at"],
                "ok": bool(r["ok"]),
                "http_status": r["http_status"],
                "error": r["error"],
            }
            for r in rows
        ]

    # --- Entry operations ---

    def insert_entries_if_absent(self, entries: list[Entry]) -> list[bool]:
        """Insert entries, ignoring ids that already exist.

        Runs in one transaction, so a failing row leaves none inserted.
        Returns one flag per entry: True if that row was actually inserted.
        """
        applied = []
        with self.conn:
            for entry in entries:
                cursor = self.conn.execute(
                    """INSERT OR IGNORE INTO entries (id, feed_id, guid_or_url, title, url,
                       published_at, fetched_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?)""",
                    (
                        entry.id,
                        entry.feed_id,
                        entry.guid_or_url,
                        entry.title,
                        entry.url,
                        _dt_to_str(entry.published_at),
                        _dt_to_str(entry.fetched_at),
                    ),
                )
                applied.append(cursor.rowcount > 0)
        return applied

    def get_entry_count_for_feed(self, feed_id: str) -> int:
        row = self.conn.execute(
            "SELECT COUNT(*) as cnt FROM entries WHERE feed_id = ?", (feed_id,)
        ).fetchone()
        return row["cnt"] if row else 0

    # --- Subscription operations ---

    def get_subscriber_ids(self, feed_id: str) -> list[str]:
        rows = self.conn.execute(
            "SELECT user_id FROM subscriptions WHERE feed_id = ? ORDER BY created_at, rowid",
            (feed_id,),
        ).fetchall()
        return [r["user_id"] for r in rows]

    def count_subscriptions(self, user_id: str) -> int:
        row = self.conn.execute(
            "SELECT COUNT(*) as cnt FROM subscriptions WHERE user_id = ?", (user_id,)
        ).fetchone()
        return row["cnt"] if row else 0

    def add_subscription(self, user_id: str, feed_id: str, now: datetime) -> bool:
        """Link a user to a feed. Returns False if already subscribed."""
        cursor = self.conn.execute(
            """INSERT OR IGNORE INTO subscriptions (id, user_id, feed_id, created_at)
               VALUES (?, ?, ?, ?)""",
            (new_id("sub"), user_id, feed_id, _dt_to_str(now)),
        )
        self.conn.commit()
        return cursor.rowcount > 0

    def delete_subscription(self, user_id: str, feed_id: str) -> bool:
        cursor = self.conn.execute(
            "DELETE FROM subscriptions WHERE user_id = ? AND feed_id = ?",
            (user_id, feed_id),
        )
        self.conn.commit()
        return cursor.rowcount > 0

    # --- Push subscription operations ---

    def get_push_subscriptions(self, user_id: str) -> list[PushSubscription]:
        rows = self.conn.execute(
            "SELECT * FROM push_subscriptions WHERE user_id = ? ORDER BY created_at, rowid",
            (user_id,),
        ).fetchall()
        return [_row_to_push_subscription(r) for r in rows]

    def get_push_subscription_by_endpoint(self, endpoint: str) -> PushSubscription | None:
        row = self.conn.execute(
            "SELECT * FROM push_subscriptions WHERE endpoint = ?", (endpoint,)
        ).fetchone()
        return _row_to_push_subscription(row) if row else None

    def add_push_subscription(self, sub: PushSubscription) -> PushSubscription:
        self.conn.execute(
            """INSERT INTO push_subscriptions (id, user_id, endpoint, p256dh, auth,
               created_at, last_used_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (
                sub.id,
                sub.user_id,
                sub.endpoint,
                sub.p256dh,
                sub.auth,
                _dt_to_str(sub.created_at),
                _dt_to_str(sub.last_used_at),
            ),
        )
        self.conn.commit()
        return sub

    def update_push_subscription(
        self, sub_id: str, user_id: str, p256dh: str, auth: str, now: datetime
    ) -> None:
        self.conn.execute(
            """UPDATE push_subscriptions SET user_id = ?, p256dh = ?, auth = ?,
               last_used_at = ? WHERE id = ?""",
            (user_id, p256dh, auth, _dt_to_str(now), sub_id),
        )
        self.conn.commit()

    def touch_push_subscription(self, sub_id: str, now: datetime) -> None:
        self.conn.execute(
            "UPDATE push_subscriptions SET last_used_at = ? WHERE id = ?",
            (_dt_to_str(now), sub_id),
        )
        self.conn.commit()

    def delete_push_subscription(self, sub_id: str) -> bool:
        cursor = self.conn.execute(
            "DELETE FROM push_subscriptions WHERE id = ?", (sub_id,)
        )
        self.conn.commit()
        return cursor.rowcount > 0

    # --- Notify queue operations ---

    def enqueue_messages(self, bodies: list[str], visible_at: float, now: datetime) -> None:
        """Append message bodies to the queue in a single transaction."""
        with self.conn:
            self.conn.executemany(
                "INSERT INTO notify_queue (body, visible_at, created_at) VALUES (?, ?, ?)",
                [(body, visible_at, _dt_to_str(now)) for body in bodies],
            )

    def lease_messages(self, limit: int, now: float, lease_until: float) -> list[dict]:
        """Claim up to ``limit`` visible messages until ``lease_until``."""
        with self.conn:
            rows = self.conn.execute(
                """SELECT id, body, attempts FROM notify_queue
                   WHERE visible_at <= ? ORDER BY visible_at, id LIMIT ?""",
                (now, limit),
            ).fetchall()
            self.conn.executemany(
                "UPDATE notify_queue SET visible_at = ?, attempts = attempts + 1 WHERE id = ?",
                [(lease_until, r["id"]) for r in rows],
            )
        return [
            {"id": r["id"], "body": r["body"], "attempts": r["attempts"] + 1}
            for r in rows
        ]

    def delete_message(self, message_id: int) -> None:
        self.conn.execute("DELETE FROM notify_queue WHERE id = ?", (message_id,))
        self.conn.commit()

    def release_message(self, message_id: int, visible_at: float) -> None:
        self.conn.execute(
            "UPDATE notify_queue SET visible_at = ? WHERE id = ?",
            (visible_at, message_id),
        )
        self.conn.commit()

    def count_queued_messages(self) -> int:
        row = self.conn.execute("SELECT COUNT(*) as cnt FROM notify_queue").fetchone()
        return row["cnt"] if row else 0


# --- Helper functions ---


def _dt_to_str(dt: datetime | None) -> str | None:
    """Convert datetime to a UTC ISO string for storage."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat()


def _str_to_dt(s: str | None) -> datetime | None:
    """Convert stored ISO string back to datetime."""
    if not s:
        return None
    return datetime.fromisoformat(s)


def _row_to_feed(row: sqlite3.Row) -> Feed:
    """Convert a database row to a Feed dataclass."""
    return Feed(
        id=row["id"],
        url=row["url"],
        title=row["title"],
        site_url=row["site_url"],
        status=row["status"],
        last_fetch_at=_str_to_dt(row["last_fetch_at"]),
        last_success_at=_str_to_dt(row["last_success_at"]),
        last_error_at=_str_to_dt(row["last_error_at"]),
        last_error=row["last_error"],
        fail_count=row["fail_count"],
        failing_since=_str_to_dt(row["failing_since"]),
        failed_notice_sent_at=_str_to_dt(row["failed_notice_sent_at"]),
        paused_at=_str_to_dt(row["paused_at"]),
        created_at=_str_to_dt(row["created_at"]),
    )


def _row_to_push_subscription(row: sqlite3.Row) -> PushSubscription:
    return PushSubscription(
        id=row["id"],
        user_id=row["user_id"],
        endpoint=row["endpoint"],
        p256dh=row["p256dh"],
        auth=row["auth"],
        created_at=_str_to_dt(row["created_at"]),
        last_used_at=_str_to_dt(row["last_used_at"]),
    )
