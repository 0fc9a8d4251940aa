"""Environment configuration for feedpush."""

import os
from dataclasses import dataclass

DEFAULT_DB_PATH = "feedpush.db"
DEFAULT_POLL_INTERVAL = 900
DEFAULT_CONCURRENCY = 6
DEFAULT_FETCH_TIMEOUT = 15.0
DEFAULT_PUSH_TIMEOUT = 15.0
DEFAULT_VAPID_SUBJECT = "mailto:admin@example.invalid"


@dataclass(frozen=True)
class Settings:
    db_path: str = DEFAULT_DB_PATH
    poll_interval: int = DEFAULT_POLL_INTERVAL
    fetch_concurrency: int = DEFAULT_CONCURRENCY
    delivery_concurrency: int = DEFAULT_CONCURRENCY
    fetch_timeout: float = DEFAULT_FETCH_TIMEOUT
    push_timeout: float = DEFAULT_PUSH_TIMEOUT
    vapid_public_key: str | None = None
    vapid_private_key: str | None = None
    vapid_subject: str = DEFAULT_VAPID_SUBJECT

    @classmethod
    def from_env(cls, environ=None) -> "Settings":
        """Read settings from environment variables, falling back to defaults."""
        env = os.environ if environ is None else environ
        return cls(
            db_path=env.get("FEEDPUSH_DB_PATH", DEFAULT_DB_PATH),
            poll_interval=int(env.get("FEEDPUSH_POLL_INTERVAL", DEFAULT_POLL_INTERVAL)),
            fetch_concurrency=int(env.get("FEEDPUSH_FETCH_CONCURRENCY", DEFAULT_CONCURRENCY)),
            delivery_concurrency=int(
                env.get("FEEDPUSH_DELIVERY_CONCURRENCY", DEFAULT_CONCURRENCY)
            ),
            fetch_timeout=float(env.get("FEEDPUSH_FETCH_TIMEOUT", DEFAULT_FETCH_TIMEOUT)),
            push_timeout=float(env.get("FEEDPUSH_PUSH_TIMEOUT", DEFAULT_PUSH_TIMEOUT)),
            vapid_public_key=env.get("VAPID_PUBLIC_KEY") or None,
            vapid_private_key=env.get("VAPID_PRIVATE_KEY") or None,
            vapid_subject=env.get("VAPID_SUBJECT", DEFAULT_VAPID_SUBJECT),
        )
