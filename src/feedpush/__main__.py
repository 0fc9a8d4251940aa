"""Entry point for feedpush: python -m feedpush <command>"""

import argparse
import asyncio
import logging
import sys

from feedpush.channel import NotificationChannel
from feedpush.config import Settings
from feedpush.crypto import generate_vapid_keys, verify_vapid_keys
from feedpush.database import Database
from feedpush.delivery import deliver_once, start_worker
from feedpush.scheduler import run_scheduled_pass, start_scheduler
from feedpush.subscriptions import (
    SubscriptionError,
    send_test_notification,
    subscribe_to_feed,
    unsubscribe_from_feed,
    upsert_push_subscription,
)

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(name)s] %(message)s",
    datefmt="%H:%M:%S",
)
# Quiet noisy loggers
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("urllib3").setLevel(logging.WARNING)

logger = logging.getLogger("feedpush")


async def run(db: Database, channel: NotificationChannel, settings: Settings) -> None:
    """Run the scheduler and the delivery worker side by side."""
    tasks = [
        asyncio.create_task(
            start_scheduler(
                db,
                channel,
                interval=settings.poll_interval,
                concurrency=settings.fetch_concurrency,
                fetch_timeout=settings.fetch_timeout,
            )
        ),
        asyncio.create_task(start_worker(db, channel, settings)),
    ]
    try:
        await asyncio.gather(*tasks)
    finally:
        for task in tasks:
            task.cancel()


def verify_keys(settings: Settings) -> int:
    """Print the configured and derived public keys; non-zero unless they match."""
    if not settings.vapid_private_key:
        print("Error: VAPID_PRIVATE_KEY is not set", file=sys.stderr)
        return 1
    try:
        derived, matches = verify_vapid_keys(
            settings.vapid_public_key or "", settings.vapid_private_key
        )
    except Exception as e:
        print(f"Error: could not load VAPID_PRIVATE_KEY: {e}", file=sys.stderr)
        return 1

    print(f"configured: {settings.vapid_public_key or '(not set)'}")
    print(f"derived:    {derived}")
    print(f"match:      {'yes' if matches else 'no'}")
    return 0 if matches else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="feedpush", description=__doc__)
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("run", help="poll feeds and deliver notifications until stopped")
    commands.add_parser("poll-once", help="run a single scheduler pass")
    commands.add_parser("deliver-once", help="deliver a single batch of notifications")
    commands.add_parser("generate-vapid-keys", help="print a new VAPID key pair")
    commands.add_parser(
        "verify-vapid-keys", help="check VAPID_PUBLIC_KEY against VAPID_PRIVATE_KEY"
    )

    subscribe = commands.add_parser("subscribe", help="subscribe a user to a feed URL")
    subscribe.add_argument("user_id")
    subscribe.add_argument("feed_url")

    unsubscribe = commands.add_parser("unsubscribe", help="remove a user's subscription")
    unsubscribe.add_argument("user_id")
    unsubscribe.add_argument("feed_id")

    register = commands.add_parser("register-push", help="register a push endpoint")
    register.add_argument("user_id")
    register.add_argument("endpoint")
    register.add_argument("p256dh")
    register.add_argument("auth")

    test_notify = commands.add_parser("test-notify", help="queue a test notification")
    test_notify.add_argument("user_id")

    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    if args.command == "generate-vapid-keys":
        public_key, private_key = generate_vapid_keys()
        print(f"VAPID_PUBLIC_KEY={public_key}")
        print(f"VAPID_PRIVATE_KEY={private_key}")
        return 0

    settings = Settings.from_env()
    if args.command == "verify-vapid-keys":
        return verify_keys(settings)

    db = Database(settings.db_path)
    db.connect()
    channel = NotificationChannel(db)

    try:
        if args.command == "run":
            asyncio.run(run(db, channel, settings))
        elif args.command == "poll-once":
            summary = asyncio.run(
                run_scheduled_pass(
                    db,
                    channel,
                    concurrency=settings.fetch_concurrency,
                    fetch_timeout=settings.fetch_timeout,
                )
            )
            print(summary)
        elif args.command == "deliver-once":
            count = asyncio.run(deliver_once(db, channel, settings))
            print(f"Processed {count} messages")
        elif args.command == "subscribe":
            feed = subscribe_to_feed(db, args.user_id, args.feed_url)
            print(feed.id)
        elif args.command == "unsubscribe":
            if not unsubscribe_from_feed(db, args.user_id, args.feed_id):
                print("Not subscribed", file=sys.stderr)
                return 1
        elif args.command == "register-push":
            sub = upsert_push_subscription(
                db, args.user_id, args.endpoint, args.p256dh, args.auth
            )
            print(sub.id)
        elif args.command == "test-notify":
            send_test_notification(channel, args.user_id)
            print("Notification queued")
    except SubscriptionError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("\nGoodbye!")
    finally:
        db.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
