"""Feed health state machine.

A feed is ``active`` while it fetches, ``failing`` from its first failed
fetch until its next success, and ``paused`` once it has gone more than
24 hours without a success. Paused feeds are not polled again until they
are resumed by hand.
"""

from datetime import datetime, timedelta

PAUSE_AFTER = timedelta(hours=24)


def should_pause_feed(
    last_success_at: datetime | None,
    failing_since: datetime | None,
    now: datetime,
) -> bool:
    """Return True if the feed has been unhealthy for longer than PAUSE_AFTER.

    Feeds that succeeded at least once are measured from their last success;
    feeds that never succeeded are measured from the start of their current
    failure episode. A feed with neither timestamp is never paused.
    """
    if last_success_at is not None:
        return now - last_success_at > PAUSE_AFTER
    if failing_since is not None:
        return now - failing_since > PAUSE_AFTER
    return False
