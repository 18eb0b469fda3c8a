"""UTC time helpers shared by the broker, cloud and logging layers.

The rest of the codebase works with **aware** UTC datetimes on the wire and
epoch milliseconds for latency bookkeeping.  ``datetime.utcnow()`` is
deprecated on 3.12+, so everything goes through these wrappers.
"""

import time
from datetime import datetime, timezone


def utcnow() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def utcnow_iso() -> str:
    """ISO-8601 timestamp with millisecond precision and a ``Z`` suffix."""
    return utcnow().isoformat(timespec="milliseconds").replace("+00:00", "Z")


def epoch_ms() -> int:
    """Milliseconds since the epoch, as used in signed payloads."""
    return int(time.time() * 1000)
