"""Time helpers. Timestamps are stored as naive UTC."""

import time
from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def epoch_millis() -> int:
    return int(time.time() * 1000)
