"""
Clock injection point.

Timestamps, record expiry and message bookkeeping read the time through a
``Clock`` so tests can drive it explicitly.
"""
from datetime import datetime, timezone
from typing import Callable

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)
