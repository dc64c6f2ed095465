"""
core/clock.py -- Timezone-aware time source shared by the auth services.

Services take a `clock` callable instead of calling datetime.now() inline so
tests can freeze and advance time deterministically.
"""

from collections.abc import Callable
from datetime import datetime, timezone

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)
