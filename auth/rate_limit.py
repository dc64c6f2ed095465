"""
auth/rate_limit.py -- Fixed-window admission control keyed by (route, caller).

Built directly on the `limits` library, the engine slowapi uses under the
hood. The orchestrator needs the admission result (remaining, reset time) as a
value before doing any other work, and flows are limited by route id rather
than by URL, so the strategy is called directly instead of via a decorator.

Window semantics (FixedWindowRateLimiter):
  The window opens on the first hit for a key and lasts one rate period. Every
  hit increments the counter; a hit that takes the counter past the limit is
  refused. When the period elapses the key expires and counting restarts.
  A caller can burst up to 2x the limit across a window boundary.

Storage increments are atomic per key (MemoryStorage holds a per-key lock;
redis:// uses INCR), so concurrent requests for the same (route, identity)
cannot both slip past the limit. No global lock is taken.

The limiter never retries or sleeps. Callers decide what to do with a refusal.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from limits import RateLimitItem, parse
from limits.storage import storage_from_string
from limits.strategies import FixedWindowRateLimiter

from auth.models import Admission

logger = logging.getLogger("ledgergate.ratelimit")

DEFAULT_LIMIT = "60/minute"


class RateLimiter:
    """Per-route fixed-window limiter.

    Usage:
        limiter = RateLimiter({"login/credential": "5/minute"})
        decision = limiter.admit("login/credential", "203.0.113.7")
        if not decision.allowed:
            ...reject before touching anything else...
    """

    def __init__(
        self,
        route_limits: dict[str, str] | None = None,
        *,
        default_limit: str = DEFAULT_LIMIT,
        storage_uri: str = "memory://",
    ) -> None:
        self._items: dict[str, RateLimitItem] = {
            route_id: parse(rate) for route_id, rate in (route_limits or {}).items()
        }
        self._default = parse(default_limit)
        self._storage = storage_from_string(storage_uri)
        self._strategy = FixedWindowRateLimiter(self._storage)

    def limit_for(self, route_id: str) -> RateLimitItem:
        return self._items.get(route_id, self._default)

    def admit(self, route_id: str, identity: str) -> Admission:
        """Count one request against (route_id, identity) and report the decision."""
        if not route_id or not identity:
            raise ValueError("route_id and identity must be non-empty")

        item = self.limit_for(route_id)
        allowed = self._strategy.hit(item, route_id, identity)
        stats = self._strategy.get_window_stats(item, route_id, identity)
        reset_at = datetime.fromtimestamp(stats.reset_time, tz=timezone.utc)
        if not allowed:
            logger.warning("Rate limit hit route=%s identity=%s limit=%s", route_id, identity, item)
        return Admission(
            allowed=allowed,
            remaining=0 if not allowed else stats.remaining,
            reset_at=reset_at,
            limit=item.amount,
        )

    def reset(self, route_id: str, identity: str) -> None:
        """Clear one bucket (admin tooling and tests)."""
        self._strategy.clear(self.limit_for(route_id), route_id, identity)
