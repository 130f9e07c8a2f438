"""
auth/ratelimit.py -- Role-tiered request budgets per (subject, permission class).

Built on the `limits` library (the engine slowapi itself runs on), using the
moving-window strategy. Counter storage is chosen by URI:

  memory://            per-process counters (single worker, tests)
  redis://host:6379/0  shared counters -- every worker increments the same
                       key atomically, so N workers cannot each spend a
                       full budget

Ceilings (requests per minute) come from Settings:
  GENERAL and per-permission classes -- by role tier
      super_admin 200, admin 150, moderator 100, support 80
  BULK_EXPORT -- one low ceiling (5) regardless of role

A denial is not an audit record. It is logged at WARNING on
"admingate.ratelimit" and counted per subject (bounded), and denial_counts() exposes
the tallies so repeated denials can feed anomaly detection.

Layer rule: no imports from api/ or audit/.
"""

from __future__ import annotations

import logging
import math
import threading
import time
from collections import Counter
from dataclasses import dataclass
from typing import Mapping, Optional

from limits import RateLimitItem, RateLimitItemPerMinute
from limits.storage import storage_from_string
from limits.strategies import MovingWindowRateLimiter

from auth.models import Role
from auth.permissions import PermissionClass

logger = logging.getLogger("admingate.ratelimit")

DEFAULT_CEILINGS: Mapping[Role, int] = {
    Role.SUPER_ADMIN: 200,
    Role.ADMIN: 150,
    Role.MODERATOR: 100,
    Role.SUPPORT: 80,
}
DEFAULT_BULK_CEILING = 5
# Anonymous subjects are keyed by address, so the tally needs a bound.
DEFAULT_MAX_TRACKED_SUBJECTS = 10_000

_NAMESPACE = "admingate"


@dataclass(frozen=True)
class RateLimitDecision:
    """Outcome of one check(). retry_after is whole seconds, > 0 on a denial."""

    allowed: bool
    limit: int
    remaining: int
    retry_after: int = 0


class AdaptiveRateLimiter:
    """Moving-window limiter whose ceiling depends on role and permission class.

    Usage:
        limiter = AdaptiveRateLimiter("memory://")
        decision = limiter.check("user:7", PermissionClass.GENERAL, Role.ADMIN)
        if not decision.allowed:
            raise RateLimited(retry_after=decision.retry_after)
    """

    def __init__(
        self,
        storage_uri: str = "memory://",
        *,
        ceilings: Optional[Mapping[Role, int]] = None,
        bulk_ceiling: int = DEFAULT_BULK_CEILING,
        max_tracked_subjects: int = DEFAULT_MAX_TRACKED_SUBJECTS,
    ) -> None:
        self.storage = storage_from_string(storage_uri)
        self.strategy = MovingWindowRateLimiter(self.storage)
        self.ceilings = dict(DEFAULT_CEILINGS if ceilings is None else ceilings)
        missing = set(Role) - set(self.ceilings)
        if missing:
            raise ValueError(f"No rate-limit ceiling for roles: {sorted(r.value for r in missing)}")
        self.bulk_ceiling = bulk_ceiling
        self.max_tracked_subjects = max_tracked_subjects
        self._denials: Counter[str] = Counter()
        self._denials_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Check
    # ------------------------------------------------------------------

    def ceiling_for(self, permission_class: PermissionClass, role: Role) -> int:
        if permission_class is PermissionClass.BULK_EXPORT:
            return self.bulk_ceiling
        return self.ceilings[role]

    def check(self, subject_key: str, permission_class: PermissionClass, role: Role) -> RateLimitDecision:
        """Count one request against subject_key's budget for permission_class.

        The increment and the ceiling test are one atomic storage operation
        (limits' hit()), so concurrent workers never both take the last slot.
        """
        item = self._item(permission_class, role)
        allowed = self.strategy.hit(item, _NAMESPACE, subject_key, permission_class.value)
        stats = self.strategy.get_window_stats(item, _NAMESPACE, subject_key, permission_class.value)
        if allowed:
            return RateLimitDecision(allowed=True, limit=item.amount, remaining=stats.remaining)

        retry_after = max(1, math.ceil(stats.reset_time - time.time()))
        with self._denials_lock:
            self._tally(subject_key)
            total = self._denials[subject_key]
        logger.warning(
            "Rate limit denied: subject=%s class=%s limit=%d/min retry_after=%ds denials=%d",
            subject_key,
            permission_class.value,
            item.amount,
            retry_after,
            total,
        )
        return RateLimitDecision(allowed=False, limit=item.amount, remaining=0, retry_after=retry_after)

    # ------------------------------------------------------------------
    # Metrics
    # ------------------------------------------------------------------

    def denial_counts(self) -> dict[str, int]:
        """Denials per tracked subject key, busiest first."""
        with self._denials_lock:
            return dict(self._denials.most_common())

    def reset(self) -> None:
        """Drop every counter and tally. Tests and the operator CLI only."""
        self.storage.reset()
        with self._denials_lock:
            self._denials.clear()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _tally(self, subject_key: str) -> None:
        """Count a denial. Caller holds _denials_lock.

        When a new subject arrives at the bound, the subject with the fewest
        denials is dropped to make room.
        """
        if subject_key not in self._denials and len(self._denials) >= self.max_tracked_subjects:
            quietest = min(self._denials, key=self._denials.__getitem__)
            del self._denials[quietest]
        self._denials[subject_key] += 1

    def _item(self, permission_class: PermissionClass, role: Role) -> RateLimitItem:
        return RateLimitItemPerMinute(self.ceiling_for(permission_class, role))


def make_rate_limiter(settings) -> AdaptiveRateLimiter:
    """Build the limiter from Settings (see core/config.py)."""
    return AdaptiveRateLimiter(
        settings.rate_limit_storage_uri,
        ceilings={
            Role.SUPER_ADMIN: settings.rate_limit_super_admin,
            Role.ADMIN: settings.rate_limit_admin,
            Role.MODERATOR: settings.rate_limit_moderator,
            Role.SUPPORT: settings.rate_limit_support,
        },
        bulk_ceiling=settings.rate_limit_bulk_export,
    )
