"""
Quota module for Dealer Matching.

Enforces the per-plan daily car limit and the demo-request rate limit on
top of one windowed counter store.

Counters are keyed by (subject, window_start). A window that has closed is
simply never queried again, so there is no reset job.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from .config import get_app_config
from .db import get_db
from .models import get_daily_limit, utcnow

logger = logging.getLogger(__name__)

DAY = timedelta(days=1)


@dataclass
class QuotaDecision:
    """Outcome of one consume attempt."""
    allowed: bool
    remaining: int
    reset_at: datetime
    used: int = 0
    limit: int = 0

    @property
    def message(self) -> str:
        if self.allowed:
            return f"{self.remaining} of {self.limit} views left today"
        return (
            f"You've reached your plan limit of {self.limit} cars today. "
            f"Your limit resets at {self.reset_at.strftime('%H:%M')} UTC."
        )

    def to_dict(self) -> dict:
        return {
            "allowed": self.allowed,
            "remaining": self.remaining,
            "reset_at": self.reset_at.isoformat(),
            "used": self.used,
            "limit": self.limit,
            "message": self.message,
        }


@dataclass
class UsageStats:
    """Read-only usage readout for the dashboard."""
    viewed_today: int
    limit: int
    remaining: int
    can_view: bool
    percentage: float  # 0-100
    reset_at: datetime

    def to_dict(self) -> dict:
        return {
            "viewed_today": self.viewed_today,
            "limit": self.limit,
            "remaining": self.remaining,
            "can_view": self.can_view,
            "percentage": self.percentage,
            "reset_at": self.reset_at.isoformat(),
        }


def day_window(now: datetime) -> tuple[datetime, datetime]:
    """[midnight, midnight + 24h) in UTC containing `now`."""
    now = now.astimezone(timezone.utc)
    start = now.replace(hour=0, minute=0, second=0, microsecond=0)
    return start, start + DAY


def format_time_until(reset_at: datetime, now: datetime) -> str:
    """Human-readable countdown, e.g. '5h 12m' or '42m'."""
    seconds = max(0, int((reset_at - now).total_seconds()))
    hours, remainder = divmod(seconds, 3600)
    minutes = remainder // 60
    if hours > 0:
        return f"{hours}h {minutes}m"
    return f"{minutes}m"


# =============================================================================
# QUOTA GUARD
# =============================================================================

class QuotaGuard:
    """
    Daily view limit per dealer.

    The store performs "increment if below limit" as one atomic step, so two
    concurrent views can never both take the last slot. If the store is
    unreachable the guard fails open: letting a view through is acceptable,
    blocking a dealer who still has quota is not.

    Usage:
        guard = QuotaGuard()
        decision = guard.check_and_consume(dealer_id, "trial")
    """

    def __init__(self, db=None, clock: Optional[Callable[[], datetime]] = None):
        self.db = db or get_db()
        self.clock = clock or utcnow

    @staticmethod
    def subject_for(dealer_id: str) -> str:
        return f"views:{dealer_id}"

    def check_and_consume(self, dealer_id: str, plan) -> QuotaDecision:
        """
        Consume one view from today's allowance.

        Args:
            dealer_id: The dealer opening a vehicle
            plan: Plan tier or name (validated)

        Returns:
            QuotaDecision; allowed=False is a normal plan-limit result
        """
        limit = get_daily_limit(plan)
        window_start, reset_at = day_window(self.clock())

        try:
            allowed, used = self.db.consume_window_quota(self.subject_for(dealer_id), window_start, limit)
        except Exception as e:
            logger.warning(f"Usage counter unavailable for {dealer_id}, allowing view: {e}")
            return QuotaDecision(allowed=True, remaining=limit, reset_at=reset_at, used=0, limit=limit)

        remaining = max(0, limit - used)
        if not allowed:
            logger.info(f"Dealer {dealer_id} hit daily limit ({used}/{limit})")

        return QuotaDecision(allowed=allowed, remaining=remaining, reset_at=reset_at, used=used, limit=limit)

    def usage_stats(self, dealer_id: str, plan) -> UsageStats:
        """Today's usage without consuming anything."""
        limit = get_daily_limit(plan)
        window_start, reset_at = day_window(self.clock())

        try:
            viewed = self.db.get_window_count(self.subject_for(dealer_id), window_start)
        except Exception as e:
            logger.warning(f"Usage counter unavailable for {dealer_id}: {e}")
            viewed = 0

        remaining = max(0, limit - viewed)
        return UsageStats(
            viewed_today=viewed,
            limit=limit,
            remaining=remaining,
            can_view=remaining > 0,
            percentage=min(100.0, viewed / limit * 100) if limit else 100.0,
            reset_at=reset_at,
        )

    def time_until_reset(self) -> str:
        now = self.clock()
        _, reset_at = day_window(now)
        return format_time_until(reset_at, now)

    def reset_today(self, dealer_id: str) -> None:
        """Clear today's counter (admin/testing)."""
        window_start, _ = day_window(self.clock())
        self.db.reset_window(self.subject_for(dealer_id), window_start)
        logger.info(f"Reset today's views for {dealer_id}")


# =============================================================================
# RATE LIMITER
# =============================================================================

class RateLimiter:
    """
    Fixed-window rate limit keyed by an arbitrary subject (e.g. an email).

    Usage:
        limiter = RateLimiter(limit=3, window=timedelta(hours=1))
        if not limiter.hit(email).allowed:
            ...
    """

    def __init__(
        self,
        db=None,
        limit: Optional[int] = None,
        window: Optional[timedelta] = None,
        namespace: str = "demo",
        clock: Optional[Callable[[], datetime]] = None,
    ):
        config = get_app_config()
        self.db = db or get_db()
        self.limit = limit if limit is not None else config.demo_rate_limit
        self.window = window or timedelta(minutes=config.demo_rate_window_minutes)
        self.namespace = namespace
        self.clock = clock or utcnow

    def _window(self) -> tuple[datetime, datetime]:
        now = self.clock().astimezone(timezone.utc)
        size = int(self.window.total_seconds())
        epoch = int(now.timestamp())
        start = datetime.fromtimestamp(epoch - epoch % size, tz=timezone.utc)
        return start, start + self.window

    def hit(self, subject: str) -> QuotaDecision:
        """Record one request for `subject` if the window allows it."""
        window_start, reset_at = self._window()
        key = f"{self.namespace}:{subject.strip().lower()}"

        try:
            allowed, used = self.db.consume_window_quota(key, window_start, self.limit)
        except Exception as e:
            logger.warning(f"Rate limit store unavailable for {key}, allowing request: {e}")
            return QuotaDecision(allowed=True, remaining=self.limit, reset_at=reset_at, limit=self.limit)

        return QuotaDecision(
            allowed=allowed,
            remaining=max(0, self.limit - used),
            reset_at=reset_at,
            used=used,
            limit=self.limit,
        )
