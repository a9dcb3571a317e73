"""
Daily usage limits for free-tier features.

Counts uses per user and feature over a rolling window, independent of the
user's credit balance.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from tale_forge_credits.storage.models import UsageWindow
from tale_forge_credits.storage.repository import UsageWindowStore, utcnow

logger = logging.getLogger(__name__)

DEFAULT_PERIOD = timedelta(hours=24)


@dataclass(frozen=True)
class UsageResult:
    """Outcome of consuming, or peeking at, a usage window."""
    success: bool
    used: int
    limit: int
    remaining: int
    reset_at: datetime


class UsageLimitCounter:
    """Enforces "N uses per rolling period" for a feature."""

    def __init__(
        self,
        store: UsageWindowStore,
        period: timedelta = DEFAULT_PERIOD,
        clock: Callable[[], datetime] = utcnow
    ):
        if period <= timedelta(0):
            raise ValueError("period must be positive")
        self.store = store
        self.period = period
        self._clock = clock

    def try_consume(
        self,
        user_id: str,
        feature: str,
        limit: int,
        reference_id: Optional[str] = None
    ) -> UsageResult:
        """Count one use of ``feature`` if the window still has room.

        The check and the increment happen in one store transaction, so
        concurrent requests from the same user can never push the count
        past ``limit``. A full window is left untouched. A ``reference_id``
        already counted in this window succeeds without counting again.
        """
        if limit < 0:
            raise ValueError("limit cannot be negative")
        window, counted = self.store.consume(
            user_id, feature, limit, self._now(), self.period, reference_id=reference_id
        )
        if not counted:
            logger.info(
                "Daily limit reached for %s on %s (%d/%d)",
                user_id, feature, window.count, limit
            )
        return self._result(window, limit, counted)

    def is_counted(self, user_id: str, feature: str, reference_id: str) -> bool:
        return self.store.is_counted(user_id, feature, reference_id, self._now(), self.period)

    def status(self, user_id: str, feature: str, limit: int) -> UsageResult:
        """Read-only view of the window; ``success`` tells if a use would fit."""
        now = self._now()
        window = self.store.get_window(user_id, feature)
        if window is None:
            window = UsageWindow(user_id=user_id, feature=feature, count=0, window_start=now)
        else:
            window = window.rolled(now, self.period)
        return self._result(window, limit, window.count < limit)

    def _now(self) -> datetime:
        now = self._clock()
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        return now

    def _result(self, window: UsageWindow, limit: int, success: bool) -> UsageResult:
        return UsageResult(
            success=success,
            used=window.count,
            limit=limit,
            remaining=max(0, limit - window.count),
            reset_at=window.window_start + self.period
        )
