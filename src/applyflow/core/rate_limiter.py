from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta

from applyflow.config import Settings
from applyflow.db.base import utcnow
from applyflow.db.repositories import Repository
from applyflow.types import RateLimitStatus

logger = logging.getLogger(__name__)

HOUR = timedelta(hours=1)
DAY = timedelta(hours=24)


class RateLimiter:
    """Per-user submission caps counted from the applications table.

    The applications table is the ground truth, so counts are consistent
    across worker processes without any shared in-memory state.
    """

    def __init__(
        self,
        repo: Repository,
        *,
        hourly_limit: int = 8,
        daily_limit: int = 200,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.repo = repo
        self.hourly_limit = hourly_limit
        self.daily_limit = daily_limit
        self._clock = clock

    @classmethod
    def from_settings(
        cls,
        repo: Repository,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> RateLimiter:
        return cls(
            repo,
            hourly_limit=settings.rate_limit_hourly,
            daily_limit=settings.rate_limit_daily,
            clock=clock,
        )

    def can_submit(self, user_id: str) -> bool:
        now = self._clock()
        hourly = self.repo.count_submissions_since(user_id, now - HOUR)
        if hourly >= self.hourly_limit:
            logger.info("Hourly limit reached user_id=%s count=%s", user_id, hourly)
            return False

        daily = self.repo.count_submissions_since(user_id, now - DAY)
        if daily >= self.daily_limit:
            logger.info("Daily limit reached user_id=%s count=%s", user_id, daily)
            return False
        return True

    def usage(self, user_id: str) -> RateLimitStatus:
        now = self._clock()
        hourly = self.repo.count_submissions_since(user_id, now - HOUR)
        daily = self.repo.count_submissions_since(user_id, now - DAY)
        return RateLimitStatus(
            user_id=user_id,
            hourly_count=hourly,
            hourly_limit=self.hourly_limit,
            daily_count=daily,
            daily_limit=self.daily_limit,
            can_submit=hourly < self.hourly_limit and daily < self.daily_limit,
        )
