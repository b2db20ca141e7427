"""Hourly and daily caps on how many turns the agent will run."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable

from butler.db import Database

LOGGER = logging.getLogger(__name__)

RATE_LIMIT_NOTICE = "Rate limit exceeded. Please try again later."


class RateLimiter:
    """Counts accepted turns in the usage log; a limit of 0 disables that window."""

    def __init__(
        self,
        db: Database,
        hourly_limit: int = 50,
        daily_limit: int = 500,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._db = db
        self._windows = ((timedelta(hours=1), hourly_limit), (timedelta(days=1), daily_limit))
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def allow(self, chat_id: str | None = None) -> bool:
        """Return True and record the turn if every window still has room."""

        now = self._clock()
        for window, limit in self._windows:
            if limit <= 0:
                continue
            used = self._db.count_usage_since(now - window)
            if used >= limit:
                LOGGER.warning("Rate limit reached: %d turns in the last %s (limit %d)", used, window, limit)
                return False
        self._db.log_usage(chat_id, at=now)
        return True
