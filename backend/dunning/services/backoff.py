"""Exponential backoff with jitter for retries not governed by a campaign schedule."""

import random
from datetime import datetime, timedelta

from dunning.core.config import settings


class BackoffPolicy:
    """``delay_days(n) = min(2 ** (n - 1), cap)``, stretched by up to ``max_jitter``.

    The random source is injected so schedules are reproducible in tests.
    """

    def __init__(
        self,
        cap_days: int | None = None,
        max_jitter: float | None = None,
        rng: random.Random | None = None,
    ):
        self.cap_days = cap_days if cap_days is not None else settings.BACKOFF_CAP_DAYS
        self.max_jitter = max_jitter if max_jitter is not None else settings.BACKOFF_MAX_JITTER
        self.rng = rng or random.Random()

    def delay_days(self, attempt: int) -> int:
        """Base delay before the retry following failed attempt number ``attempt``."""
        if attempt < 1:
            raise ValueError("attempt must be >= 1")
        # Avoid building huge integers for large attempt counts
        if attempt - 1 >= self.cap_days.bit_length():
            return self.cap_days
        return min(2 ** (attempt - 1), self.cap_days)

    def next_retry_at(self, attempt: int, now: datetime) -> datetime:
        jitter = self.rng.random() * self.max_jitter
        return now + timedelta(days=self.delay_days(attempt) * (1 + jitter))
