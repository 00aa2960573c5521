"""Retry and backoff policy for outbound deliveries.

Retry ``n`` waits ``base * multiplier ** (n - 1)`` seconds after the failure
that preceded it. With the defaults (60s base, 4x multiplier, 3 retries) the
schedule is 60s, 240s, 960s; a fourth failure exhausts the budget.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from config import settings


@dataclass(frozen=True)
class BackoffDecision:
    """Whether another attempt is permitted and how long to wait for it."""

    eligible: bool
    delay: timedelta

    def retry_at(self, failed_at: datetime) -> datetime | None:
        """Return the next attempt time, or ``None`` when retries are exhausted."""
        if not self.eligible:
            return None
        return failed_at + self.delay


@dataclass(frozen=True)
class BackoffPolicy:
    """Fixed-multiplier retry schedule."""

    max_retries: int = 3
    base_seconds: int = 60
    multiplier: int = 4

    @staticmethod
    def from_settings() -> "BackoffPolicy":
        """Build a backoff policy from delivery settings."""
        delivery = settings.delivery
        return BackoffPolicy(
            max_retries=int(delivery.max_retries),
            base_seconds=int(delivery.backoff_base_seconds),
            multiplier=int(delivery.backoff_multiplier),
        )

    def delay_seconds(self, attempt_count: int) -> int:
        """Return the wait before retry ``attempt_count`` (1-based)."""
        if attempt_count <= 0:
            return 0
        return self.base_seconds * (self.multiplier ** (attempt_count - 1))

    def next_attempt(self, attempt_count: int) -> BackoffDecision:
        """Decide whether retry number ``attempt_count`` may run, and when.

        ``attempt_count`` is the number of failed attempts recorded so far.
        Zero means nothing has failed yet and the first attempt may run now.
        """
        if isinstance(attempt_count, bool) or not isinstance(attempt_count, int):
            raise TypeError("attempt_count must be an int.")
        if attempt_count < 0:
            raise ValueError("attempt_count must be >= 0.")
        if attempt_count > self.max_retries:
            return BackoffDecision(eligible=False, delay=timedelta(0))
        return BackoffDecision(
            eligible=True,
            delay=timedelta(seconds=self.delay_seconds(attempt_count)),
        )

    @property
    def max_attempts(self) -> int:
        """Total attempts allowed, counting the original send."""
        return self.max_retries + 1

    def can_retry(self, retry_count: int) -> bool:
        """Return whether a row with ``retry_count`` recorded failures has a retry left."""
        return int(retry_count) < self.max_attempts
