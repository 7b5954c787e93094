from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta

from notifyrelay.core.config import Settings, get_settings


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    max_attempts: int = 5
    base_backoff_s: int = 30
    max_backoff_s: int = 3600

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "RetryPolicy":
        resolved = settings or get_settings()
        return cls(
            max_attempts=max(1, int(resolved.retry_max_attempts)),
            base_backoff_s=max(0, int(resolved.retry_base_backoff_s)),
            max_backoff_s=max(0, int(resolved.retry_max_backoff_s)),
        )

    def backoff(self, attempt: int) -> timedelta:
        # min(2^attempt * base, cap); no jitter so retry timing stays reproducible.
        if attempt < 1:
            raise ValueError("attempt must be >= 1")
        # Clamp the exponent: past 2^62 the cap has long been reached.
        seconds = min((2 ** min(int(attempt), 62)) * self.base_backoff_s, self.max_backoff_s)
        return timedelta(seconds=seconds)

    def backoff_seconds(self, attempt: int) -> int:
        return int(self.backoff(attempt).total_seconds())

    def is_exhausted(self, attempt: int) -> bool:
        return attempt >= self.max_attempts
