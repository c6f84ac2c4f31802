from __future__ import annotations

import random
from dataclasses import dataclass


@dataclass(frozen=True)
class RetryPolicy:
    """Same-model retries, applied per candidate and only for transient errors."""

    max_attempts: int = 1
    base_delay_seconds: float = 0.5
    backoff_multiplier: float = 2.0
    max_delay_seconds: float = 8.0
    jitter: bool = True

    @property
    def attempts(self) -> int:
        return max(1, int(self.max_attempts))

    def compute_backoff(self, retry_index: int, *, retry_after_seconds: int | None = None) -> float:
        # retry_index: 0-based retry count (0 for first retry)
        if retry_after_seconds is not None:
            return float(min(self.max_delay_seconds, max(0, retry_after_seconds)))
        base = max(0.0, self.base_delay_seconds) * (max(1.0, self.backoff_multiplier) ** retry_index)
        base = float(min(max(0.0, self.max_delay_seconds), base))
        jitter = float(random.uniform(0.0, min(0.25, base * 0.1))) if self.jitter and base > 0 else 0.0
        return base + jitter


NO_RETRY = RetryPolicy(max_attempts=1)
