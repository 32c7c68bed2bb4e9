from __future__ import annotations

import random
from dataclasses import dataclass, field
from typing import Optional

from .s3 import ObjectStoreError, classify_error

DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_BASE_DELAY = 0.5
DEFAULT_MAX_DELAY = 20.0


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff.

    ``max_attempts`` counts every call, the first one included, so a policy
    with ``max_attempts=1`` never retries.
    """

    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    base_delay: float = DEFAULT_BASE_DELAY
    max_delay: float = DEFAULT_MAX_DELAY
    multiplier: float = 2.0
    jitter: bool = True

    def delay_for(self, attempt: int) -> float:
        """Backoff before the attempt following ``attempt`` (1-based)."""
        delay = self.base_delay * (self.multiplier ** max(0, attempt - 1))
        return min(self.max_delay, delay)

    def start(self) -> "RetryState":
        return RetryState(self)


@dataclass
class RetryState:
    """Attempt bookkeeping for one operation on one object.

    Call :meth:`begin` before each attempt and :meth:`failed` after a failed
    one. ``failed`` returns the delay to wait before the next attempt, or
    ``None`` once the error is terminal.
    """

    policy: RetryPolicy
    attempts: int = 0
    next_delay: float = 0.0
    last_error: Optional[ObjectStoreError] = None
    _rng: random.Random = field(default_factory=random.Random, repr=False)

    @property
    def exhausted(self) -> bool:
        return self.attempts >= self.policy.max_attempts

    def begin(self) -> int:
        self.attempts += 1
        return self.attempts

    def failed(self, exc: BaseException) -> Optional[float]:
        error = classify_error(exc)
        self.last_error = error
        if not error.transient or self.exhausted:
            self.next_delay = 0.0
            return None
        delay = self.policy.delay_for(self.attempts)
        if self.policy.jitter and delay > 0:
            delay = self._rng.uniform(delay / 2, delay)
        self.next_delay = delay
        return delay

    @property
    def reason(self) -> str:
        if self.last_error is None:
            return ""
        return self.last_error.reason
