"""Exponential backoff with jitter."""

from __future__ import annotations

import random
from dataclasses import dataclass, field

from coach_chat.config import RetrySpec


@dataclass
class BackoffPolicy:
    """``delay(n) = min(base * multiplier ** (n - 1), max_delay) * (1 + U(0, jitter))``."""

    base_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 30.0
    jitter: float = 0.25
    rng: random.Random = field(default_factory=random.Random)

    @classmethod
    def from_spec(cls, spec: RetrySpec, rng: random.Random | None = None) -> BackoffPolicy:
        return cls(
            base_delay=spec.base_delay,
            multiplier=spec.multiplier,
            max_delay=spec.max_delay,
            jitter=spec.jitter,
            rng=rng or random.Random(),
        )

    def base(self, attempt: int) -> float:
        """Delay before jitter for 1-based *attempt*."""
        raw = self.base_delay * (self.multiplier ** max(attempt - 1, 0))
        return min(raw, self.max_delay)

    def delay(self, attempt: int) -> float:
        capped = self.base(attempt)
        if self.jitter <= 0:
            return capped
        return capped + self.rng.uniform(0, self.jitter * capped)
