from __future__ import annotations

import random


class Backoff:
    """Capped exponential backoff with a little jitter.

    next() returns base, 2*base, 4*base, ... up to cap; reset() after a success.
    """

    def __init__(self, base: float = 1.0, cap: float = 60.0, factor: float = 2.0, jitter: float = 0.1):
        self.base = float(base)
        self.cap = float(cap)
        self.factor = float(factor)
        self.jitter = float(jitter)
        self.attempts = 0

    def peek(self) -> float:
        return min(self.cap, self.base * (self.factor ** self.attempts))

    def next(self) -> float:
        delay = self.peek()
        self.attempts += 1
        if self.jitter:
            delay += random.uniform(0, delay * self.jitter)
        return min(delay, self.cap)

    def reset(self) -> None:
        self.attempts = 0
