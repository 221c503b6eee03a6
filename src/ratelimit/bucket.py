"""Token bucket with interval refill."""
import threading
from dataclasses import dataclass, field
from typing import Callable, NamedTuple

from src.ratelimit.policy import RatePolicy


class ConsumeResult(NamedTuple):
    consumed: bool
    remaining: int
    wait_seconds: float


@dataclass
class Bucket:
    """Admission capacity for one (endpoint class, client) pair.

    Tokens are added in whole batches: ``refill_tokens`` every
    ``refill_interval`` seconds since ``last_refill``, never above
    ``capacity``. Nothing drips in between.
    """

    capacity: int
    refill_tokens: int
    refill_interval: float
    tokens: int
    last_refill: float
    last_access: float
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    @classmethod
    def full(cls, policy: RatePolicy, now: float) -> "Bucket":
        return cls(
            capacity=policy.capacity,
            refill_tokens=policy.refill_tokens,
            refill_interval=policy.refill_interval_seconds,
            tokens=policy.capacity,
            last_refill=now,
            last_access=now,
        )

    def try_consume(self, clock: Callable[[], float]) -> ConsumeResult:
        """Refill, then take one token if there is one. Thread-safe."""
        with self._lock:
            now = clock()
            self._refill(now)
            self.last_access = now

            if self.tokens >= 1:
                self.tokens -= 1
                return ConsumeResult(True, self.tokens, 0.0)

            wait = self.last_refill + self.refill_interval - now
            return ConsumeResult(False, 0, wait)

    def idle_for(self, now: float) -> float:
        """Seconds since the bucket was last used."""
        with self._lock:
            return now - self.last_access

    def _refill(self, now: float) -> None:
        elapsed = now - self.last_refill
        if elapsed < self.refill_interval:
            return
        periods = int(elapsed // self.refill_interval)
        self.tokens = min(self.capacity, self.tokens + periods * self.refill_tokens)
        self.last_refill += periods * self.refill_interval
