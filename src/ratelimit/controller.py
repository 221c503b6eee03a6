"""Per-endpoint, per-client admission control."""
import logging
import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Mapping, Optional, Union

from src.auth.exceptions import ConfigurationError
from src.ratelimit.bucket import Bucket
from src.ratelimit.policy import EndpointClass, RatePolicy, build_policies

logger = logging.getLogger(__name__)

IDLE_THRESHOLD_SECONDS = 60 * 60


@dataclass(frozen=True)
class Allowed:
    """Request admitted. ``remaining_tokens`` is None for unmetered endpoints."""

    remaining_tokens: Optional[int]

    @property
    def allowed(self) -> bool:
        return True


@dataclass(frozen=True)
class Denied:
    """Request rejected; at least one token is back after ``retry_after_seconds``."""

    retry_after_seconds: int

    @property
    def allowed(self) -> bool:
        return False


AdmissionResult = Union[Allowed, Denied]

UNMETERED = Allowed(remaining_tokens=None)


class AdmissionController:
    """
    Token bucket admission control keyed by (endpoint class, client identity).

    Buckets are created on first use and removed by ``sweep_idle_buckets``
    once untouched for ``idle_threshold_seconds``. The map lock only guards
    insertion and eviction; refill and consume lock the single bucket.

    Usage:
        controller = AdmissionController(build_policies())
        result = controller.try_admit(EndpointClass.LOGIN, "9.9.9.9")
        if isinstance(result, Denied):
            ...  # 429 with Retry-After: result.retry_after_seconds
    """

    def __init__(
        self,
        policies: Optional[Mapping[EndpointClass, RatePolicy]] = None,
        clock: Callable[[], float] = time.monotonic,
        idle_threshold_seconds: float = IDLE_THRESHOLD_SECONDS,
    ):
        """
        Args:
            policies: Policy per endpoint class (defaults when omitted)
            clock: Monotonic seconds; tests inject a fake
            idle_threshold_seconds: Idle time after which a bucket is evicted
        """
        self._policies = dict(policies) if policies is not None else build_policies()
        for endpoint in self._policies:
            if not isinstance(endpoint, EndpointClass):
                raise ConfigurationError(f"Unknown endpoint class in policy table: {endpoint!r}")
        self._clock = clock
        self.idle_threshold_seconds = idle_threshold_seconds
        self._buckets: dict[tuple[EndpointClass, str], Bucket] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_settings(
        cls, settings, clock: Callable[[], float] = time.monotonic
    ) -> "AdmissionController":
        """Build a controller from application settings."""
        return cls(
            build_policies(settings.rate_limit_policies),
            clock=clock,
            idle_threshold_seconds=settings.bucket_idle_threshold_seconds,
        )

    def is_metered(self, endpoint: Optional[EndpointClass]) -> bool:
        return endpoint in self._policies

    def policy_for(self, endpoint: EndpointClass) -> Optional[RatePolicy]:
        return self._policies.get(endpoint)

    def try_admit(self, endpoint: Optional[EndpointClass], identity: str) -> AdmissionResult:
        """
        Take one token from the client's bucket for this endpoint class.

        Never blocks on other buckets and never raises for a denial.
        Unmetered endpoints are always allowed and leave no state behind.
        """
        policy = self._policies.get(endpoint)
        if policy is None:
            return UNMETERED

        bucket = self._get_or_create(endpoint, identity, policy)
        consumed, remaining, wait = bucket.try_consume(self._clock)

        if consumed:
            return Allowed(remaining_tokens=remaining)
        return Denied(retry_after_seconds=max(1, math.ceil(wait)))

    def sweep_idle_buckets(self) -> int:
        """
        Remove buckets idle for longer than the threshold.

        Returns:
            Number of buckets removed
        """
        now = self._clock()
        with self._lock:
            snapshot = list(self._buckets.items())

        # Idle checks take bucket locks; the map lock must not be held here
        candidates = [
            (key, bucket)
            for key, bucket in snapshot
            if bucket.idle_for(now) > self.idle_threshold_seconds
        ]

        removed = 0
        with self._lock:
            for key, bucket in candidates:
                if self._buckets.get(key) is not bucket:
                    continue
                if bucket.idle_for(now) <= self.idle_threshold_seconds:
                    continue
                del self._buckets[key]
                removed += 1
                logger.debug("Removed idle bucket for %s on %s", key[1], key[0].value)

        if removed:
            logger.info("Cleaned up %d idle rate limit buckets", removed)
        return removed

    def bucket_count(self, endpoint: Optional[EndpointClass] = None) -> int:
        """Number of live buckets, optionally for one endpoint class (for monitoring)."""
        with self._lock:
            if endpoint is None:
                return len(self._buckets)
            return sum(1 for key in self._buckets if key[0] is endpoint)

    def reset(self) -> None:
        """Drop every bucket."""
        with self._lock:
            self._buckets.clear()

    def _get_or_create(
        self, endpoint: EndpointClass, identity: str, policy: RatePolicy
    ) -> Bucket:
        key = (endpoint, identity)
        bucket = self._buckets.get(key)
        if bucket is not None:
            return bucket
        with self._lock:
            bucket = self._buckets.get(key)
            if bucket is None:
                bucket = Bucket.full(policy, self._clock())
                self._buckets[key] = bucket
            return bucket
