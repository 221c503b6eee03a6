"""Endpoint classes, their rate policies and the route table that maps requests to them."""
from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping, Optional

from src.auth.exceptions import ConfigurationError


class EndpointClass(str, Enum):
    """Rate limited route groups. Anything not listed here is unmetered."""

    LOGIN = "login"
    REGISTER = "register"
    VERIFY_EMAIL = "verify_email"


@dataclass(frozen=True)
class RatePolicy:
    """Bucket shape: ``capacity`` tokens, ``refill_tokens`` added per whole interval."""

    capacity: int
    refill_tokens: int
    refill_interval_seconds: float

    def __post_init__(self):
        if self.capacity <= 0:
            raise ConfigurationError(f"capacity must be positive, got {self.capacity}")
        if self.refill_tokens <= 0:
            raise ConfigurationError(
                f"refill_tokens must be positive, got {self.refill_tokens}"
            )
        if self.refill_interval_seconds <= 0:
            raise ConfigurationError(
                f"refill_interval_seconds must be positive, got {self.refill_interval_seconds}"
            )


DEFAULT_POLICIES: dict[EndpointClass, RatePolicy] = {
    # Credential stuffing
    EndpointClass.LOGIN: RatePolicy(capacity=10, refill_tokens=10, refill_interval_seconds=60),
    # Signup spam
    EndpointClass.REGISTER: RatePolicy(capacity=20, refill_tokens=20, refill_interval_seconds=600),
    # Users re-click verification links
    EndpointClass.VERIFY_EMAIL: RatePolicy(capacity=30, refill_tokens=30, refill_interval_seconds=60),
}

# Keyed on (method, path): GET /login renders the form and is not metered.
ROUTES: dict[tuple[str, str], EndpointClass] = {
    ("POST", "/login"): EndpointClass.LOGIN,
    ("POST", "/auth/login"): EndpointClass.LOGIN,
    ("POST", "/register"): EndpointClass.REGISTER,
    ("GET", "/verify-email"): EndpointClass.VERIFY_EMAIL,
}


def resolve_endpoint(method: str, path: str) -> Optional[EndpointClass]:
    """Map a request to its endpoint class, or None if it is unmetered."""
    if not path:
        return None
    if len(path) > 1:
        path = path.rstrip("/")
    return ROUTES.get((method.upper(), path))


def parse_endpoint_class(name: str) -> EndpointClass:
    """Look up an endpoint class by its configured name (``verify-email`` is accepted)."""
    key = name.strip().lower().replace("-", "_")
    try:
        return EndpointClass(key)
    except ValueError:
        raise ConfigurationError(
            f"Unknown endpoint class in rate limit policy: {name!r}"
        ) from None


def build_policies(
    overrides: Optional[Mapping[str, Any]] = None,
) -> dict[EndpointClass, RatePolicy]:
    """
    Merge configured overrides onto the default policy table.

    Args:
        overrides: Endpoint class name -> object or mapping with ``capacity``,
                   optional ``refill_tokens`` (defaults to capacity) and
                   ``refill_interval_seconds`` (defaults to 60)

    Raises:
        ConfigurationError: On an unknown endpoint class or a non-positive value
    """
    policies = dict(DEFAULT_POLICIES)
    for name, override in (overrides or {}).items():
        endpoint = parse_endpoint_class(name)
        if isinstance(override, Mapping):
            capacity = override["capacity"]
            refill_tokens = override.get("refill_tokens")
            interval = override.get("refill_interval_seconds", 60)
        else:
            capacity = override.capacity
            refill_tokens = override.refill_tokens
            interval = override.refill_interval_seconds
        policies[endpoint] = RatePolicy(
            capacity=capacity,
            refill_tokens=refill_tokens or capacity,
            refill_interval_seconds=interval,
        )
    return policies
