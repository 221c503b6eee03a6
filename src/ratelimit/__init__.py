"""Endpoint-scoped rate limiting for authentication endpoints.

Buckets live in process memory: each process enforces its own limits.
Running several workers behind a load balancer multiplies the effective
limit by the worker count.
"""
from src.ratelimit.bucket import Bucket
from src.ratelimit.controller import (
    AdmissionController,
    AdmissionResult,
    Allowed,
    Denied,
)
from src.ratelimit.identity import ClientIdentityResolver
from src.ratelimit.middleware import RateLimitMiddleware, build_throttle_response
from src.ratelimit.policy import (
    DEFAULT_POLICIES,
    EndpointClass,
    RatePolicy,
    build_policies,
    resolve_endpoint,
)

__all__ = [
    "AdmissionController",
    "AdmissionResult",
    "Allowed",
    "Denied",
    "Bucket",
    "ClientIdentityResolver",
    "RateLimitMiddleware",
    "build_throttle_response",
    "DEFAULT_POLICIES",
    "EndpointClass",
    "RatePolicy",
    "build_policies",
    "resolve_endpoint",
]
