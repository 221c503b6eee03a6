"""WSGI middleware enforcing admission control in front of the application."""
import json
import logging
from typing import Any, Callable, Iterable, Optional

from src.ratelimit.controller import AdmissionController, Denied
from src.ratelimit.identity import ClientIdentityResolver
from src.ratelimit.policy import resolve_endpoint

logger = logging.getLogger(__name__)

TOO_MANY_REQUESTS = "429 Too Many Requests"
REMAINING_HEADER = "X-Rate-Limit-Remaining"


def build_throttle_response(result: Denied) -> tuple[str, list[tuple[str, str]], bytes]:
    """Status line, headers and JSON body for a denied request."""
    seconds = result.retry_after_seconds
    body = json.dumps(
        {
            "error": "Too many requests",
            "message": f"Rate limit exceeded. Please try again in {seconds} seconds.",
            "retryAfter": seconds,
        }
    ).encode("utf-8")
    headers = [
        ("Content-Type", "application/json"),
        ("Content-Length", str(len(body))),
        ("Retry-After", str(seconds)),
    ]
    return TOO_MANY_REQUESTS, headers, body


class RateLimitMiddleware:
    """
    Wrap a WSGI app so metered endpoints pass through the admission controller.

    Denied requests never reach the wrapped app, even when writing the 429
    itself fails. Allowed metered requests get an X-Rate-Limit-Remaining header.
    """

    def __init__(
        self,
        app: Callable,
        controller: AdmissionController,
        identity_resolver: Optional[ClientIdentityResolver] = None,
        enabled: bool = True,
    ):
        self.app = app
        self.controller = controller
        self.identity_resolver = identity_resolver or ClientIdentityResolver()
        self.enabled = enabled

    @classmethod
    def from_settings(
        cls, app: Callable, controller: AdmissionController, settings
    ) -> "RateLimitMiddleware":
        return cls(
            app,
            controller,
            identity_resolver=ClientIdentityResolver.from_settings(settings),
            enabled=settings.rate_limit_enabled,
        )

    def __call__(self, environ: dict, start_response: Callable) -> Iterable[bytes]:
        if not self.enabled:
            return self.app(environ, start_response)

        path = environ.get("PATH_INFO", "/")
        endpoint = resolve_endpoint(environ.get("REQUEST_METHOD", "GET"), path)
        if not self.controller.is_metered(endpoint):
            return self.app(environ, start_response)

        client = self.identity_resolver.resolve(
            environ.get("HTTP_X_FORWARDED_FOR"), environ.get("REMOTE_ADDR")
        )
        result = self.controller.try_admit(endpoint, client)

        if isinstance(result, Denied):
            logger.warning(
                "Rate limit exceeded for %s on %s: retry after %d seconds",
                client,
                path,
                result.retry_after_seconds,
            )
            return self._deny(result, start_response, client, path)

        logger.debug(
            "Rate limit OK for %s on %s: %d tokens remaining",
            client,
            path,
            result.remaining_tokens,
        )
        remaining = str(result.remaining_tokens)

        def _start_response(status: str, headers: list, exc_info: Any = None):
            headers = list(headers) + [(REMAINING_HEADER, remaining)]
            if exc_info is None:
                return start_response(status, headers)
            return start_response(status, headers, exc_info)

        return self.app(environ, _start_response)

    def _deny(
        self, result: Denied, start_response: Callable, client: str, path: str
    ) -> Iterable[bytes]:
        status, headers, body = build_throttle_response(result)
        try:
            start_response(status, headers)
        except Exception as e:
            # The request stays rejected; only the response body is lost.
            logger.error(
                "Failed to write rate limit response for %s on %s: %s", client, path, e
            )
            return []
        return [body]
