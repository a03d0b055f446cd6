"""Rate limiting for the form API.

Two limiters share one storage choice:

- ``limiter`` (slowapi) decorates authenticated recruiter endpoints.
- ``public_rate_limiter`` throttles the candidate-facing token endpoints per
  client IP and endpoint, and reports when the caller may retry.
"""

import logging
import os
import time
from dataclasses import dataclass

from fastapi import Request
from limits import RateLimitItemPerMinute
from limits.storage import storage_from_string
from limits.strategies import FixedWindowRateLimiter
from slowapi import Limiter
from slowapi.util import get_remote_address

from formflow.core.config import settings

logger = logging.getLogger(__name__)

IS_TESTING = os.getenv("TESTING", "").lower() in ("1", "true", "yes")
DEFAULT_LIMITS = (
    []
    if IS_TESTING or settings.RATE_LIMIT_API <= 0
    else [f"{settings.RATE_LIMIT_API}/minute"]
)

# Endpoint keys for the public limiter
FORM_READ = "form_read"
FORM_SUBMIT = "form_submit"


def _resolve_storage_uri() -> str:
    """Use Redis for multi-worker support, in-memory if it can't be reached."""
    if IS_TESTING:
        return "memory://"
    try:
        import redis

        # Test connection upfront
        r = redis.from_url(settings.REDIS_URL, socket_connect_timeout=1)
        r.ping()
        return settings.REDIS_URL
    except Exception as e:
        logging.warning(f"Redis unavailable for rate limiting, using in-memory: {e}")
        return "memory://"


STORAGE_URI = _resolve_storage_uri()

limiter = Limiter(
    key_func=get_remote_address,
    storage_uri=STORAGE_URI,
    default_limits=DEFAULT_LIMITS,
    enabled=settings.RATE_LIMIT_ENABLED,
)


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    retry_after_seconds: int


class PublicRateLimiter:
    """
    Fixed one-minute window per (endpoint, client IP).

    Keys are independent: exhausting the submit window never affects reads,
    and one IP's traffic never counts against another's.
    """

    def __init__(
        self,
        storage_uri: str = "memory://",
        limits_per_minute: dict[str, int] | None = None,
    ) -> None:
        self._storage = storage_from_string(storage_uri)
        self._strategy = FixedWindowRateLimiter(self._storage)
        self._limits_per_minute = limits_per_minute

    def _limit_for(self, endpoint_key: str) -> int:
        if self._limits_per_minute is not None:
            return self._limits_per_minute.get(endpoint_key, 0)
        if endpoint_key == FORM_READ:
            return settings.RATE_LIMIT_PUBLIC_READ
        return settings.RATE_LIMIT_PUBLIC_FORMS

    def allow(self, client_ip: str | None, endpoint_key: str) -> RateLimitDecision:
        per_minute = self._limit_for(endpoint_key)
        if per_minute <= 0:
            return RateLimitDecision(allowed=True, limit=0, remaining=0, retry_after_seconds=0)

        item = RateLimitItemPerMinute(per_minute)
        identity = client_ip or "unknown"
        allowed = self._strategy.hit(item, endpoint_key, identity)
        reset_time, remaining = self._strategy.get_window_stats(item, endpoint_key, identity)

        retry_after = 0
        if not allowed:
            retry_after = max(1, int(reset_time - time.time()) + 1)
            logger.info(
                "public_rate_limited",
                extra={"route": endpoint_key, "retry_after_seconds": retry_after},
            )
        return RateLimitDecision(
            allowed=allowed,
            limit=per_minute,
            remaining=max(0, remaining),
            retry_after_seconds=retry_after,
        )

    def reset(self) -> None:
        self._storage.reset()


public_rate_limiter = PublicRateLimiter(STORAGE_URI)


def enforce_public_rate_limit(endpoint_key: str):
    """
    Dependency factory guarding a public endpoint.

    Usage:
        @router.post("/{token}/submit", dependencies=[Depends(enforce_public_rate_limit(FORM_SUBMIT))])
    """
    from formflow.core.deps import get_client_ip
    from formflow.services.exceptions import RateLimitExceededError

    def dependency(request: Request) -> None:
        if not settings.RATE_LIMIT_ENABLED:
            return
        decision = public_rate_limiter.allow(get_client_ip(request), endpoint_key)
        if not decision.allowed:
            raise RateLimitExceededError(
                limit=decision.limit,
                retry_after_seconds=decision.retry_after_seconds,
            )
    return dependency
