"""
Fixed-window limit shared by the sensitive auth routes (login, refresh, forgot-password).

Requests are keyed by client address and all guarded routes count against one
window per address, which starts at the first request. Counters live in process
memory (slowapi over limits' MemoryStorage) and are not shared between processes.
"""

from __future__ import annotations

import logging
import math
import time

from fastapi import Request
from limits import RateLimitItem
from prometheus_client import Counter
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from app.config import settings
from app.core.errors import RateLimitExceededError

logger = logging.getLogger(__name__)

RATE_LIMIT_MESSAGE = "Too many requests. Kindly try again later."
SENSITIVE_SCOPE = "auth-sensitive"
SENSITIVE_LIMIT = f"{settings.rate_limit_max_requests}/{settings.rate_limit_window_seconds} seconds"

RATE_LIMIT_REJECTIONS = Counter(
    "rate_limit_rejections_total",
    "Requests rejected by a rate limit",
    ["scope"],
)

auth_limiter = Limiter(
    key_func=get_remote_address,
    strategy="fixed-window",
    storage_uri="memory://",
)

# Applied to each guarded handler; the shared scope gives them one window per address
sensitive_limit = auth_limiter.shared_limit(
    SENSITIVE_LIMIT,
    scope=SENSITIVE_SCOPE,
    error_message=RATE_LIMIT_MESSAGE,
)


def seconds_until_reset(limiter: Limiter, item: RateLimitItem, *identifiers: str) -> int:
    """Whole seconds until the window for identifiers resets (at least 1)."""
    reset_at, _ = limiter.limiter.get_window_stats(item, *identifiers)
    return max(1, math.ceil(reset_at - time.time()))


def rate_limit_error(request: Request, exc: RateLimitExceeded) -> RateLimitExceededError:
    """Translate a slowapi rejection into the domain error, with its Retry-After."""
    scope = exc.limit.scope or "global"
    limiter = request.app.state.auth_limiter if scope == SENSITIVE_SCOPE else request.app.state.limiter
    retry_after = 1
    current = getattr(request.state, "view_rate_limit", None)
    if current is not None:
        item, identifiers = current
        retry_after = seconds_until_reset(limiter, item, *identifiers)
    RATE_LIMIT_REJECTIONS.labels(scope=scope).inc()
    logger.warning("Rate limit exceeded for %s (%s)", get_remote_address(request), scope)
    return RateLimitExceededError(RATE_LIMIT_MESSAGE, retry_after=retry_after)
