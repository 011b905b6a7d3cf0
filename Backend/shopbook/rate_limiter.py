"""
Rate Limiting

Throttles anonymous review-link traffic per client IP so that nobody can
cheaply probe for valid tokens. This is abuse protection only: every
exclusivity guarantee (one booking per slot, one review per appointment,
one use per invite) is enforced by the database, never here.

Limits:
- review link preview + submit: REVIEW_TOKEN_RATE_LIMIT requests per minute per IP (shared bucket)

Usage:
    from .rate_limiter import review_token_rate_limit

    @router.post("/reviews/submit", dependencies=[Depends(review_token_rate_limit)])
    async def submit(...):
        ...
"""

import logging
import time
from collections import defaultdict
from typing import Dict, Optional, Tuple

from fastapi import HTTPException, Request, status
from starlette.middleware.base import BaseHTTPMiddleware

from .core.config import get_settings

logger = logging.getLogger(__name__)


# ────────────────────────────────────────────────────────────────
# In-Memory Sliding Window
# ────────────────────────────────────────────────────────────────

class RateLimiter:
    """
    In-memory sliding window keyed by (client IP, bucket).

    Each process keeps its own counters, so with several workers the
    effective limit is per worker.
    """

    def __init__(self, cleanup_interval: int = 300):
        # {ip_address: [(timestamp, bucket), ...]}
        self.requests: Dict[str, list] = defaultdict(list)
        self.cleanup_interval = cleanup_interval
        self.last_cleanup = time.time()

    @staticmethod
    def client_ip(request: Request) -> str:
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            return forwarded.split(",")[0].strip()
        if request.client:
            return request.client.host
        return "unknown"

    def _cleanup_old_requests(self, now: float) -> None:
        if now - self.last_cleanup < self.cleanup_interval:
            return

        cutoff = now - 3600
        for ip in list(self.requests.keys()):
            self.requests[ip] = [(ts, bucket) for ts, bucket in self.requests[ip] if ts > cutoff]
            if not self.requests[ip]:
                del self.requests[ip]

        self.last_cleanup = now
        logger.debug(f"Rate limiter cleanup: {len(self.requests)} IPs tracked")

    def check(
        self,
        ip_address: str,
        bucket: str,
        max_requests: int,
        window_seconds: int = 60,
    ) -> Tuple[bool, dict]:
        """
        Record a request if it fits in the window.

        Returns:
            (is_allowed, metadata) where metadata holds limit, remaining and reset_time
        """
        now = time.time()
        self._cleanup_old_requests(now)

        window_start = now - window_seconds
        recent = [ts for ts, b in self.requests[ip_address] if ts > window_start and b == bucket]

        is_allowed = len(recent) < max_requests
        if is_allowed:
            self.requests[ip_address].append((now, bucket))
            recent.append(now)

        reset_time = min(recent) + window_seconds if recent else now + window_seconds
        metadata = {
            "limit": max_requests,
            "remaining": max(0, max_requests - len(recent)),
            "reset_time": int(reset_time),
            "window_seconds": window_seconds,
        }
        return is_allowed, metadata


_rate_limiter = RateLimiter()


# ────────────────────────────────────────────────────────────────
# FastAPI Dependencies
# ────────────────────────────────────────────────────────────────

def rate_limit_dependency(bucket: str, max_requests: Optional[int] = None, window_seconds: int = 60):
    """
    Build a dependency that throttles one bucket per client IP.

    Args:
        bucket: Name shared by every route that should count against the same limit
        max_requests: Requests allowed per window; defaults to REVIEW_TOKEN_RATE_LIMIT
        window_seconds: Window length
    """

    async def dependency(request: Request) -> None:
        limit = max_requests or get_settings().review_token_rate_limit
        ip_address = _rate_limiter.client_ip(request)
        is_allowed, metadata = _rate_limiter.check(ip_address, bucket, limit, window_seconds)

        headers = {
            "X-RateLimit-Limit": str(metadata["limit"]),
            "X-RateLimit-Remaining": str(metadata["remaining"]),
            "X-RateLimit-Reset": str(metadata["reset_time"]),
        }

        if not is_allowed:
            retry_after = max(1, metadata["reset_time"] - int(time.time()))
            logger.warning(
                f"[RATE_LIMIT] Blocked {ip_address} on {bucket}: "
                f"limit {limit} per {window_seconds}s"
            )
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail="Too many requests. Please wait a moment and try again.",
                headers={**headers, "Retry-After": str(retry_after)},
            )

        # Picked up by RateLimitHeadersMiddleware
        request.state.rate_limit_headers = headers

    return dependency


review_token_rate_limit = rate_limit_dependency("review-token")


class RateLimitHeadersMiddleware(BaseHTTPMiddleware):
    """Copy the headers stored by the rate limit dependency onto the response."""

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        headers = getattr(request.state, "rate_limit_headers", None)
        if headers:
            for header, value in headers.items():
                response.headers[header] = value
        return response


def clear_rate_limits(ip_address: Optional[str] = None) -> None:
    """Forget recorded requests for one IP, or for everyone."""
    if ip_address:
        _rate_limiter.requests.pop(ip_address, None)
        logger.info(f"Cleared rate limits for IP: {ip_address}")
    else:
        _rate_limiter.requests.clear()
        logger.info("Cleared all rate limits")
