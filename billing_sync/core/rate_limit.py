"""
Simple in-memory rate limiter for the webhook endpoint.
Requests rejected here never reach the reconciliation pipeline.
"""
import time
from collections import defaultdict
from typing import Dict, Tuple

from fastapi import HTTPException, Request, status

from billing_sync.core.config import settings
from billing_sync.core.logging_config import get_logger

logger = get_logger(__name__)


class RateLimiter:
    """
    In-memory rate limiter using sliding window algorithm.
    For production with multiple workers, use Redis-based solution.
    """

    def __init__(self):
        # {ip: [(timestamp, count), ...]}
        self._requests: Dict[str, list] = defaultdict(list)

    def _cleanup_old_requests(self, ip: str, window_seconds: int):
        """Remove requests older than the window."""
        cutoff = time.time() - window_seconds
        self._requests[ip] = [
            (ts, count) for ts, count in self._requests[ip]
            if ts > cutoff
        ]

    def is_rate_limited(
        self,
        ip: str,
        max_requests: int = 10,
        window_seconds: int = 60
    ) -> Tuple[bool, int]:
        """
        Check if IP is rate limited.
        Returns (is_limited, retry_after_seconds)
        """
        self._cleanup_old_requests(ip, window_seconds)

        total_requests = sum(count for _, count in self._requests[ip])
        if total_requests >= max_requests:
            oldest = min(ts for ts, _ in self._requests[ip])
            return True, max(1, int(oldest + window_seconds - time.time()))

        return False, 0

    def record_request(self, ip: str):
        """Record a request from an IP."""
        self._requests[ip].append((time.time(), 1))

    def clear(self):
        """Forget all recorded requests."""
        self._requests.clear()


# Global rate limiter instance for the webhook endpoint
webhook_rate_limiter = RateLimiter()


def get_client_ip(request: Request) -> str:
    """
    Client IP as resolved by ProxyHeadersMiddleware.

    X-Forwarded-For is honoured only when it comes from FORWARDED_ALLOW_IPS.
    """
    if request.client:
        return request.client.host

    return "unknown"


def webhook_rate_limit(request: Request) -> None:
    """
    FastAPI dependency guarding the webhook endpoint.

    Stripe delivers from a small set of addresses at a modest rate, so a burst
    from one client is logged as suspicious before it is turned away.
    """
    ip = get_client_ip(request)
    is_limited, retry_after = webhook_rate_limiter.is_rate_limited(
        ip,
        settings.WEBHOOK_RATE_LIMIT_MAX_REQUESTS,
        settings.WEBHOOK_RATE_LIMIT_WINDOW_SECONDS,
    )

    if is_limited:
        logger.warning(
            "suspicious_webhook_traffic",
            client_ip=ip,
            path=request.url.path,
            retry_after=retry_after,
        )
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Too many requests",
            headers={"Retry-After": str(retry_after)},
        )

    webhook_rate_limiter.record_request(ip)
