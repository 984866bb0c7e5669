import ipaddress
import time
from collections import deque
from threading import Lock
from typing import Optional

from fastapi import Request

from app.core.config import get_settings

_MAX_BUCKETS = 50_000
_PRUNE_INTERVAL_SECONDS = 60


class SlidingWindowRateLimiter:
    def __init__(
        self,
        *,
        max_buckets: int = _MAX_BUCKETS,
        prune_interval_seconds: int = _PRUNE_INTERVAL_SECONDS,
    ) -> None:
        self._buckets: dict[str, deque[float]] = {}
        self._lock = Lock()
        self._max_buckets = max_buckets
        self._prune_interval_seconds = max(1, int(prune_interval_seconds))
        self._last_prune_at = 0.0

    def allow(self, key: str, limit: int, window_seconds: int) -> tuple[bool, int]:
        """Record a hit for ``key``; returns (allowed, hits in window)."""
        if limit <= 0 or window_seconds <= 0:
            return True, 0
        now = time.monotonic()
        cutoff = now - window_seconds
        with self._lock:
            if len(self._buckets) > self._max_buckets or (now - self._last_prune_at) >= self._prune_interval_seconds:
                self._prune_stale(cutoff)
                self._last_prune_at = now

            bucket = self._buckets.setdefault(key, deque())
            while bucket and bucket[0] <= cutoff:
                bucket.popleft()
            if len(bucket) >= limit:
                return False, len(bucket)
            bucket.append(now)
            return True, len(bucket)

    def _prune_stale(self, cutoff: float) -> None:
        for key in list(self._buckets):
            bucket = self._buckets[key]
            while bucket and bucket[0] <= cutoff:
                bucket.popleft()
            if not bucket:
                del self._buckets[key]

    def reset(self) -> None:
        with self._lock:
            self._buckets.clear()
            self._last_prune_at = 0.0


rate_limiter = SlidingWindowRateLimiter()


def allow_signup_submission(ambassador_id: str) -> bool:
    """Per-ambassador submission budget (``RATE_LIMIT_SIGNUP_PER_MIN``; 0 disables)."""
    limit = get_settings().rate_limit_signup_per_min
    allowed, _ = rate_limiter.allow(f"signup:{ambassador_id}", limit, 60)
    return allowed


def allow_api_request(client_ip: str) -> bool:
    """Per-IP budget for /api/v1 (``RATE_LIMIT_API_PER_MIN``)."""
    allowed, _ = rate_limiter.allow(f"api:ip:{client_ip}", get_settings().rate_limit_api_per_min, 60)
    return allowed


def _ip_in_networks(ip: str, networks: list[str]) -> bool:
    if not ip:
        return False
    try:
        ip_obj = ipaddress.ip_address(ip)
    except ValueError:
        return ip in networks
    for entry in networks:
        if entry == ip:
            return True
        try:
            if ip_obj in ipaddress.ip_network(entry, strict=False):
                return True
        except ValueError:
            continue
    return False


def is_trusted_proxy_peer(request: Request, trusted_proxy_cidrs: Optional[list[str]] = None) -> bool:
    peer_ip = request.client.host if request.client else None
    trusted = trusted_proxy_cidrs if trusted_proxy_cidrs is not None else get_settings().trusted_proxy_cidrs
    if not (peer_ip and trusted):
        return False
    # Starlette's TestClient reports "testclient" as the peer host.
    if "testclient" in trusted and peer_ip in {"testclient", "127.0.0.1", "::1", "localhost"}:
        return True
    return _ip_in_networks(peer_ip, trusted)


def get_client_ip(request: Request, trusted_proxy_cidrs: Optional[list[str]] = None) -> Optional[str]:
    """Client IP for audit and rate limiting.

    ``X-Real-IP`` and ``X-Forwarded-For`` are honoured only when the direct peer
    is listed in ``TRUSTED_PROXY_CIDRS``.
    """
    peer_ip = request.client.host if request.client else None
    if is_trusted_proxy_peer(request, trusted_proxy_cidrs):
        real_ip = request.headers.get("x-real-ip")
        if real_ip:
            return real_ip.strip()
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            parts = [p.strip() for p in forwarded.split(",") if p.strip()]
            if parts:
                # Rightmost entry was appended by our own proxy.
                return parts[-1]
    return peer_ip


def get_user_agent(request: Request) -> Optional[str]:
    return request.headers.get("user-agent") if request else None
