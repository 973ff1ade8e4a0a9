"""Request limits (body size, per-IP rate) and caller authentication."""

from __future__ import annotations

import asyncio
import hmac
import ipaddress
import logging
import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Callable

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from hotspot_relay.utils.signing import verify_signature

logger = logging.getLogger(__name__)

PUBLIC_PATHS = frozenset({"/health", "/ready"})

RELAY_TOKEN_HEADER = "x-relay-token"
RELAY_API_SIGNATURE_HEADER = "x-relay-signature"
INTERNAL_TOKEN_HEADER = "x-relay-internal-token"

INTERNAL_PREFIX = "/internal/"
SIGNED_PREFIXES = ("/devices", "/relay/action")
_MUTATING_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})


class BodySizeLimitExceeded(Exception):
    """Raised when request body exceeds size limit."""


@dataclass
class RateLimitBucket:
    """Sliding window rate limit bucket."""

    timestamps: list[float] = field(default_factory=list)

    def cleanup(self, now: float, window_seconds: float) -> None:
        cutoff = now - window_seconds
        self.timestamps = [t for t in self.timestamps if t > cutoff]

    def add_request(self, now: float) -> None:
        self.timestamps.append(now)

    def count(self) -> int:
        return len(self.timestamps)


class SlidingWindowRateLimiter:
    """Per-key sliding window limiter. State is process-local."""

    _CLEANUP_INTERVAL: float = 60.0
    _BUCKET_MAX_AGE: float = 300.0

    def __init__(
        self, window_seconds: float = 60.0, clock: Callable[[], float] = time.time
    ) -> None:
        self._buckets: dict[str, RateLimitBucket] = defaultdict(RateLimitBucket)
        self._window_seconds = window_seconds
        self._clock = clock
        self._lock = asyncio.Lock()
        self._last_cleanup: float = 0.0

    async def allow(self, key: str, limit: int) -> bool:
        async with self._lock:
            now = self._clock()
            if now - self._last_cleanup > self._CLEANUP_INTERVAL:
                self._cleanup_old_buckets_unlocked(now)
                self._last_cleanup = now

            bucket = self._buckets[key]
            bucket.cleanup(now, self._window_seconds)
            if bucket.count() >= limit:
                return False
            bucket.add_request(now)
            return True

    def _cleanup_old_buckets_unlocked(self, now: float) -> None:
        cutoff = now - self._BUCKET_MAX_AGE
        stale = [
            key
            for key, bucket in self._buckets.items()
            if not bucket.timestamps or max(bucket.timestamps) < cutoff
        ]
        for key in stale:
            del self._buckets[key]


def _sanitize_ip(value: str) -> str:
    return "".join(c for c in value if 0x20 <= ord(c) < 0x7F)


def get_client_ip(request: Request, trust_forwarded_headers: bool = False) -> str:
    """Get client IP with optional trusted proxy header support."""
    if trust_forwarded_headers:
        forwarded_for = request.headers.get("x-forwarded-for")
        if forwarded_for:
            return _sanitize_ip(forwarded_for.split(",")[0].strip())
        real_ip = request.headers.get("x-real-ip")
        if real_ip:
            return _sanitize_ip(real_ip.strip())
    if request.client:
        return request.client.host
    return "unknown"


def _error(
    status: int, code: str, message: str, headers: dict[str, str] | None = None
) -> Response:
    return JSONResponse(
        status_code=status,
        content={"ok": False, "code": code, "message": message},
        headers=headers,
    )


class RequestLimitsMiddleware(BaseHTTPMiddleware):
    """Body size limit and per-IP rate limit, applied before authentication."""

    def __init__(
        self,
        app: Callable,
        *,
        max_body_size_bytes: int,
        rate_limit_per_ip: int,
        rate_limiter: SlidingWindowRateLimiter | None = None,
        trust_forwarded_headers: bool = False,
    ) -> None:
        super().__init__(app)
        self.max_body_size_bytes = max_body_size_bytes
        self.rate_limit_per_ip = rate_limit_per_ip
        self.rate_limiter = rate_limiter or SlidingWindowRateLimiter()
        self._trust_forwarded_headers = trust_forwarded_headers

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.url.path in PUBLIC_PATHS:
            return await call_next(request)

        content_length = request.headers.get("content-length")
        if content_length:
            try:
                if int(content_length) > self.max_body_size_bytes:
                    return self._too_large()
            except ValueError:
                logger.warning("Invalid Content-Length header: %r", content_length)

        if request.method in _MUTATING_METHODS:
            try:
                await self._read_body_limited(request)
            except BodySizeLimitExceeded:
                return self._too_large()

        client_ip = get_client_ip(request, self._trust_forwarded_headers)
        if not await self.rate_limiter.allow(f"ip:{client_ip}", self.rate_limit_per_ip):
            logger.warning("Rate limit exceeded for IP: %s", client_ip)
            return _error(429, "rate_limited", "Too many requests", {"Retry-After": "60"})
        return await call_next(request)

    def _too_large(self) -> Response:
        logger.warning("Request body too large, limit=%d", self.max_body_size_bytes)
        return _error(
            413,
            "request_too_large",
            f"Request body exceeds {self.max_body_size_bytes} bytes",
        )

    async def _read_body_limited(self, request: Request) -> None:
        buf = bytearray()
        async for chunk in request.stream():
            buf.extend(chunk)
            if len(buf) > self.max_body_size_bytes:
                raise BodySizeLimitExceeded(f"Body exceeded {self.max_body_size_bytes} bytes")
        # Cache the body so the signature check and handlers can read it.
        request._body = bytes(buf)


def _ip_allowed(client_ip: str, allowlist: tuple[str, ...]) -> bool:
    try:
        address = ipaddress.ip_address(client_ip)
    except ValueError:
        return False
    for entry in allowlist:
        try:
            if address in ipaddress.ip_network(entry, strict=False):
                return True
        except ValueError:
            logger.warning("ignoring invalid internal allowlist entry: %r", entry)
    return False


class RelayAuthMiddleware(BaseHTTPMiddleware):
    """Relay token on every non-public route, HMAC on mutating API routes,
    internal token or IP allowlist on ``/internal/*``."""

    def __init__(
        self,
        app: Callable,
        *,
        relay_token: str,
        api_secret: str | None = None,
        internal_token: str | None = None,
        internal_allowed_ips: tuple[str, ...] = (),
        trust_forwarded_headers: bool = False,
    ) -> None:
        super().__init__(app)
        self._relay_token = relay_token
        self._api_secret = api_secret
        self._internal_token = internal_token
        self._internal_allowed_ips = internal_allowed_ips
        self._trust_forwarded_headers = trust_forwarded_headers

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        path = request.url.path
        if path in PUBLIC_PATHS:
            return await call_next(request)

        token = request.headers.get(RELAY_TOKEN_HEADER, "")
        if not hmac.compare_digest(token.encode(), self._relay_token.encode()):
            return _error(401, "unauthorized", "invalid relay token")

        if path.startswith(INTERNAL_PREFIX) and not self._internal_allowed(request):
            logger.warning("internal route denied path=%s", path)
            return _error(403, "forbidden", "internal access denied")

        if (
            self._api_secret
            and request.method in _MUTATING_METHODS
            and path.startswith(SIGNED_PREFIXES)
        ):
            body = await request.body()
            signature = request.headers.get(RELAY_API_SIGNATURE_HEADER)
            if not verify_signature(self._api_secret, body, signature):
                logger.warning("invalid request signature path=%s", path)
                return _error(401, "invalid_signature", "invalid request signature")

        return await call_next(request)

    def _internal_allowed(self, request: Request) -> bool:
        if not self._internal_token and not self._internal_allowed_ips:
            return True
        if self._internal_token:
            supplied = request.headers.get(INTERNAL_TOKEN_HEADER, "")
            if hmac.compare_digest(supplied.encode(), self._internal_token.encode()):
                return True
        if self._internal_allowed_ips:
            client_ip = get_client_ip(request, self._trust_forwarded_headers)
            return _ip_allowed(client_ip, self._internal_allowed_ips)
        return False
