"""
Security helpers for the integration endpoints and webhooks: rate limiting,
redirect and input validation, and HMAC signatures.
"""

from __future__ import annotations

import hashlib
import hmac
import re
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, Iterable, Optional
from urllib.parse import urlparse

from config.settings import config

_UNSAFE_INPUT = re.compile(r"[<>'\"&\x00-\x1f\x7f]")


@dataclass
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_at: float     # epoch seconds when the oldest request leaves the window

    @property
    def retry_after(self) -> int:
        return max(0, int(self.reset_at - time.time()) + 1)


class RateLimiter:
    """In-process sliding-window limiter keyed by arbitrary strings."""

    def __init__(
        self,
        max_requests: Optional[int] = None,
        window_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.time,
        cleanup_every: int = 1000,
    ):
        self.max_requests = max_requests or config.rate_limit_max_requests
        self.window_seconds = window_seconds or config.rate_limit_window_seconds
        self._clock = clock
        self._hits: Dict[str, Deque[float]] = {}
        self._cleanup_every = cleanup_every
        self._checks = 0

    def check(self, key: str) -> RateLimitResult:
        # idle keys are swept every `cleanup_every` checks
        self._checks += 1
        if self._checks % self._cleanup_every == 0:
            self.cleanup()

        now = self._clock()
        hits = self._hits.setdefault(key, deque())
        while hits and hits[0] <= now - self.window_seconds:
            hits.popleft()

        if len(hits) >= self.max_requests:
            return RateLimitResult(allowed=False, remaining=0, reset_at=hits[0] + self.window_seconds)

        hits.append(now)
        return RateLimitResult(
            allowed=True,
            remaining=self.max_requests - len(hits),
            reset_at=hits[0] + self.window_seconds,
        )

    def cleanup(self) -> None:
        cutoff = self._clock() - self.window_seconds
        for key in list(self._hits):
            hits = self._hits[key]
            while hits and hits[0] <= cutoff:
                hits.popleft()
            if not hits:
                del self._hits[key]

    def reset(self) -> None:
        self._hits.clear()


def rate_limit_key(organization_id: str, operation: str, provider: Optional[str] = None) -> str:
    return ":".join(part for part in (organization_id, operation, provider) if part)


def validate_redirect_url(url: str, allowed_hosts: Iterable[str]) -> bool:
    """Accept http(s) URLs whose host is, or is a subdomain of, an allowed host."""
    try:
        parsed = urlparse(url)
    except ValueError:
        return False
    if parsed.scheme not in ("http", "https") or not parsed.hostname:
        return False
    hostname = parsed.hostname.lower()
    for allowed in allowed_hosts:
        allowed = allowed.lower()
        if hostname == allowed or hostname.endswith(f".{allowed}"):
            return True
    return False


def sanitize_input(value: str) -> str:
    return _UNSAFE_INPUT.sub("", value).strip()


def validate_webhook_signature(payload: str | bytes, signature: str, secret: str) -> bool:
    if not signature or not secret:
        return False
    if isinstance(payload, str):
        payload = payload.encode()
    expected = hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()
    if signature.startswith("sha256="):
        signature = signature[len("sha256="):]
    return hmac.compare_digest(expected, signature)


oauth_rate_limiter = RateLimiter()
