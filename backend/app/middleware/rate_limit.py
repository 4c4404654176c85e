"""
middleware/rate_limit.py — In-memory fixed-window rate limiting.

The @rate_limit(prefix, limit, window_seconds) decorator counts requests
per (prefix, client address) in fixed windows. Over the limit it raises
RateLimitedError (429), whose handler in app/__init__.py adds Retry-After.

Every limited response, allowed or not, carries:
  X-RateLimit-Limit, X-RateLimit-Remaining, X-RateLimit-Reset (epoch seconds)

State lives in this process only; a multi-process deployment needs a shared
store, which is outside this backend. Disabled when RATE_LIMIT_ENABLED is
false (the testing config).
"""

from __future__ import annotations

import functools
import math
import threading
import time
from dataclasses import dataclass
from typing import Callable

from flask import current_app, g, request

from backend.app.errors import RateLimitedError


@dataclass
class _Window:
    started_at: float
    count: int


@dataclass(frozen=True)
class RateLimitInfo:
    allowed: bool
    limit: int
    remaining: int
    reset_at: int
    retry_after: int


class FixedWindowLimiter:
    """Thread-safe counter of hits per key per window."""

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._windows: dict[str, _Window] = {}

    def hit(self, key: str, limit: int, window_seconds: int) -> RateLimitInfo:
        now = self._clock()
        with self._lock:
            window = self._windows.get(key)
            if window is None or now - window.started_at >= window_seconds:
                window = _Window(started_at=now, count=0)
                self._windows[key] = window
            window.count += 1
            count = window.count
            reset_at = window.started_at + window_seconds

        allowed = count <= limit
        return RateLimitInfo(
            allowed=allowed,
            limit=limit,
            remaining=max(0, limit - count),
            reset_at=int(math.ceil(reset_at)),
            retry_after=0 if allowed else max(1, int(math.ceil(reset_at - now))),
        )

    def reset(self) -> None:
        with self._lock:
            self._windows.clear()


limiter = FixedWindowLimiter()


def _client_address() -> str:
    return request.remote_addr or "unknown"


def _apply_headers(response, info: RateLimitInfo):
    response.headers["X-RateLimit-Limit"] = str(info.limit)
    response.headers["X-RateLimit-Remaining"] = str(info.remaining)
    response.headers["X-RateLimit-Reset"] = str(info.reset_at)
    return response


def rate_limit(prefix: str, limit: int, window_seconds: int = 60) -> Callable:
    """
    Usage:
        @auth_bp.route("/login", methods=["POST"])
        @rate_limit("login", limit=10, window_seconds=60)
        def login(): ...
    """
    def decorator(f: Callable) -> Callable:
        @functools.wraps(f)
        def decorated(*args, **kwargs):
            if not current_app.config.get("RATE_LIMIT_ENABLED", True):
                return f(*args, **kwargs)

            info = limiter.hit(f"{prefix}:{_client_address()}", limit, window_seconds)
            g.rate_limit_info = info
            if not info.allowed:
                current_app.logger.warning(
                    "Rate limit exceeded for %s from %s", prefix, _client_address()
                )
                raise RateLimitedError(info.retry_after)

            return f(*args, **kwargs)

        return decorated

    return decorator


def apply_rate_limit_headers(response):
    """after_request hook. Runs for error responses too, so a 401 or 429 still carries the headers."""
    info = getattr(g, "rate_limit_info", None)
    if info is not None:
        _apply_headers(response, info)
    return response
