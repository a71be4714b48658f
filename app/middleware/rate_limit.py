from __future__ import annotations

import math
import threading
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol

from fastapi.responses import JSONResponse
from jose import JWTError, jwt
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.types import ASGIApp

from app.context import get_correlation_id
from app.core.config import get_settings


class RateLimitStore(Protocol):
    def take(self, key: tuple[str, str], capacity: int, window_seconds: int) -> tuple[bool, int]:
        ...

    def clear(self) -> None:
        ...


@dataclass
class _BucketState:
    tokens: float
    last_refill: float


class InMemoryRateLimitStore:
    """Token buckets per (user, route group); buckets untouched for idle_ttl_seconds are evicted."""

    def __init__(self, idle_ttl_seconds: int = 600, clock: Callable[[], float] = time.monotonic) -> None:
        self.idle_ttl_seconds = idle_ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._buckets: dict[tuple[str, str], _BucketState] = {}

    def take(self, key: tuple[str, str], capacity: int, window_seconds: int) -> tuple[bool, int]:
        if capacity <= 0:
            return False, window_seconds

        now = self._clock()
        refill_rate = capacity / float(window_seconds)

        with self._lock:
            self._evict_idle(now)
            current = self._buckets.get(key)
            if current is None:
                current = _BucketState(tokens=float(capacity), last_refill=now)
                self._buckets[key] = current

            elapsed = max(0.0, now - current.last_refill)
            current.tokens = min(float(capacity), current.tokens + (elapsed * refill_rate))
            current.last_refill = now

            if current.tokens < 1.0:
                retry_after = max(1, math.ceil((1.0 - current.tokens) / refill_rate))
                return False, retry_after

            current.tokens -= 1.0
            return True, 0

    def clear(self) -> None:
        with self._lock:
            self._buckets.clear()

    def __len__(self) -> int:
        return len(self._buckets)

    def _evict_idle(self, now: float) -> None:
        expired = [key for key, state in self._buckets.items() if now - state.last_refill > self.idle_ttl_seconds]
        for key in expired:
            del self._buckets[key]


class MutationRateLimitMiddleware(BaseHTTPMiddleware):
    mutating_methods = {"POST", "PATCH", "PUT", "DELETE"}

    def __init__(self, app: ASGIApp, store: RateLimitStore, path_prefix: str = "/api/automation") -> None:
        super().__init__(app)
        self.store = store
        self.path_prefix = path_prefix

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        settings = get_settings()
        if settings.rate_limit_disabled:
            return await call_next(request)

        path = request.url.path
        if not path.startswith(self.path_prefix) or request.method.upper() not in self.mutating_methods:
            return await call_next(request)

        allowed, retry_after = self.store.take(
            (_resolve_user_id(request), _resolve_route_group(path)),
            capacity=settings.rate_limit_mutations_per_minute,
            window_seconds=60,
        )
        if allowed:
            return await call_next(request)

        correlation_id = (
            get_correlation_id()
            or getattr(request.state, "correlation_id", None)
            or request.headers.get("x-correlation-id")
            or str(uuid.uuid4())
        )
        response = JSONResponse(
            status_code=429,
            content={
                "code": "RATE_LIMITED",
                "message": "Too many requests",
                "details": None,
                "correlation_id": correlation_id,
            },
        )
        response.headers["Retry-After"] = str(retry_after)
        response.headers["X-Correlation-Id"] = correlation_id
        return response


def _resolve_route_group(path: str) -> str:
    # /api/automation/<group>/...
    parts = [part for part in path.split("/") if part]
    if len(parts) < 3:
        return "automation"
    return parts[2]


def _resolve_user_id(request: Request) -> str:
    auth_header = request.headers.get("authorization", "")
    token = auth_header.removeprefix("Bearer ").strip() if auth_header.startswith("Bearer ") else ""
    if not token:
        return "anonymous"

    settings = get_settings()
    try:
        payload: dict[str, Any] = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return "anonymous"

    subject = payload.get("sub")
    return str(subject) if subject is not None else "anonymous"
