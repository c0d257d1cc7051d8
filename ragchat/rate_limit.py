"""
Per-client admission control.

Fixed-window counter keyed by client address: each client gets `limit`
requests per window; the window restarts lazily on the first request after
it has expired. O(1) memory per client and O(1) work per request under one
lock. Expired clients are swept every `prune_every` admissions. A burst
of up to 2x limit is possible across a window boundary.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from threading import Lock
from typing import Callable, Dict, Mapping, NamedTuple, Optional

from loguru import logger


@dataclass
class _ClientState:
    count: int
    reset_at: float


class Admission(NamedTuple):
    allowed: bool
    remaining: int
    reset_at: float


class RateLimiter:
    """Thread-safe fixed-window limiter. `clock` returns seconds (monotonic by default)."""

    def __init__(
        self,
        limit: int,
        window_seconds: float,
        clock: Callable[[], float] = time.monotonic,
        prune_every: int = 1000,
    ):
        if limit <= 0:
            raise ValueError("limit must be positive")
        if window_seconds <= 0:
            raise ValueError("window must be positive")
        self.limit = limit
        self.window = window_seconds
        self._clock = clock
        self._clients: Dict[str, _ClientState] = {}
        self.prune_every = max(prune_every, 1)
        self._calls = 0
        self._lock = Lock()

    def allow(self, client: str) -> bool:
        return self.allow_with_status(client).allowed

    def allow_with_status(self, client: str) -> Admission:
        """
        Count one request for client.

        An empty client identity is denied outright.
        """
        if not client:
            return Admission(False, 0, self._clock())

        with self._lock:
            now = self._clock()
            self._calls += 1
            if self._calls % self.prune_every == 0:
                self._prune_locked(now)
            st = self._clients.get(client)
            if st is None or now > st.reset_at:
                reset_at = now + self.window
                self._clients[client] = _ClientState(count=1, reset_at=reset_at)
                return Admission(True, max(self.limit - 1, 0), reset_at)
            if st.count >= self.limit:
                return Admission(False, 0, st.reset_at)
            st.count += 1
            return Admission(True, max(self.limit - st.count, 0), st.reset_at)

    def seconds_until(self, reset_at: float) -> int:
        return max(int(round(reset_at - self._clock())), 0)

    def prune(self) -> int:
        """Forget clients whose window has expired. Returns how many were removed."""
        with self._lock:
            return self._prune_locked(self._clock())

    def _prune_locked(self, now: float) -> int:
        stale = [k for k, st in self._clients.items() if now > st.reset_at]
        for k in stale:
            del self._clients[k]
        if stale:
            logger.debug(f"Rate limiter pruned {len(stale)} idle clients")
        return len(stale)

    def __len__(self) -> int:
        with self._lock:
            return len(self._clients)


def client_ip(headers: Mapping[str, str], remote_addr: Optional[str]) -> str:
    """
    Resolve the client identity: first X-Forwarded-For entry, then
    X-Real-IP, then the connection address (port stripped).
    """
    forwarded = (headers.get("x-forwarded-for") or "").strip()
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = (headers.get("x-real-ip") or "").strip()
    if real_ip:
        return real_ip
    return _strip_port(remote_addr or "")


def _strip_port(addr: str) -> str:
    addr = addr.strip()
    if addr.startswith("["):
        end = addr.find("]")
        return addr[1:end] if end > 0 else addr
    if addr.count(":") == 1:
        return addr.split(":", 1)[0]
    return addr
