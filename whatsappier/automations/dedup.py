"""Idempotency window for dispatched events.

A claim is an atomic create-if-absent on the key
``automation:event_kind:correlation_key``. Claims are never released when a
dispatch fails; a retransmitted webhook inside the window is dropped even if
the first attempt did not succeed.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from typing import Protocol

import redis

from .models import TriggerEvent

logger = logging.getLogger(__name__)


def dedup_key(automation_id: str, event: TriggerEvent) -> str:
    return f"{automation_id}:{event.kind.value}:{event.correlation_key}"


class DedupWindow(Protocol):
    def claim(self, key: str) -> bool:
        """Return ``True`` when ``key`` was not seen inside the window."""


class InMemoryDedupWindow:
    """Process-local window guarded by a lock."""

    def __init__(
        self,
        ttl_seconds: float,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._expiries: dict[str, float] = {}
        self._lock = threading.Lock()

    def claim(self, key: str) -> bool:
        now = self._clock()
        with self._lock:
            expires_at = self._expiries.get(key)
            if expires_at is not None and expires_at > now:
                return False
            self._expiries[key] = now + self.ttl_seconds
            if len(self._expiries) > 1024:
                self._purge(now)
            return True

    def _purge(self, now: float) -> None:
        stale = [k for k, exp in self._expiries.items() if exp <= now]
        for key in stale:
            del self._expiries[key]

    def __len__(self) -> int:
        with self._lock:
            self._purge(self._clock())
            return len(self._expiries)


class RedisDedupWindow:
    """Window shared across processes through ``SET key 1 NX EX ttl``."""

    def __init__(
        self,
        client: redis.Redis,
        ttl_seconds: int,
        *,
        prefix: str = "whatsappier:dedup:",
    ) -> None:
        self.client = client
        self.ttl_seconds = int(ttl_seconds)
        self.prefix = prefix

    @classmethod
    def from_url(cls, url: str, ttl_seconds: int) -> "RedisDedupWindow":
        return cls(redis.Redis.from_url(url), ttl_seconds)

    def claim(self, key: str) -> bool:
        created = self.client.set(
            f"{self.prefix}{key}", 1, nx=True, ex=max(self.ttl_seconds, 1)
        )
        return bool(created)


def create_dedup_window(redis_url: str | None, ttl_seconds: int) -> DedupWindow:
    if redis_url:
        logger.info("Using Redis dedup window (ttl=%ss)", ttl_seconds)
        return RedisDedupWindow.from_url(redis_url, ttl_seconds)
    return InMemoryDedupWindow(ttl_seconds)


__all__ = [
    "DedupWindow",
    "InMemoryDedupWindow",
    "RedisDedupWindow",
    "create_dedup_window",
    "dedup_key",
]
