"""In-process TTL cache with single-flight misses and mutation fencing.

Each key belongs to a *scope* (for the status cache the scope is the
(employee, date) pair, for the leave cache it is the employee). Mutations run
inside ``mutating(scope)``:

* while the fence is up, reads for that scope go straight to ``compute`` and
  their results are never stored;
* entering and leaving the fence drops the scope's entries and in-flight
  computations. A computation only stores its result while it is still the
  registered flight for its key, so one that started before the mutation cannot
  populate the cache afterwards.

Concurrent misses on one key share a single ``concurrent.futures.Future``.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import Counter
from collections.abc import Callable, Hashable, Iterator
from concurrent.futures import Future
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")

logger = logging.getLogger("attendance_core.cache")


@dataclass
class _Entry(Generic[V]):
    value: V
    expires_at: float


class SingleFlightCache(Generic[K, V]):
    def __init__(
        self,
        name: str,
        ttl_seconds: float,
        *,
        scope_of: Callable[[K], Hashable] | None = None,
        max_entries: int = 10_000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._scope_of = scope_of or (lambda key: key)
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[K, _Entry[V]] = {}
        self._inflight: dict[K, Future[V]] = {}
        self._fenced: Counter[Hashable] = Counter()
        self._fenced_all = 0
        self._counters: Counter[str] = Counter()

    def get_or_compute(self, key: K, compute: Callable[[], V]) -> V:
        scope = self._scope_of(key)
        with self._lock:
            if not self._is_fenced_locked(scope):
                entry = self._entries.get(key)
                if entry is not None:
                    if entry.expires_at > self._clock():
                        self._counters["hits"] += 1
                        return entry.value
                    del self._entries[key]

                flight = self._inflight.get(key)
                if flight is not None:
                    self._counters["shared"] += 1
                    waiter = flight
                else:
                    waiter = None
                    flight = Future()
                    self._inflight[key] = flight
            else:
                waiter = None
                flight = None
            self._counters["misses"] += 1

        if waiter is not None:
            return waiter.result()

        try:
            value = compute()
        except BaseException as exc:
            if flight is not None:
                with self._lock:
                    if self._inflight.get(key) is flight:
                        del self._inflight[key]
                flight.set_exception(exc)
            raise

        if flight is None:
            return value

        with self._lock:
            # Invalidation unregisters the flight, so only a flight that is
            # still current may store its result.
            if self._inflight.get(key) is flight and not self._is_fenced_locked(scope):
                del self._inflight[key]
                if len(self._entries) >= self.max_entries:
                    self._purge_expired_locked()
                self._entries[key] = _Entry(value=value, expires_at=self._clock() + self.ttl_seconds)
            else:
                self._counters["discarded"] += 1
        flight.set_result(value)
        return value

    def peek(self, key: K) -> V | None:
        scope = self._scope_of(key)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or self._is_fenced_locked(scope) or entry.expires_at <= self._clock():
                return None
            return entry.value

    def invalidate(self, scope: Hashable) -> int:
        with self._lock:
            removed = self._invalidate_locked(scope)
        logger.info("cache_invalidated", extra={"cache": self.name, "scope": repr(scope), "removed": removed})
        return removed

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._inflight.clear()
        logger.info("cache_cleared", extra={"cache": self.name})

    @contextmanager
    def mutating(self, scope: Hashable) -> Iterator[None]:
        with self._lock:
            self._fenced[scope] += 1
            self._invalidate_locked(scope)
        try:
            yield
        finally:
            with self._lock:
                self._fenced[scope] -= 1
                if self._fenced[scope] <= 0:
                    del self._fenced[scope]
                self._invalidate_locked(scope)

    @contextmanager
    def mutating_all(self) -> Iterator[None]:
        """Fence every scope, for mutations that every cached value depends on."""
        with self._lock:
            self._fenced_all += 1
            self._entries.clear()
            self._inflight.clear()
        try:
            yield
        finally:
            with self._lock:
                self._fenced_all -= 1
                self._entries.clear()
                self._inflight.clear()
        logger.info("cache_cleared", extra={"cache": self.name})

    def stats(self) -> dict[str, Any]:
        with self._lock:
            now = self._clock()
            live = sum(1 for entry in self._entries.values() if entry.expires_at > now)
            return {
                "name": self.name,
                "ttl_seconds": self.ttl_seconds,
                "entries": len(self._entries),
                "live_entries": live,
                "inflight": len(self._inflight),
                "fenced_scopes": len(self._fenced),
                "hits": self._counters["hits"],
                "misses": self._counters["misses"],
                "shared": self._counters["shared"],
                "discarded": self._counters["discarded"],
            }

    def _is_fenced_locked(self, scope: Hashable) -> bool:
        return self._fenced_all > 0 or self._fenced[scope] > 0

    def _invalidate_locked(self, scope: Hashable) -> int:
        stale_keys = [key for key in self._entries if self._scope_of(key) == scope]
        for key in stale_keys:
            del self._entries[key]
        for key in [key for key in self._inflight if self._scope_of(key) == scope]:
            del self._inflight[key]
        return len(stale_keys)

    def _purge_expired_locked(self) -> None:
        now = self._clock()
        for key in [key for key, entry in self._entries.items() if entry.expires_at <= now]:
            del self._entries[key]
