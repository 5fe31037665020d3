"""Process-wide TTL cache of per-user net worth snapshots."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
import threading
import time
from typing import Any

import loguru
from loguru import logger

from ledgersync.models.sync import NetWorthSnapshot

DEFAULT_TTL_SECONDS = 300.0


@dataclass(slots=True)
class _Entry:
    snapshot: NetWorthSnapshot
    expires_at: float


@dataclass(slots=True)
class _Flight:
    """One in-progress computation that concurrent warm() calls wait on."""

    generation: int
    done: threading.Event = field(default_factory=threading.Event)
    result: NetWorthSnapshot | None = None
    error: BaseException | None = None


class NetWorthCacheLogger:
    def __init__(self, logger_instance: loguru.Logger = logger) -> None:
        self._logger = logger_instance

    def invalidated(self, user_id: str) -> None:
        self._logger.bind(user_id=user_id).debug(
            "Invalidated net worth cache for user {}", user_id
        )

    def recomputed(self, user_id: str, elapsed: float) -> None:
        self._logger.bind(user_id=user_id, elapsed=elapsed).debug(
            "Recomputed net worth for user {} in {:.3f}s", user_id, elapsed
        )

    def discarded_stale(self, user_id: str) -> None:
        self._logger.bind(user_id=user_id).debug(
            "Discarded net worth computed before an invalidation for user {}",
            user_id,
        )


class NetWorthCache:
    """TTL cache keyed by user id, safe to share across threads and runs.

    ``invalidate`` always wins over the TTL: after it returns, ``get`` misses
    until a fresh ``warm`` completes. A computation that started before the
    invalidation is returned to its callers but never stored.
    """

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        *,
        clock: Callable[[], float] = time.monotonic,
        logger: NetWorthCacheLogger | None = None,
    ) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self._ttl = ttl_seconds
        self._clock = clock
        self._logger = logger or NetWorthCacheLogger()
        self._lock = threading.Lock()
        self._entries: dict[str, _Entry] = {}
        self._flights: dict[str, _Flight] = {}
        self._generations: dict[str, int] = {}
        self._hits = 0
        self._misses = 0
        self._computations = 0

    def get(self, user_id: str) -> NetWorthSnapshot | None:
        with self._lock:
            return self._get_locked(user_id)

    def _get_locked(self, user_id: str) -> NetWorthSnapshot | None:
        entry = self._entries.get(user_id)
        if entry is None:
            self._misses += 1
            return None
        if self._clock() >= entry.expires_at:
            del self._entries[user_id]
            self._misses += 1
            return None
        self._hits += 1
        return entry.snapshot

    def invalidate(self, user_id: str) -> bool:
        """Drop the user's entry. Returns True if one was cached."""
        with self._lock:
            self._generations[user_id] = self._generations.get(user_id, 0) + 1
            removed = self._entries.pop(user_id, None) is not None
        self._logger.invalidated(user_id)
        return removed

    def invalidate_all(self) -> None:
        with self._lock:
            for user_id in set(self._entries) | set(self._flights):
                self._generations[user_id] = self._generations.get(user_id, 0) + 1
            self._entries.clear()

    def warm(
        self,
        user_id: str,
        compute: Callable[[], NetWorthSnapshot],
    ) -> NetWorthSnapshot:
        """Return the cached snapshot, computing it at most once per key at a time.

        Concurrent callers for the same user share the leader's result (or
        its exception).
        """
        with self._lock:
            cached = self._get_locked(user_id)
            if cached is not None:
                return cached
            flight = self._flights.get(user_id)
            leader = flight is None
            if flight is None:
                flight = _Flight(generation=self._generations.get(user_id, 0))
                self._flights[user_id] = flight

        if not leader:
            flight.done.wait()
            if flight.error is not None:
                raise flight.error
            assert flight.result is not None
            return flight.result

        started = time.monotonic()
        try:
            snapshot = compute()
        except BaseException as e:
            flight.error = e
            raise
        else:
            flight.result = snapshot
            self._logger.recomputed(user_id, time.monotonic() - started)
            with self._lock:
                self._computations += 1
                if self._generations.get(user_id, 0) == flight.generation:
                    self._entries[user_id] = _Entry(
                        snapshot=snapshot, expires_at=self._clock() + self._ttl
                    )
                else:
                    self._logger.discarded_stale(user_id)
            return snapshot
        finally:
            with self._lock:
                if self._flights.get(user_id) is flight:
                    del self._flights[user_id]
            flight.done.set()

    def cleanup(self) -> int:
        """Remove expired entries. Returns the number removed."""
        now = self._clock()
        with self._lock:
            expired = [k for k, e in self._entries.items() if now >= e.expires_at]
            for key in expired:
                del self._entries[key]
        return len(expired)

    def stats(self) -> dict[str, Any]:
        with self._lock:
            return {
                "size": len(self._entries),
                "hits": self._hits,
                "misses": self._misses,
                "computations": self._computations,
                "in_flight": len(self._flights),
                "ttl_seconds": self._ttl,
            }
