from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable, Generic, Hashable, TypeVar

_K = TypeVar("_K", bound=Hashable)
_V = TypeVar("_V")


@dataclass
class _Entry(Generic[_V]):
    value: _V
    expires_at: float


class _InFlight(Generic[_V]):
    def __init__(self) -> None:
        self.done = threading.Event()
        self.value: _V | None = None
        self.error: BaseException | None = None


class TtlCache(Generic[_K, _V]):
    """Get-or-compute cache with wall-clock expiry and single-flight loads.

    Concurrent misses for the same key share one computation. Failed
    computations are not cached; every waiter sees the same exception.
    """

    def __init__(
        self,
        ttl_seconds: float,
        *,
        max_entries: int = 10_000,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[_K, _Entry[_V]] = {}
        self._in_flight: dict[_K, _InFlight[_V]] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def get(self, key: _K) -> _V | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.expires_at <= self._clock():
                del self._entries[key]
                return None
            return entry.value

    def get_or_compute(self, key: _K, compute: Callable[[], _V]) -> _V:
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and entry.expires_at > self._clock():
                return entry.value
            flight = self._in_flight.get(key)
            leader = flight is None
            if flight is None:
                flight = _InFlight()
                self._in_flight[key] = flight

        if not leader:
            flight.done.wait()
            if flight.error is not None:
                raise flight.error
            return flight.value  # type: ignore[return-value]

        try:
            value = compute()
        except BaseException as exc:
            flight.error = exc
            with self._lock:
                self._in_flight.pop(key, None)
            flight.done.set()
            raise

        flight.value = value
        with self._lock:
            self._store(key, value)
            self._in_flight.pop(key, None)
        flight.done.set()
        return value

    def invalidate(self, key: _K) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def _store(self, key: _K, value: _V) -> None:
        now = self._clock()
        if len(self._entries) >= self.max_entries:
            expired = [k for k, e in self._entries.items() if e.expires_at <= now]
            for stale in expired:
                del self._entries[stale]
            while len(self._entries) >= self.max_entries:
                del self._entries[next(iter(self._entries))]
        self._entries[key] = _Entry(value=value, expires_at=now + self.ttl_seconds)
