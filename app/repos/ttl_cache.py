"""TTL cache and the pattern/DNA stores built on it.

The cache holds a single immutable ``(value, written_at)`` entry; ``set``
swaps the whole entry, so a reader sees either the old or the new value.
Stores put the cache in front of an optional repository.  Without a
repository they run cache-only; repository errors are logged and the
store falls back to whatever the cache holds.
"""

import logging
import sqlite3
import time
from typing import Callable, Generic, Optional, TypeVar

from app.dna.models import DNAProfile
from app.patterns.models import MiningResult, Pattern

logger = logging.getLogger("surgescan.cache")

T = TypeVar("T")


class TTLCache(Generic[T]):
    """Single-value cache with a time-to-live.

    Args:
        ttl_seconds: Entry lifetime; ``get`` returns ``None`` afterwards.
        clock: Monotonic clock, injectable for tests.
    """

    def __init__(
        self,
        ttl_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl = ttl_seconds
        self._clock = clock
        self._entry: Optional[tuple[T, float]] = None

    def get(self, allow_stale: bool = False) -> Optional[T]:
        entry = self._entry
        if entry is None:
            return None
        value, written_at = entry
        if not allow_stale and self._clock() - written_at > self._ttl:
            return None
        return value

    def set(self, value: T) -> None:
        self._entry = (value, self._clock())

    def age(self) -> Optional[float]:
        """Seconds since the last ``set``, ``None`` when empty."""
        entry = self._entry
        return None if entry is None else self._clock() - entry[1]

    def clear(self) -> None:
        self._entry = None


class PatternStore:
    """Latest published ``MiningResult``: cache first, then repository."""

    def __init__(
        self,
        ttl_seconds: float,
        repo=None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._cache: TTLCache[MiningResult] = TTLCache(ttl_seconds, clock)
        self._repo = repo

    def load(self) -> Optional[MiningResult]:
        cached = self._cache.get()
        if cached is not None:
            return cached
        if self._repo is not None:
            try:
                stored = self._repo.load_patterns()
            except sqlite3.Error as exc:
                logger.warning("Pattern store read failed: %s", exc)
                stored = None
            if stored is not None:
                self._cache.set(stored)
                return stored
        return self._cache.get(allow_stale=True)

    def save(self, result: MiningResult) -> None:
        """Publish *result*, replacing the previous set wholesale."""
        if self._repo is not None:
            try:
                self._repo.save_patterns(result)
            except sqlite3.Error as exc:
                logger.warning("Pattern store write failed, cache only: %s", exc)
        self._cache.set(result)
        logger.info(
            "Published %d patterns from %s mining", len(result.patterns), result.miner
        )

    def patterns(self) -> list[Pattern]:
        """Published patterns, empty before the first mining run."""
        result = self.load()
        return list(result.patterns) if result is not None else []

    def age(self) -> Optional[float]:
        return self._cache.age()


class DnaStore:
    """Named DNA profiles: one cache entry per name, then repository."""

    def __init__(
        self,
        ttl_seconds: float,
        repo=None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl = ttl_seconds
        self._clock = clock
        self._repo = repo
        self._caches: dict[str, TTLCache[DNAProfile]] = {}

    def _cache(self, name: str) -> TTLCache[DNAProfile]:
        if name not in self._caches:
            self._caches[name] = TTLCache(self._ttl, self._clock)
        return self._caches[name]

    def load(self, name: str = "default") -> Optional[DNAProfile]:
        cache = self._cache(name)
        cached = cache.get()
        if cached is not None:
            return cached
        if self._repo is not None:
            try:
                stored = self._repo.load_profile(name)
            except sqlite3.Error as exc:
                logger.warning("DNA store read failed: %s", exc)
                stored = None
            if stored is not None:
                cache.set(stored)
                return stored
        return cache.get(allow_stale=True)

    def save(self, profile: DNAProfile, name: str = "default") -> None:
        if self._repo is not None:
            try:
                self._repo.save_profile(name, profile)
            except sqlite3.Error as exc:
                logger.warning("DNA store write failed, cache only: %s", exc)
        self._cache(name).set(profile)
        logger.info("Saved DNA profile '%s' (%d exemplars)", name, profile.based_on)
