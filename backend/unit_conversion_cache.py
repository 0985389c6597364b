# backend/unit_conversion_cache.py

"""
Cache layer for unit conversion lookups.

Two tiers:
1) Cross-request cache (CacheBackend) keyed by deterministic strings:
     <prefix>unit_<code>               unit definitions (TTL only)
     <prefix>entity_<type>_<id>        entity conversion maps (TTL + explicit forget)
2) Request-scoped memoization held in a ContextVar. Only active inside
   `with request_scope():`; outside a scope every call goes to tier 1.

Explicit invalidation is the correctness mechanism for entity maps. TTL is
only a staleness bound.
"""

from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Awaitable, Callable, Dict, Iterator, Optional, Tuple
import logging
import threading
import time

from unit_conversion_config import CacheSettings
from unit_conversion_models import EntityRef

logger = logging.getLogger(__name__)

Producer = Callable[[], Awaitable[Any]]

_MISSING = object()


# ==================== CACHE BACKENDS ====================

class CacheBackend:
    """Cross-request cache port"""

    async def get(self, key: str, default: Any = None) -> Any:
        raise NotImplementedError

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        raise NotImplementedError

    async def forget(self, key: str) -> bool:
        raise NotImplementedError

    async def remember(self, key: str, ttl: Optional[int], producer: Producer) -> Any:
        """Return cached value, or produce, store and return it. None is never stored."""
        value = await self.get(key, _MISSING)
        if value is not _MISSING:
            return value

        value = await producer()
        if value is not None:
            await self.set(key, value, ttl)
        return value


class MemoryCache(CacheBackend):
    """
    In-process TTL cache.

    ttl=None stores without expiry, ttl<=0 does not store at all.
    Thread-safe so it can be shared by workers of one process.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._entries: Dict[str, Tuple[Any, Optional[float]]] = {}
        self._lock = threading.RLock()

    async def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return default
            value, expires_at = entry
            if expires_at is not None and self._clock() >= expires_at:
                del self._entries[key]
                return default
            return value

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        if ttl is not None and ttl <= 0:
            return
        expires_at = None if ttl is None else self._clock() + ttl
        with self._lock:
            self._entries[key] = (value, expires_at)

    async def forget(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __contains__(self, key: str) -> bool:
        with self._lock:
            entry = self._entries.get(key)
            return entry is not None and (entry[1] is None or self._clock() < entry[1])


# ==================== REQUEST SCOPE ====================

_request_memo: ContextVar[Optional[Dict[str, Any]]] = ContextVar(
    "unit_conversion_request_memo", default=None
)


@contextmanager
def request_scope() -> Iterator[Dict[str, Any]]:
    """Open a fresh memoization scope for one logical request/operation"""
    memo: Dict[str, Any] = {}
    token = _request_memo.set(memo)
    try:
        yield memo
    finally:
        _request_memo.reset(token)


async def once(key: str, producer: Producer) -> Any:
    """Memoize producer's result for the current request scope"""
    memo = _request_memo.get()
    if memo is None:
        return await producer()
    if key in memo:
        return memo[key]
    value = await producer()
    memo[key] = value
    return value


def forget_once(key: str) -> None:
    memo = _request_memo.get()
    if memo is not None:
        memo.pop(key, None)


# ==================== CONVERSION CACHE ====================

class UnitConversionCache:
    """
    Key building and the two-tier discipline on top of a CacheBackend.

    Each entity key carries an in-process generation, bumped on every forget.
    A map produced while the generation moved is returned to its caller but
    not stored, so a read that started before an expansion committed cannot
    put the old map back after the expansion forgot it.
    """

    def __init__(self, backend: Optional[CacheBackend] = None, settings: Optional[CacheSettings] = None):
        self.backend = backend or MemoryCache()
        self.settings = settings or CacheSettings()
        self._generations: Dict[str, int] = {}

    # Keys

    def unit_key(self, code: str) -> str:
        return f"{self.settings.prefix}unit_{code}"

    def entity_key(self, entity: EntityRef) -> str:
        return f"{self.settings.prefix}entity_{entity.cache_fragment()}"

    def generation(self, entity: EntityRef) -> int:
        return self._generations.get(self.entity_key(entity), 0)

    # Units (TTL only)

    async def remember_unit(self, code: str, producer: Producer) -> Any:
        if not self.settings.enabled:
            return await producer()
        return await self.backend.remember(self.unit_key(code), self.settings.ttl, producer)

    async def forget_unit(self, code: str) -> bool:
        return await self.backend.forget(self.unit_key(code))

    # Entity conversion maps

    async def remember_conversion_map(self, entity: EntityRef, producer: Producer) -> Dict[str, Dict[str, float]]:
        """
        Cached conversion map of entity.

        The returned dict is the cached object itself; callers must not mutate it.
        """
        key = self.entity_key(entity)

        async def cross_request() -> Dict[str, Dict[str, float]]:
            if not self.settings.enabled:
                return await producer()

            cached = await self.backend.get(key, _MISSING)
            if cached is not _MISSING:
                return cached

            generation = self._generations.get(key, 0)
            value = await producer()
            if value is not None and self._generations.get(key, 0) == generation:
                await self.backend.set(key, value, self.settings.effective_entity_ttl)
            elif value is not None:
                logger.debug(f"Skipped caching stale conversion map for {key}")
            return value

        return await once(key, cross_request)

    async def forget_conversion_map(self, entity: EntityRef) -> None:
        key = self.entity_key(entity)
        self._generations[key] = self._generations.get(key, 0) + 1
        forget_once(key)
        await self.backend.forget(key)
        logger.debug(f"Forgot conversion map cache for {key}")
