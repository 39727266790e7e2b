from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional, Tuple, Union

from dota_scout.settings import DEFAULT_CACHE_TTLS

logger = logging.getLogger(__name__)


class CacheNamespace(str, Enum):
    TEAM_DATA = "TEAM_DATA"
    PLAYER_DATA = "PLAYER_DATA"
    MATCH_DATA = "MATCH_DATA"
    HERO_LIST = "HERO_LIST"
    ITEM_LIST = "ITEM_LIST"

    @classmethod
    def parse(cls, value: Union[str, "CacheNamespace"]) -> "CacheNamespace":
        if isinstance(value, CacheNamespace):
            return value
        try:
            return cls(str(value).strip().upper())
        except ValueError as exc:
            raise KeyError(f"Unknown cache namespace: {value}") from exc


CacheKey = Tuple[CacheNamespace, str]


def make_key(namespace: Union[str, CacheNamespace], entity_id: Any) -> CacheKey:
    return (CacheNamespace.parse(namespace), str(entity_id))


@dataclass(frozen=True)
class CacheEntry:
    key: CacheKey
    value: Any
    stored_at: float
    ttl_seconds: float

    def age(self, now: float) -> float:
        return now - self.stored_at

    def is_expired(self, now: float) -> bool:
        return self.age(now) > self.ttl_seconds


@dataclass
class CacheLookup:
    """Result of a cache read. ``hit`` is False for both misses and stale reads."""

    hit: bool
    value: Any = None
    stale: bool = False

    @property
    def found(self) -> bool:
        return self.hit or self.stale


class TTLCacheStore:
    """In-process keyed store with a TTL per namespace.

    Expiry is evaluated lazily on read. Expired entries stay in place so a
    caller can opt into serving them when a refresh fails.
    """

    def __init__(
        self,
        ttls: Optional[Mapping[str, int]] = None,
        max_entries: Optional[int] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        merged: Dict[str, int] = dict(DEFAULT_CACHE_TTLS)
        if ttls:
            merged.update({str(k).upper(): int(v) for k, v in ttls.items()})
        self._ttls: Dict[CacheNamespace, int] = {
            namespace: merged.get(namespace.value, 0) for namespace in CacheNamespace
        }
        self._max_entries = max_entries
        self._clock = clock
        self._entries: "OrderedDict[CacheKey, CacheEntry]" = OrderedDict()
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0
        self._stale_reads = 0
        self._evictions = 0

    def ttl_for(self, namespace: Union[str, CacheNamespace]) -> int:
        return self._ttls[CacheNamespace.parse(namespace)]

    def get(
        self,
        namespace: Union[str, CacheNamespace],
        entity_id: Any,
        allow_stale: bool = False,
    ) -> CacheLookup:
        key = make_key(namespace, entity_id)
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                logger.debug(f"[CACHE] miss {key[0].value}:{key[1]}")
                return CacheLookup(hit=False)
            if not entry.is_expired(now):
                self._hits += 1
                logger.debug(f"[CACHE] hit {key[0].value}:{key[1]}")
                return CacheLookup(hit=True, value=entry.value)
            self._misses += 1
            if not allow_stale:
                logger.debug(
                    f"[CACHE] expired {key[0].value}:{key[1]} "
                    f"(age {entry.age(now):.0f}s > {entry.ttl_seconds}s)"
                )
                return CacheLookup(hit=False)
            self._stale_reads += 1
            logger.info(f"[CACHE] stale read {key[0].value}:{key[1]}")
            return CacheLookup(hit=False, value=entry.value, stale=True)

    def set(
        self,
        namespace: Union[str, CacheNamespace],
        entity_id: Any,
        value: Any,
        ttl_seconds: Optional[float] = None,
    ) -> CacheEntry:
        key = make_key(namespace, entity_id)
        ttl = self._ttls[key[0]] if ttl_seconds is None else ttl_seconds
        entry = CacheEntry(key=key, value=value, stored_at=self._clock(), ttl_seconds=ttl)
        with self._lock:
            self._entries.pop(key, None)
            self._entries[key] = entry
            if self._max_entries is not None:
                while len(self._entries) > self._max_entries:
                    evicted, _ = self._entries.popitem(last=False)
                    self._evictions += 1
                    logger.info(f"[CACHE] evicted {evicted[0].value}:{evicted[1]}")
        return entry

    def invalidate(self, namespace: Union[str, CacheNamespace], entity_id: Any) -> bool:
        key = make_key(namespace, entity_id)
        with self._lock:
            removed = self._entries.pop(key, None) is not None
        if removed:
            logger.info(f"[CACHE] invalidated {key[0].value}:{key[1]}")
        return removed

    def invalidate_namespace(self, namespace: Union[str, CacheNamespace]) -> int:
        target = CacheNamespace.parse(namespace)
        with self._lock:
            keys = [key for key in self._entries if key[0] is target]
            for key in keys:
                del self._entries[key]
        logger.info(f"[CACHE] invalidated {len(keys)} entries in {target.value}")
        return len(keys)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._hits = 0
            self._misses = 0
            self._stale_reads = 0
            self._evictions = 0

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            per_namespace = {namespace.value: 0 for namespace in CacheNamespace}
            for key in self._entries:
                per_namespace[key[0].value] += 1
            return {
                "entries": len(self._entries),
                "hits": self._hits,
                "misses": self._misses,
                "stale_reads": self._stale_reads,
                "evictions": self._evictions,
                "namespaces": per_namespace,
                "ttls": {namespace.value: ttl for namespace, ttl in self._ttls.items()},
            }

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
