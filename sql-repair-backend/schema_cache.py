"""
Schema Cache for table column metadata
Keeps inspector results per (schema, table) with TTL and LRU eviction
"""

import logging
import threading
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Tuple

logger = logging.getLogger(__name__)

TableKey = Tuple[str, str]


@dataclass
class SchemaEntry:
    """Columns of one table plus bookkeeping"""
    key: TableKey
    columns: Any
    loaded_at: datetime
    last_used: datetime
    reads: int
    ttl_seconds: int

    def is_stale(self, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now()
        return (now - self.loaded_at).total_seconds() > self.ttl_seconds


class SchemaCache:
    """
    Thread-safe LRU cache with TTL for table schemas.

    Keys are case-insensitive (schema, table) pairs, matching SQL Server's
    default collation for identifiers. Two threads loading the same table at
    once both hit the database; the last write wins.
    """

    def __init__(self, max_size: int = 500, default_ttl: int = 3600):
        """
        Args:
            max_size: Maximum number of cached tables
            default_ttl: Seconds before a cached schema is reloaded
        """
        self.max_size = max_size
        self.default_ttl = default_ttl
        self._entries: "OrderedDict[TableKey, SchemaEntry]" = OrderedDict()
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0
        self._evictions = 0
        self._expirations = 0

    @staticmethod
    def _key(schema: str, table: str) -> TableKey:
        return (schema or "").lower(), table.lower()

    def get(self, schema: str, table: str) -> Optional[Any]:
        """Cached columns for schema.table, or None if missing or stale"""
        key = self._key(schema, table)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return None

            now = datetime.now()
            if entry.is_stale(now):
                logger.debug(f"[SCHEMA_CACHE] Stale entry dropped: {schema}.{table}")
                del self._entries[key]
                self._misses += 1
                self._expirations += 1
                return None

            entry.last_used = now
            entry.reads += 1
            self._entries.move_to_end(key)
            self._hits += 1
            return entry.columns

    def set(self, schema: str, table: str, columns: Any, ttl: Optional[int] = None):
        """Store columns for schema.table; ttl overrides default_ttl"""
        key = self._key(schema, table)
        now = datetime.now()
        with self._lock:
            if key not in self._entries and len(self._entries) >= self.max_size:
                oldest, _ = self._entries.popitem(last=False)
                self._evictions += 1
                logger.debug(f"[SCHEMA_CACHE] Evicted {'.'.join(oldest)}")

            self._entries[key] = SchemaEntry(
                key=key,
                columns=columns,
                loaded_at=now,
                last_used=now,
                reads=0,
                ttl_seconds=self.default_ttl if ttl is None else ttl,
            )
            self._entries.move_to_end(key)

    def get_or_load(self, schema: str, table: str, loader: Callable[[], Any]) -> Any:
        """Return the cached columns or call loader() and cache its result."""
        cached = self.get(schema, table)
        if cached is not None:
            return cached
        columns = loader()
        self.set(schema, table, columns)
        return columns

    def invalidate(self, schema: str, table: str):
        """Drop one table, e.g. after DDL"""
        with self._lock:
            if self._entries.pop(self._key(schema, table), None) is not None:
                logger.debug(f"[SCHEMA_CACHE] Invalidated {schema}.{table}")

    def clear(self):
        with self._lock:
            dropped = len(self._entries)
            self._entries.clear()
        logger.info(f"[SCHEMA_CACHE] Cleared {dropped} table schema(s)")

    def cleanup_expired(self) -> int:
        """Drop every stale entry and return how many were dropped"""
        now = datetime.now()
        with self._lock:
            stale = [key for key, entry in self._entries.items() if entry.is_stale(now)]
            for key in stale:
                del self._entries[key]
            self._expirations += len(stale)

        if stale:
            logger.info(f"[SCHEMA_CACHE] Dropped {len(stale)} stale table schema(s)")
        return len(stale)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            lookups = self._hits + self._misses
            return {
                "cached_tables": len(self._entries),
                "max_size": self.max_size,
                "utilization": len(self._entries) / self.max_size if self.max_size else 0,
                "hits": self._hits,
                "misses": self._misses,
                "hit_rate": self._hits / lookups if lookups else 0,
                "evictions": self._evictions,
                "expirations": self._expirations,
            }
