"""
Timestamped caches for expensive lookups.

A cache holds one JSON-serializable value per key in memory and, when given
a directory, mirrors it to disk. Staleness is judged against a caller
supplied "now", never the wall clock.
"""

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CacheEntry:
    """A cached value and when it was stored."""
    data: Any
    stored_at: datetime

    def is_fresh(self, now: datetime, ttl: timedelta) -> bool:
        return now - self.stored_at < ttl


class TTLCache:
    """In-memory cache with optional on-disk persistence.

    No locking: one invocation owns the cache. A long-running host would
    need a single-writer guard around recomputation.
    """

    def __init__(self, ttl: timedelta, directory: Optional[Path] = None):
        """Initialize the cache.

        Args:
            ttl: Age after which an entry is stale
            directory: Where to persist entries as ``<key>.json`` (memory only if None)
        """
        self.ttl = ttl
        self.directory = Path(directory) if directory is not None else None
        self._memory: Dict[str, CacheEntry] = {}

    def get(self, key: str, now: datetime) -> Optional[Any]:
        """Return a fresh value from memory, then disk, or None."""
        entry = self._memory.get(key)
        if entry is not None and entry.is_fresh(now, self.ttl):
            return entry.data

        entry = self.load_disk(key)
        if entry is not None and entry.is_fresh(now, self.ttl):
            self._memory[key] = entry
            return entry.data
        return None

    def get_stale(self, key: str) -> Optional[Any]:
        """Return whatever is stored for ``key``, regardless of age."""
        entry = self._memory.get(key) or self.load_disk(key)
        return entry.data if entry is not None else None

    def set(self, key: str, data: Any, now: datetime) -> None:
        entry = CacheEntry(data=data, stored_at=now)
        self._memory[key] = entry
        self._save_disk(key, entry)

    def invalidate(self, key: str) -> None:
        """Drop ``key`` from memory and disk."""
        self._memory.pop(key, None)
        path = self._path(key)
        if path is None:
            return
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.debug("Failed to remove cache file %s: %s", path, e)

    def load_disk(self, key: str) -> Optional[CacheEntry]:
        path = self._path(key)
        if path is None:
            return None
        try:
            with open(path, "r", encoding="utf-8") as f:
                raw = json.load(f)
        except (OSError, ValueError):
            return None

        if not isinstance(raw, dict) or "data" not in raw or not isinstance(raw.get("timestamp"), (int, float)):
            return None
        stored_at = datetime.fromtimestamp(raw["timestamp"], tz=timezone.utc)
        return CacheEntry(data=raw["data"], stored_at=stored_at)

    def _save_disk(self, key: str, entry: CacheEntry) -> None:
        path = self._path(key)
        if path is None:
            return
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "w", encoding="utf-8") as f:
                json.dump({"data": entry.data, "timestamp": entry.stored_at.timestamp()}, f)
        except (OSError, TypeError) as e:
            logger.debug("Failed to write cache file %s: %s", path, e)

    def _path(self, key: str) -> Optional[Path]:
        if self.directory is None:
            return None
        return self.directory / f"{key}.json"
