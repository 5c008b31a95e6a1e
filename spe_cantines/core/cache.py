"""Bounded key/value caches for geocoding lookups.

Entries are write-once: a key that is already present is never overwritten,
so concurrent writers of distinct keys cannot clobber each other. When the
cache grows past its capacity the oldest entries are evicted first.
"""

from __future__ import annotations

import json
import logging
import threading
from collections import OrderedDict
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, Optional

logger = logging.getLogger(__name__)

DEFAULT_CAPACITY = 5000


class BoundedCache:
    """In-memory write-once cache with FIFO eviction."""

    def __init__(self, capacity: int = DEFAULT_CAPACITY) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self._entries: "OrderedDict[str, Any]" = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            return self._entries.get(key)

    def put(self, key: str, value: Any) -> bool:
        """Store value under key; returns False when the key already exists."""
        with self._lock:
            if key in self._entries:
                return False
            self._entries[key] = value
            while len(self._entries) > self.capacity:
                evicted, _ = self._entries.popitem(last=False)
                logger.debug("Evicted cache entry %s", evicted)
        self._on_write()
        return True

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __iter__(self) -> Iterator[str]:
        with self._lock:
            return iter(list(self._entries))

    def flush(self) -> None:
        """Persist pending writes; a no-op for the in-memory cache."""

    def _on_write(self) -> None:
        """Hook for persistent adapters."""


class JsonFileCache(BoundedCache):
    """Cache adapter mirrored to a JSON file.

    Writes only mark the cache dirty; `flush` rewrites the file once. The file
    is reloaded by the next process pointed at the same path, so entries
    outlive the session whenever a path is configured.

    `encode` / `decode` convert values to and from JSON-compatible objects.
    """

    def __init__(
        self,
        path: Path,
        encode: Callable[[Any], Dict[str, Any]],
        decode: Callable[[Dict[str, Any]], Any],
        capacity: int = DEFAULT_CAPACITY,
    ) -> None:
        super().__init__(capacity)
        self.path = Path(path)
        self._encode = encode
        self._decode = decode
        self._dirty = False
        self._load()

    def _load(self) -> None:
        if not self.path.exists():
            return
        try:
            with self.path.open("r", encoding="utf-8") as fh:
                stored = json.load(fh)
        except (OSError, ValueError) as exc:
            logger.warning("Ignoring unreadable cache file %s: %s", self.path, exc)
            return
        for key, value in stored.items():
            # Keep the newest entries when the file holds more than we allow.
            self._entries[key] = self._decode(value)
            if len(self._entries) > self.capacity:
                self._entries.popitem(last=False)
        logger.info("Loaded %d cached entries from %s", len(self._entries), self.path)

    def _on_write(self) -> None:
        with self._lock:
            self._dirty = True

    def flush(self) -> None:
        with self._lock:
            if not self._dirty:
                return
            payload = {key: self._encode(value) for key, value in self._entries.items()}
            self._dirty = False
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("w", encoding="utf-8") as fh:
                json.dump(payload, fh, ensure_ascii=False)
        except OSError as exc:
            with self._lock:
                self._dirty = True
            logger.error("Failed to persist cache to %s: %s", self.path, exc)
            return
        logger.debug("Persisted %d cache entries to %s", len(payload), self.path)
