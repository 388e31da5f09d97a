"""TTL-bounded cache of the last acquired position per key."""
from __future__ import annotations

import threading
import time
from dataclasses import asdict
from pathlib import Path
from typing import Callable, Dict, Optional

import orjson
import structlog

from geozone.geo.models import CacheEntry, GeoPoint

LOGGER = structlog.get_logger(__name__)

DEFAULT_TTL_SECONDS = 1800
_CACHE_SCHEMA_VERSION = 1


class PositionCache:
    """Holds one `CacheEntry` per key; expiry is checked lazily on read.

    Entries are immutable: `put` always installs a new entry. A lock guards
    every read and write so the expiry check and eviction happen atomically,
    whether callers share an event loop or run on separate threads. When a
    `path` is supplied the entries are mirrored to a JSON file.
    """

    def __init__(
        self,
        *,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
        path: Optional[Path] = None,
    ) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self._ttl_seconds = ttl_seconds
        self._clock = clock
        self._path = path
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = threading.RLock()
        if path is not None:
            self._load()

    @property
    def ttl_seconds(self) -> int:
        return self._ttl_seconds

    def _load(self) -> None:
        assert self._path is not None
        if not self._path.exists():
            self._path.parent.mkdir(parents=True, exist_ok=True)
            return
        try:
            payload = orjson.loads(self._path.read_bytes())
        except orjson.JSONDecodeError:
            LOGGER.warning("position_cache_unreadable", path=str(self._path))
            return
        if payload.get("version") != _CACHE_SCHEMA_VERSION:
            return
        now = self._clock()
        for key, raw in payload.get("data", {}).items():
            entry = CacheEntry(
                point=GeoPoint(**raw["point"]),
                captured_at=float(raw["captured_at"]),
                ttl_expires_at=float(raw["ttl_expires_at"]),
                source=raw.get("source", "device"),
            )
            if not entry.is_expired(now):
                self._entries[key] = entry

    def _persist(self) -> None:
        if self._path is None:
            return
        payload = {
            "version": _CACHE_SCHEMA_VERSION,
            "data": {key: asdict(entry) for key, entry in self._entries.items()},
        }
        self._path.write_bytes(orjson.dumps(payload))

    def get(self, key: str) -> Optional[CacheEntry]:
        """Return the live entry for `key`, or None when absent or expired."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.is_expired(self._clock()):
                del self._entries[key]
                self._persist()
                LOGGER.debug("cache_expired", cache_key=key)
                return None
            return entry

    def put(self, key: str, point: GeoPoint, ttl_seconds: Optional[int] = None, *, source: str = "device") -> CacheEntry:
        """Store a fresh entry for `key`, replacing whatever was there."""
        ttl = self._ttl_seconds if ttl_seconds is None else ttl_seconds
        if ttl <= 0:
            raise ValueError("ttl_seconds must be positive")
        with self._lock:
            now = self._clock()
            entry = CacheEntry(point=point, captured_at=now, ttl_expires_at=now + ttl, source=source)
            self._entries[key] = entry
            self._persist()
        return entry

    def invalidate(self, key: str) -> None:
        """Drop the entry for `key` if one exists."""
        with self._lock:
            if self._entries.pop(key, None) is not None:
                self._persist()

    def keys(self) -> list[str]:
        with self._lock:
            now = self._clock()
            return sorted(key for key, entry in self._entries.items() if not entry.is_expired(now))
