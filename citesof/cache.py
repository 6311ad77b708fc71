import json
import logging
import os
import tempfile
import threading
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from .models import PublicationRecord
from .utils import CACHE_TTL_DAYS

logger = logging.getLogger(__name__)

Payload = Dict[str, Any]
MergeFn = Callable[[Optional[Payload]], Payload]

DEFAULT_TTL_SECONDS = CACHE_TTL_DAYS * 24 * 60 * 60
# Keys share a fixed pool of locks so the lock table never grows with the key space
LOCK_STRIPES = 64


class CacheStore(ABC):
    """
    Key-value store with per-entry expiry and merge-on-write semantics.

    Entries are stored as ``{"data": payload, "timestamp": epoch_ms}``. An
    entry older than the TTL reads as a miss and is evicted. Writes go
    through ``put`` which reads the current payload, hands it to a merge
    function and stores the result, holding the key's lock for the whole
    read-merge-write so that concurrent enrichments of one key serialize.
    Evictions take the same lock, so a stale read never deletes a fresh write.

    Subclasses only implement raw storage access.
    """

    def __init__(self, ttl_seconds: float = DEFAULT_TTL_SECONDS, clock: Callable[[], float] = time.time):
        self.ttl_ms = round(ttl_seconds * 1000)
        self.clock = clock
        self._key_locks: List[threading.Lock] = [threading.Lock() for _ in range(LOCK_STRIPES)]

    @abstractmethod
    def _read_raw(self, key: str) -> Any:
        """Return the stored entry for key (any shape) or None."""

    @abstractmethod
    def _write_raw(self, key: str, entry: Dict[str, Any]) -> None:
        """Persist an entry. May raise OSError when storage is exhausted."""

    @abstractmethod
    def _delete_raw(self, key: str) -> None:
        pass

    @abstractmethod
    def _clear_raw(self) -> None:
        pass

    def flush(self) -> None:
        """Push buffered writes to durable storage. Stores that write through do nothing."""

    def _now_ms(self) -> int:
        return round(self.clock() * 1000)

    def _lock_for(self, key: str) -> threading.Lock:
        return self._key_locks[hash(key) % LOCK_STRIPES]

    def _timestamp_of(self, key: str, entry: Any) -> Optional[float]:
        if not isinstance(entry, dict) or not isinstance(entry.get("data"), dict):
            logger.debug(f"Ignoring cache entry with unexpected shape for key: {key}")
            return None
        timestamp = entry.get("timestamp")
        if isinstance(timestamp, bool) or not isinstance(timestamp, (int, float)):
            logger.debug(f"Ignoring cache entry without timestamp for key: {key}")
            return None
        return timestamp

    def _is_stale(self, timestamp: float) -> bool:
        return self._now_ms() - timestamp > self.ttl_ms

    def _read_valid(self, key: str, locked: bool = False) -> Optional[Payload]:
        """
        Read the payload under key, treating stale or malformed entries as misses.

        Args:
            key: Cache key.
            locked: True when the caller already holds the key's lock.
        """
        entry = self._read_raw(key)
        if entry is None:
            return None
        timestamp = self._timestamp_of(key, entry)
        if timestamp is None:
            return None
        if self._is_stale(timestamp):
            logger.debug(f"Cache entry expired for key: {key}")
            if locked:
                self._safe_delete(key)
            else:
                self._evict_if_stale(key)
            return None
        return entry["data"]

    def _evict_if_stale(self, key: str) -> None:
        # Another thread may have refreshed the entry since it was read
        with self._lock_for(key):
            timestamp = self._timestamp_of(key, self._read_raw(key))
            if timestamp is not None and self._is_stale(timestamp):
                self._safe_delete(key)

    def _safe_delete(self, key: str) -> None:
        try:
            self._delete_raw(key)
        except OSError as e:
            logger.warning(f"Failed to evict cache entry {key}: {e}")

    def get(self, key: str) -> Optional[Payload]:
        """Return a copy of the payload stored under key, or None on miss/expiry."""
        if not key:
            return None
        data = self._read_valid(key)
        return dict(data) if data is not None else None

    def put(self, key: str, merge_fn: MergeFn) -> Optional[Payload]:
        """
        Read-merge-write the payload stored under key.

        Args:
            key: Cache key (a DOI, a title, or a raw user input).
            merge_fn: Receives the current payload (None on miss) and returns the new one.

        Returns:
            The payload that was written, or None when the write failed.
        """
        if not key:
            return None
        with self._lock_for(key):
            current = self._read_valid(key, locked=True)
            new_data = merge_fn(dict(current) if current is not None else None)
            entry = {"data": new_data, "timestamp": self._now_ms()}
            try:
                self._write_raw(key, entry)
            except (OSError, TypeError, ValueError) as e:
                # Storage exhaustion or an unserializable payload is never fatal
                logger.warning(f"Failed to write cache entry {key}: {e}")
                return None
            return new_data

    def update(self, key: str, fields: Payload) -> Optional[Payload]:
        """Union ``fields`` into whatever is already stored under key."""
        return self.put(key, lambda current: {**(current or {}), **fields})

    def get_record(self, key: str) -> Optional[PublicationRecord]:
        data = self.get(key)
        if data is None:
            return None
        return PublicationRecord.from_payload(data)

    def merge_record(self, key: str, record: PublicationRecord) -> Optional[Payload]:
        """Field-wise merge a PublicationRecord into the stored payload."""
        return self.update(key, record.to_payload())

    def evict(self, key: str) -> None:
        with self._lock_for(key):
            self._safe_delete(key)

    def clear(self) -> None:
        self._clear_raw()


class MemoryCacheStore(CacheStore):
    """Process-local store, used for tests and one-off runs."""

    def __init__(self, ttl_seconds: float = DEFAULT_TTL_SECONDS, clock: Callable[[], float] = time.time):
        super().__init__(ttl_seconds=ttl_seconds, clock=clock)
        self._entries: Dict[str, Any] = {}

    def _read_raw(self, key: str) -> Any:
        return self._entries.get(key)

    def _write_raw(self, key: str, entry: Dict[str, Any]) -> None:
        self._entries[key] = entry

    def _delete_raw(self, key: str) -> None:
        self._entries.pop(key, None)

    def _clear_raw(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


class JsonFileCacheStore(CacheStore):
    """
    Store backed by a single JSON document on disk.

    The document is loaded lazily and kept in memory. Writes only mark it
    dirty; ``flush`` rewrites the file atomically (temp file + rename), so a
    whole run costs one rewrite however many entries it touches. A corrupt
    or unreadable file is treated as an empty cache.
    """

    def __init__(self, path: Path, ttl_seconds: float = DEFAULT_TTL_SECONDS, clock: Callable[[], float] = time.time):
        super().__init__(ttl_seconds=ttl_seconds, clock=clock)
        self.path = Path(path)
        self._entries: Optional[Dict[str, Any]] = None
        self._dirty = False
        self._file_lock = threading.RLock()

    @property
    def dirty(self) -> bool:
        return self._dirty

    def _load(self) -> Dict[str, Any]:
        if self._entries is not None:
            return self._entries
        entries: Dict[str, Any] = {}
        if self.path.exists():
            try:
                with self.path.open('r', encoding='utf-8') as f:
                    loaded = json.load(f)
                if isinstance(loaded, dict):
                    entries = loaded
                else:
                    logger.warning(f"Cache file {self.path} has an unexpected layout, starting empty")
            except (OSError, json.JSONDecodeError) as e:
                logger.warning(f"Could not read cache file {self.path}: {e}. Starting with an empty cache.")
        self._entries = entries
        logger.debug(f"Loaded {len(entries)} cache entries from {self.path}")
        return entries

    def _write_file(self, entries: Dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self.path.parent, prefix=".cache-", suffix=".json")
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(entries, f, ensure_ascii=False)
            os.replace(tmp_name, self.path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

    def flush(self) -> None:
        """
        Write pending changes to disk.

        Failures are logged and leave the store dirty, so a later flush can
        retry; the in-memory entries stay usable either way.
        """
        with self._file_lock:
            if not self._dirty or self._entries is None:
                return
            try:
                self._write_file(self._entries)
            except (OSError, TypeError, ValueError) as e:
                logger.warning(f"Failed to write cache file {self.path}: {e}")
                return
            self._dirty = False
            logger.debug(f"Flushed {len(self._entries)} cache entries to {self.path}")

    def _read_raw(self, key: str) -> Any:
        with self._file_lock:
            return self._load().get(key)

    def _write_raw(self, key: str, entry: Dict[str, Any]) -> None:
        with self._file_lock:
            self._load()[key] = entry
            self._dirty = True

    def _delete_raw(self, key: str) -> None:
        with self._file_lock:
            entries = self._load()
            if key in entries:
                del entries[key]
                self._dirty = True

    def _clear_raw(self) -> None:
        with self._file_lock:
            self._entries = {}
            self._dirty = True
