from __future__ import annotations

import datetime as dt
import hashlib
import json
import logging
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Callable, Optional

from finledger.utils.time import parse_datetime, utcnow


log = logging.getLogger(__name__)


class KeyValueStore(ABC):
    """
    Small get / set-with-TTL cache used for sticky classification memos.

    Values must be JSON-serializable. Expired keys read as missing. Concurrent writers
    may race; last write wins.
    """

    @abstractmethod
    def get(self, key: str) -> Any:
        raise NotImplementedError

    @abstractmethod
    def set(self, key: str, value: Any, *, ttl: Optional[dt.timedelta] = None) -> None:
        raise NotImplementedError

    @abstractmethod
    def delete(self, key: str) -> None:
        raise NotImplementedError


class MemoryKeyValueStore(KeyValueStore):
    def __init__(self, *, clock: Callable[[], dt.datetime] = utcnow):
        self._clock = clock
        self._lock = threading.Lock()
        self._items: dict[str, tuple[Any, Optional[dt.datetime]]] = {}

    def get(self, key: str) -> Any:
        with self._lock:
            item = self._items.get(key)
            if item is None:
                return None
            value, expires_at = item
            if expires_at is not None and expires_at <= self._clock():
                del self._items[key]
                return None
            return value

    def set(self, key: str, value: Any, *, ttl: Optional[dt.timedelta] = None) -> None:
        expires_at = (self._clock() + ttl) if ttl is not None else None
        with self._lock:
            self._items[key] = (value, expires_at)

    def delete(self, key: str) -> None:
        with self._lock:
            self._items.pop(key, None)


class JsonFileKeyValueStore(KeyValueStore):
    """One JSON file per key under `cache_dir`; survives process restarts."""

    def __init__(self, cache_dir: Path, *, clock: Callable[[], dt.datetime] = utcnow):
        self.cache_dir = Path(cache_dir)
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        self._clock = clock

    def _path(self, key: str) -> Path:
        digest = hashlib.sha256(key.encode("utf-8")).hexdigest()[:32]
        return self.cache_dir / f"{digest}.json"

    def get(self, key: str) -> Any:
        p = self._path(key)
        if not p.exists():
            return None
        try:
            doc = json.loads(p.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            log.warning("Unreadable cache file %s; ignoring", p)
            return None
        if doc.get("key") != key:
            return None
        expires_at = parse_datetime(doc.get("expires_at"))
        if expires_at is not None and expires_at <= self._clock():
            self.delete(key)
            return None
        return doc.get("value")

    def set(self, key: str, value: Any, *, ttl: Optional[dt.timedelta] = None) -> None:
        expires_at = (self._clock() + ttl) if ttl is not None else None
        doc = {"key": key, "value": value, "expires_at": expires_at.isoformat() if expires_at else None}
        p = self._path(key)
        tmp = p.with_suffix(".tmp")
        tmp.write_text(json.dumps(doc, sort_keys=True), encoding="utf-8")
        tmp.replace(p)

    def delete(self, key: str) -> None:
        self._path(key).unlink(missing_ok=True)
