"""Read-through cache for query results.

Entries are keyed by an MD5 digest of a caller-supplied key and expire by
age. Expired entries are only replaced on the next read; nothing is evicted
proactively.

Example:
    >>> users = session.query(User).where("active", True).cache("active-users", ttl=60).get()
"""

from __future__ import annotations

import hashlib
import logging
import os
import pickle
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any, Protocol

from quarry.exceptions import CacheNotAccessible, CacheReadError, CacheWriteError

logger = logging.getLogger(__name__)


class CacheStorage(Protocol):
    """Where cache entries live."""

    def exists(self, path: Path) -> bool: ...

    def is_expired(self, path: Path, ttl: float) -> bool: ...

    def read(self, path: Path) -> bytes: ...

    def write(self, path: Path, data: bytes) -> None: ...


class FileCacheStorage:
    """Stores each entry as a file; freshness comes from the file's mtime.

    Args:
        clock: Returns the current time in seconds. Written entries are
            stamped with it, so tests can move time forward.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock

    def exists(self, path: Path) -> bool:
        return path.is_file()

    def is_expired(self, path: Path, ttl: float) -> bool:
        try:
            modified = path.stat().st_mtime
        except FileNotFoundError as exc:
            raise CacheNotAccessible("Cache entry vanished", path=str(path), reason=str(exc)) from exc
        return self._clock() - modified >= ttl

    def read(self, path: Path) -> bytes:
        try:
            return path.read_bytes()
        except OSError as exc:
            raise CacheReadError("Cannot read cache entry", path=str(path), reason=str(exc)) from exc

    def write(self, path: Path, data: bytes) -> None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise CacheNotAccessible("Cannot create cache directory", path=str(path.parent), reason=str(exc)) from exc

        tmp = path.with_name(path.name + ".tmp")
        try:
            tmp.write_bytes(data)
            os.replace(tmp, path)
            now = self._clock()
            os.utime(path, (now, now))
        except OSError as exc:
            try:
                tmp.unlink(missing_ok=True)
            except OSError as cleanup_exc:
                logger.warning("Cannot remove partial cache file %s: %s", tmp, cleanup_exc)
            raise CacheWriteError("Cannot write cache entry", path=str(path), reason=str(exc)) from exc


class ResultCache:
    """Caches fully hydrated query results under a digest of a key."""

    def __init__(self, storage: CacheStorage, directory: Path | str, suffix: str = "_database_cache") -> None:
        self.storage = storage
        self.directory = Path(directory)
        self.suffix = suffix

    def path_for(self, key: str) -> Path:
        digest = hashlib.md5(key.encode("utf-8")).hexdigest()  # noqa: S324
        return self.directory / f"{digest}{self.suffix}"

    def fetch(self, key: str, ttl: float, loader: Callable[[], Any]) -> Any:
        """Return the cached value for ``key`` if younger than ``ttl``, else run ``loader``.

        Raises:
            CacheReadError: If a fresh entry exists but its payload is corrupt
            CacheWriteError: If the new result cannot be stored
        """
        path = self.path_for(key)
        if self.storage.exists(path) and not self.storage.is_expired(path, ttl):
            data = self.storage.read(path)
            try:
                value = pickle.loads(data)  # noqa: S301
            except (pickle.UnpicklingError, EOFError, AttributeError, ImportError, IndexError, TypeError, ValueError) as exc:
                raise CacheReadError("Corrupt cache entry", path=str(path), reason=str(exc) or type(exc).__name__) from exc
            logger.debug("Cache hit for %r (%s)", key, path)
            return value

        logger.debug("Cache miss for %r (%s)", key, path)
        value = loader()
        self.storage.write(path, pickle.dumps(value))
        logger.debug("Cached result for %r (%s)", key, path)
        return value
