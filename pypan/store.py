"""Small key/value persistence used for caches and the access token.

``DirStore`` keeps one file per key inside a directory. ``JSONStore``
layers JSON (de)serialization on top, and ``FileCacheStore`` keeps a typed
in-memory map that is written back as a whole on every update.
"""

import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Any, Generic, Optional, Protocol, TypeVar, Union

from .exceptions import PanCacheError, PanNotFoundError

logger = logging.getLogger(__name__)


class DirStore:
    """Byte blobs stored as files in a single directory."""

    def __init__(self, directory: Union[str, Path]):
        self.directory = Path(directory)

    def _path(self, key: str) -> Path:
        if not key or "/" in key or "\\" in key or key in (".", ".."):
            raise PanCacheError(f"Invalid store key: {key!r}")
        return self.directory / key

    def set(self, key: str, data: bytes) -> None:
        """Store ``data`` under ``key``, replacing the previous value.

        The blob is written to a temporary file first and moved into
        place, so readers never see a partial value.

        Raises:
            PanCacheError: If the blob cannot be written
        """
        path = self._path(key)
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=self.directory, prefix=f".{key}.")
            try:
                with os.fdopen(fd, "wb") as f:
                    f.write(data)
                os.replace(tmp_name, path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as e:
            raise PanCacheError(f"Failed to write {path}: {e}") from e

    def get(self, key: str) -> bytes:
        """Return the blob stored under ``key``.

        Raises:
            PanNotFoundError: If nothing is stored under the key
            PanCacheError: If the blob cannot be read
        """
        path = self._path(key)
        try:
            return path.read_bytes()
        except FileNotFoundError as e:
            raise PanNotFoundError(f"No value stored for {key!r}") from e
        except OSError as e:
            raise PanCacheError(f"Failed to read {path}: {e}") from e


class JSONStore:
    """JSON documents on top of a byte store."""

    def __init__(self, store: DirStore):
        self.store = store

    def set(self, key: str, value: Any) -> None:
        data = json.dumps(value, indent=2, sort_keys=True).encode("utf-8")
        self.store.set(key, data)

    def get(self, key: str) -> Any:
        data = self.store.get(key)
        try:
            return json.loads(data)
        except ValueError as e:
            raise PanCacheError(f"Corrupted JSON under {key!r}: {e}") from e


class CacheEntry(Protocol):
    """Serialization contract of entries kept in a FileCacheStore."""

    def to_dict(self) -> dict: ...

    @classmethod
    def from_dict(cls, data: dict) -> "CacheEntry": ...


E = TypeVar("E", bound=CacheEntry)


class FileCacheStore(Generic[E]):
    """Path keyed cache of one entry type, persisted as a single JSON map.

    The map is loaded once on construction and rewritten in full on each
    ``set``. Writes are serialized by a lock, so concurrent callers never
    lose each other's updates within one process.
    """

    def __init__(self, store: JSONStore, key: str, entry_type: type[E]):
        """Initialize and load the cache.

        Args:
            store: JSON store backing this cache
            key: Store key holding the map (e.g. ``"src_filecache.json"``)
            entry_type: Entry class providing ``from_dict``/``to_dict``
        """
        self.store = store
        self.key = key
        self.entry_type = entry_type
        self._lock = threading.Lock()
        self._entries: dict[str, E] = {}
        self.load()

    def load(self) -> None:
        """(Re)load the map from the store.

        A missing map means an empty cache. An unreadable map or entry is
        logged and ignored.
        """
        try:
            data = self.store.get(self.key)
        except PanNotFoundError:
            logger.debug(f"No cache stored under {self.key}")
            return
        except PanCacheError as e:
            logger.warning(f"Ignoring unreadable cache {self.key}: {e}")
            return

        if not isinstance(data, dict):
            logger.warning(f"Ignoring malformed cache {self.key}")
            return

        entries: dict[str, E] = {}
        for path, raw in data.items():
            try:
                entries[path] = self.entry_type.from_dict(raw)  # type: ignore
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Dropping malformed cache entry {path!r}: {e}")
        with self._lock:
            self._entries = entries
        logger.debug(f"Loaded {len(entries)} entries from {self.key}")

    def get(self, path: str) -> Optional[E]:
        with self._lock:
            return self._entries.get(path)

    def set(self, path: str, entry: E) -> None:
        """Store an entry and persist the whole map.

        The in-memory map is updated even if persisting fails.

        Raises:
            PanCacheError: If the map cannot be written
        """
        with self._lock:
            self._entries[path] = entry
            snapshot = {k: v.to_dict() for k, v in self._entries.items()}
            self.store.set(self.key, snapshot)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, path: object) -> bool:
        with self._lock:
            return path in self._entries
