"""Change detection caches for the sync engine.

The source cache remembers the md5 of local files together with the stat
fields that must stay unchanged for the hash to remain valid. The
destination cache remembers, per remote path, the last known
correspondence between a remote blob and the local content it was made
from.
"""

import logging
import os
from dataclasses import dataclass
from typing import Any, Optional

from ..exceptions import PanCacheError
from ..parallel import CancelToken
from ..store import FileCacheStore, JSONStore
from ..utils import md5_file

logger = logging.getLogger(__name__)

SRC_CACHE_KEY = "src_filecache.json"
DST_CACHE_KEY = "dst_filecache.json"


@dataclass(frozen=True)
class SourceCacheEntry:
    """Hash of a local file, valid while its stat fields are unchanged."""

    file_id: Optional[int]
    """Inode number, or None where the platform reports none"""

    size: int
    mtime_ns: int
    md5: str

    def matches(self, file_id: Optional[int], size: int, mtime_ns: int) -> bool:
        """Check the entry against live stat fields.

        A missing file id on either side never matches.
        """
        if self.file_id is None or file_id is None:
            return False
        return (
            self.file_id == file_id
            and self.size == size
            and self.mtime_ns == mtime_ns
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "file_id": self.file_id,
            "size": self.size,
            "mtime_ns": self.mtime_ns,
            "md5": self.md5,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SourceCacheEntry":
        file_id = data.get("file_id")
        return cls(
            file_id=int(file_id) if file_id is not None else None,
            size=int(data["size"]),
            mtime_ns=int(data["mtime_ns"]),
            md5=str(data["md5"]),
        )


@dataclass(frozen=True)
class DestinationCacheEntry:
    """Last known correspondence between a remote file and its source."""

    dst_md5: str
    """Content hash of the remote file as reported by the remote side"""

    src_md5: str
    """md5 of the local content the remote file was made from"""

    size: int

    def to_dict(self) -> dict[str, Any]:
        return {"dst_md5": self.dst_md5, "src_md5": self.src_md5, "size": self.size}

    @classmethod
    def from_dict(cls, data: dict) -> "DestinationCacheEntry":
        return cls(
            dst_md5=str(data["dst_md5"]),
            src_md5=str(data["src_md5"]),
            size=int(data["size"]),
        )


class SyncCache:
    """Source and destination caches of one sync run.

    Failures to persist are logged and otherwise ignored: a lost cache
    entry only costs a later re-hash or re-transfer.
    """

    def __init__(self, store: JSONStore, cancel: Optional[CancelToken] = None):
        self.cancel = cancel
        self.src: FileCacheStore[SourceCacheEntry] = FileCacheStore(
            store, SRC_CACHE_KEY, SourceCacheEntry
        )
        self.dst: FileCacheStore[DestinationCacheEntry] = FileCacheStore(
            store, DST_CACHE_KEY, DestinationCacheEntry
        )

    def source_hash(self, path: str) -> str:
        """Return the md5 of a local file, hashing it only on a cache miss.

        Args:
            path: Absolute local path

        Returns:
            Lowercase md5 hex digest

        Raises:
            OSError: If the file cannot be stat'ed or read
            PanCancelledError: If cancellation is observed while hashing
        """
        st = os.stat(path)
        file_id = st.st_ino or None
        cached = self.src.get(path)
        if cached is not None and cached.matches(file_id, st.st_size, st.st_mtime_ns):
            return cached.md5

        logger.debug(f"Hashing {path} ({st.st_size} bytes)")
        md5 = md5_file(path, self.cancel)
        self._set(
            self.src,
            path,
            SourceCacheEntry(
                file_id=file_id, size=st.st_size, mtime_ns=st.st_mtime_ns, md5=md5
            ),
        )
        return md5

    def destination(self, path: str) -> Optional[DestinationCacheEntry]:
        return self.dst.get(path)

    def set_destination(self, path: str, dst_md5: str, src_md5: str, size: int) -> None:
        """Record that the remote file at ``path`` holds the given content."""
        logger.debug(f"Caching {path}: dst={dst_md5} src={src_md5} size={size}")
        self._set(
            self.dst,
            path,
            DestinationCacheEntry(dst_md5=dst_md5, src_md5=src_md5, size=size),
        )

    @staticmethod
    def _set(cache: FileCacheStore, path: str, entry: Any) -> None:
        try:
            cache.set(path, entry)
        except PanCacheError as e:
            logger.warning(f"Failed to update {cache.key}: {e}")
