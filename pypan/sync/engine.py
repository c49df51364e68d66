"""Sync engine driving one-directional synchronization.

The engine lists the local and the remote tree level by level, sorts both
listings the same way and walks them side by side. Entries present on one
side only are transferred or deleted depending on the sync direction;
files present on both sides are only transferred when the change detection
caches cannot prove they are in sync.
"""

import logging
import os
import posixpath
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

from ..api import PanClient
from ..exceptions import (
    PanCancelledError,
    PanMultiError,
    PanNotFoundError,
    PanSyncError,
    PanTypeMismatchError,
    multi_error,
)
from ..parallel import CancelToken, ParallelDo
from ..progress import ProgressFactory
from ..store import JSONStore
from ..transfer import DownloadManager
from .cache import DestinationCacheEntry, SyncCache
from .clients import (
    DestinationClient,
    LocalSourceClient,
    ReadOnlyDestinationClient,
    ReadOnlySourceClient,
    RemoteDestinationClient,
    SourceClient,
)
from .entries import DestinationEntry, SourceEntry, entry_less, sort_entries

logger = logging.getLogger(__name__)


class SyncDirection(str, Enum):
    """Which side of a sync is authoritative."""

    UPLOAD = "upload"
    """Make the remote tree match the local tree"""

    DOWNLOAD = "download"
    """Make the local tree match the remote tree"""


@dataclass(frozen=True)
class SyncConfig:
    """Options of one sync run."""

    direction: SyncDirection
    dry_run: bool = False
    """Log intended changes instead of applying them"""

    no_delete: bool = False
    """Log deletions instead of applying them"""

    resume: bool = False
    """Continue partial downloads instead of restarting them"""

    max_workers: int = 1
    """Number of transfers and deletions running at a time"""

    upload_workers: int = 1
    """Number of blocks of one chunked upload sent at a time"""

    probe_remote: bool = False
    """Seed a missing destination cache entry from the download headers"""


@dataclass
class SyncStats:
    """Counters of the actions taken (or planned, in a dry run)."""

    uploads: int = 0
    downloads: int = 0
    deletes_local: int = 0
    deletes_remote: int = 0
    skips: int = 0
    delete_skips: int = 0
    _lock: threading.Lock = field(
        default_factory=threading.Lock, repr=False, compare=False
    )

    def add(self, name: str, n: int = 1) -> None:
        with self._lock:
            setattr(self, name, getattr(self, name) + n)

    def to_dict(self) -> dict[str, int]:
        return {
            "uploads": self.uploads,
            "downloads": self.downloads,
            "deletes_local": self.deletes_local,
            "deletes_remote": self.deletes_remote,
            "skips": self.skips,
            "delete_skips": self.delete_skips,
        }


class _DispatchAborted(Exception):
    """Carries an error reported by the dispatcher through the recursion."""

    def __init__(self, error: BaseException):
        super().__init__(str(error))
        self.error = error


class SyncEngine:
    """Synchronizes a local tree with a remote tree in one direction."""

    def __init__(
        self,
        source: SourceClient,
        destination: DestinationClient,
        cache: SyncCache,
        config: SyncConfig,
        cancel: Optional[CancelToken] = None,
    ):
        """Initialize the sync engine.

        Args:
            source: Local tree access
            destination: Remote tree access
            cache: Change detection caches
            config: Options of the run; with ``dry_run`` both trees are
                wrapped read-only
            cancel: Optional cancellation token
        """
        if config.dry_run:
            source = ReadOnlySourceClient(source)
            destination = ReadOnlyDestinationClient(destination)
        self.source = source
        self.destination = destination
        self.cache = cache
        self.config = config
        self.cancel = cancel
        self.stats = SyncStats()

        self._dispatcher: Optional[ParallelDo] = None
        self._source_root = ""
        self._dest_root = ""
        self._dest_root_abs = ""

    @classmethod
    def from_client(
        cls,
        client: PanClient,
        store: JSONStore,
        config: SyncConfig,
        progress: Optional[ProgressFactory] = None,
        cancel: Optional[CancelToken] = None,
    ) -> "SyncEngine":
        """Build an engine syncing the local filesystem with ``client``.

        Args:
            client: API client of the remote tree
            store: Store holding the change detection caches
            config: Options of the run
            progress: Optional factory creating one progress sink per file
            cancel: Optional cancellation token
        """
        cache = SyncCache(store, cancel=cancel)
        downloader = DownloadManager(
            client,
            resume=config.resume,
            cache_setter=cache.set_destination,
            progress=progress,
            cancel=cancel,
        )
        destination = RemoteDestinationClient(
            client,
            downloader,
            progress=progress,
            upload_workers=config.upload_workers,
            cancel=cancel,
        )
        return cls(LocalSourceClient(), destination, cache, config, cancel=cancel)

    # =========================
    # Entry point
    # =========================

    def synchronize(self, source_root: str, dest_root: str) -> SyncStats:
        """Make one tree match the other.

        Args:
            source_root: Local directory
            dest_root: Remote directory, relative to the base directory

        Returns:
            Counters of the actions taken

        Raises:
            PanTypeMismatchError: If one root is a directory and the other
                is not
            PanSyncError: If an operation failed, with the path of the
                directory it failed in
            PanMultiError: If several concurrent operations failed
        """
        start_time = time.time()
        self.stats = SyncStats()
        self._source_root = os.path.abspath(source_root)
        self._dest_root = dest_root
        self._dest_root_abs = self.destination.abs_path(dest_root)
        if self.config.max_workers > 1:
            self._dispatcher = ParallelDo(
                self.config.max_workers,
                join_on_check_error=True,
                cancel=self.cancel,
            )

        errors: list[BaseException] = []
        try:
            self._sync_roots()
        except _DispatchAborted as e:
            errors.append(e.error)
        except Exception as e:
            errors.append(e)
        finally:
            if self._dispatcher is not None:
                try:
                    self._dispatcher.join()
                except Exception as e:
                    errors.append(e)
                self._dispatcher.close()
                self._dispatcher = None

        flat: list[BaseException] = []
        for error in errors:
            if isinstance(error, PanMultiError):
                flat.extend(error.errors)
            else:
                flat.append(error)
        failure = multi_error(flat)
        if failure is not None:
            raise failure

        logger.debug(
            f"Synchronized {self._source_root} and {self._dest_root_abs} "
            f"in {time.time() - start_time:.2f}s: {self.stats.to_dict()}"
        )
        return self.stats

    def _sync_roots(self) -> None:
        src_root: Optional[SourceEntry] = None
        dst_root: Optional[DestinationEntry] = None
        try:
            src_root = self.source.new(self._source_root)
        except PanNotFoundError:
            logger.debug(f"Local root {self._source_root} does not exist")
        try:
            dst_root = self.destination.new(self._dest_root)
        except PanNotFoundError:
            logger.debug(f"Remote root {self._dest_root_abs} does not exist")

        if src_root is not None and dst_root is not None:
            if src_root.is_dir != dst_root.is_dir:
                raise PanTypeMismatchError(
                    f"{self._source_root} and {self._dest_root_abs} "
                    "are not both directories"
                )

        src_list = self.source.list(src_root) if src_root is not None else []
        dst_list = self.destination.list(dst_root) if dst_root is not None else []
        self._merge(src_list, dst_list)

    # =========================
    # Merge
    # =========================

    def _merge(
        self, src_list: list[SourceEntry], dst_list: list[DestinationEntry]
    ) -> None:
        """Walk two listings of the same directory level side by side."""
        src_list, dst_list = self._delete_type_changes(
            sort_entries(src_list), sort_entries(dst_list)
        )
        i = j = 0
        while True:
            self._check_cancel()
            if i >= len(src_list):
                for d in dst_list[j:]:
                    self._destination_only(d)
                return
            if j >= len(dst_list):
                for s in src_list[i:]:
                    self._source_only(s)
                return

            s, d = src_list[i], dst_list[j]
            if s.name == d.name and s.is_dir == d.is_dir:
                if s.is_dir:
                    self._in_directory(s.name, self._merge_directories, s, d)
                else:
                    self._matched_files(s, d)
                i += 1
                j += 1
            elif entry_less(s, d):
                self._source_only(s)
                i += 1
            else:
                self._destination_only(d)
                j += 1

    def _delete_type_changes(
        self, src_list: list[SourceEntry], dst_list: list[DestinationEntry]
    ) -> tuple[list[SourceEntry], list[DestinationEntry]]:
        """Delete entries whose type differs from the authoritative side.

        Files sort before directories, so without this the transfer of a
        replacing file would be started before the stale directory of the same
        name is deleted.

        Returns:
            Both listings without the deleted entries
        """
        src_types = {s.name: s.is_dir for s in src_list}
        changed = {
            d.name
            for d in dst_list
            if d.name in src_types and src_types[d.name] != d.is_dir
        }
        if not changed:
            return src_list, dst_list

        logger.debug(f"Type changed: {sorted(changed)}")
        if self.config.direction == SyncDirection.UPLOAD:
            for d in dst_list:
                if d.name in changed:
                    self._destination_only(d)
            return src_list, [d for d in dst_list if d.name not in changed]
        for s in src_list:
            if s.name in changed:
                self._source_only(s)
        return [s for s in src_list if s.name not in changed], dst_list

    def _in_directory(self, name: str, fn: Callable[..., None], *args: Any) -> None:
        try:
            fn(*args)
        except (_DispatchAborted, PanCancelledError):
            raise
        except Exception as e:
            raise PanSyncError(name, e) from e

    def _list_source(self, entry: SourceEntry) -> list[SourceEntry]:
        try:
            return self.source.list(entry)
        except PanNotFoundError:
            logger.debug(f"{entry.abs_path} disappeared while syncing")
            return []

    def _list_destination(self, entry: DestinationEntry) -> list[DestinationEntry]:
        try:
            return self.destination.list(entry)
        except PanNotFoundError:
            logger.debug(f"{entry.abs_path} disappeared while syncing")
            return []

    def _source_only(self, s: SourceEntry) -> None:
        if self.config.direction == SyncDirection.UPLOAD:
            if s.is_dir:
                self._in_directory(s.name, self._upload_all, s)
            else:
                self._dispatch(self._upload, s)
        else:
            self._delete(s.abs_path, self._delete_local, s)

    def _destination_only(self, d: DestinationEntry) -> None:
        if self.config.direction == SyncDirection.UPLOAD:
            self._delete(d.abs_path, self._delete_remote, d)
        elif d.is_dir:
            self._in_directory(d.name, self._download_all, d)
        else:
            self._dispatch(self._download, d)

    def _merge_directories(self, s: SourceEntry, d: DestinationEntry) -> None:
        self._merge(self._list_source(s), self._list_destination(d))

    def _upload_all(self, directory: SourceEntry) -> None:
        for s in sort_entries(self._list_source(directory)):
            self._check_cancel()
            self._source_only(s)

    def _download_all(self, directory: DestinationEntry) -> None:
        for d in sort_entries(self._list_destination(directory)):
            self._check_cancel()
            self._destination_only(d)

    def _matched_files(self, s: SourceEntry, d: DestinationEntry) -> None:
        cause = self.update_cause(s, d)
        if cause is None:
            logger.debug(f"Unchanged: {s.rel_path}")
            self.stats.add("skips")
            return
        logger.debug(f"Update {s.rel_path}: {cause}")
        if self.config.direction == SyncDirection.UPLOAD:
            self._dispatch(self._upload, s)
        else:
            self._dispatch(self._download, d)

    def _delete(self, path: str, fn: Callable[..., None], entry: Any) -> None:
        # Deletions run inline: a later transfer may reuse the same name.
        if self.config.no_delete:
            logger.info(f"Skipping deletion of {path} (no-delete)")
            self.stats.add("delete_skips")
            return
        fn(entry)

    # =========================
    # Change detection
    # =========================

    def update_cause(self, s: SourceEntry, d: DestinationEntry) -> Optional[str]:
        """Decide whether a file present on both sides must be transferred.

        When a destination cache entry exists the source hash is always
        resolved, which keeps the source cache fresh even if an earlier
        check already decided.

        Args:
            s: Local file
            d: Remote file of the same name

        Returns:
            A description of the first divergence found, or None if the
            files are in sync
        """
        entry = self.cache.destination(d.abs_path)
        if entry is None and self.config.probe_remote:
            entry = self._probe(d)
        if entry is None:
            return "no cache"

        causes = []
        if s.size != d.size:
            causes.append(f"size {s.size} != remote size {d.size}")
        if s.size != entry.size:
            causes.append(f"size {s.size} != cached size {entry.size}")
        if d.content_hash != entry.dst_md5:
            causes.append(
                f"remote md5 {d.content_hash} != cached {entry.dst_md5}"
            )
        try:
            src_md5 = self.cache.source_hash(s.abs_path)
        except OSError as e:
            logger.debug(f"Cannot hash {s.abs_path}: {e}")
            causes.append(f"local md5 unavailable: {e}")
            return causes[0]
        if src_md5 != entry.src_md5:
            causes.append(f"local md5 {src_md5} != cached {entry.src_md5}")
        return causes[0] if causes else None

    def _probe(self, d: DestinationEntry) -> Optional[DestinationCacheEntry]:
        entry = self.destination.probe(d)
        if entry is not None:
            self.cache.set_destination(
                d.abs_path, entry.dst_md5, entry.src_md5, entry.size
            )
        return entry

    # =========================
    # Leaf operations
    # =========================

    def _dispatch(self, fn: Callable[..., None], *args: Any) -> None:
        if self._dispatcher is None:
            fn(*args)
            return
        try:
            self._dispatcher.submit(fn, *args)
        except PanCancelledError:
            raise
        except Exception as e:
            raise _DispatchAborted(e) from e

    def _remote_path(self, s: SourceEntry) -> str:
        return posixpath.join(self._dest_root, s.rel_path)

    def _local_path(self, d: DestinationEntry) -> str:
        rel = posixpath.relpath(d.abs_path, self._dest_root_abs)
        return os.path.join(self._source_root, *rel.split("/"))

    def _upload(self, s: SourceEntry) -> None:
        resp = self.destination.upload(s, self._remote_path(s))
        self.stats.add("uploads")
        if resp.md5:
            src_md5 = self.cache.source_hash(s.abs_path)
            self.cache.set_destination(resp.path, resp.md5, src_md5, resp.size)

    def _download(self, d: DestinationEntry) -> None:
        self.destination.download(d, self._local_path(d))
        self.stats.add("downloads")

    def _delete_local(self, s: SourceEntry) -> None:
        self.source.delete(s)
        self.stats.add("deletes_local")

    def _delete_remote(self, d: DestinationEntry) -> None:
        self.destination.delete(d)
        self.stats.add("deletes_remote")

    def _check_cancel(self) -> None:
        if self.cancel is not None:
            self.cancel.check()
