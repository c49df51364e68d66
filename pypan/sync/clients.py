"""Local and remote tree access used by the sync engine.

The local tree is always the sync source and the remote tree the sync
destination; the sync direction only decides which side is authoritative.
Each side has a read-only wrapper that logs mutations instead of
performing them.
"""

from __future__ import annotations

import logging
import os
import posixpath
import shutil
import stat
from pathlib import Path
from typing import Optional, Protocol

from ..api import PanClient
from ..exceptions import (
    PanAPIError,
    PanError,
    PanNotFoundError,
    PanTypeMismatchError,
)
from ..models import FileEntry, UploadResponse
from ..parallel import CancelToken
from ..progress import ProgressFactory
from ..transfer import DownloadManager
from ..utils import DOWNLOADING_SUFFIX
from .cache import DestinationCacheEntry
from .entries import DestinationEntry, SourceEntry

logger = logging.getLogger(__name__)


class SourceClient(Protocol):
    def new(self, path: str) -> SourceEntry: ...

    def list(self, entry: SourceEntry) -> list[SourceEntry]: ...

    def delete(self, entry: SourceEntry) -> None: ...


class DestinationClient(Protocol):
    def abs_path(self, path: str) -> str: ...

    def new(self, path: str) -> DestinationEntry: ...

    def list(self, entry: DestinationEntry) -> list[DestinationEntry]: ...

    def upload(self, src: SourceEntry, path: str) -> UploadResponse: ...

    def download(self, entry: DestinationEntry, local_path: str) -> None: ...

    def delete(self, entry: DestinationEntry) -> None: ...

    def probe(self, entry: DestinationEntry) -> Optional[DestinationCacheEntry]: ...


# =============================================================================
# Local source
# =============================================================================


class LocalSourceClient:
    """Local directory tree.

    Only regular files and directories take part in a sync; symlinks and
    special files are skipped, and so are partial ``.downloading`` files.
    """

    def new(self, path: str) -> SourceEntry:
        """Create the entry of a sync root.

        Raises:
            PanNotFoundError: If the path does not exist
        """
        abs_path = os.path.abspath(path)
        try:
            st = os.stat(abs_path)
        except FileNotFoundError as e:
            raise PanNotFoundError(f"No such local path: {abs_path}") from e
        is_dir = stat.S_ISDIR(st.st_mode)
        return SourceEntry(
            name=os.path.basename(abs_path),
            rel_path="" if is_dir else os.path.basename(abs_path),
            abs_path=abs_path,
            size=0 if is_dir else st.st_size,
            is_dir=is_dir,
            mtime=st.st_mtime,
        )

    def list(self, entry: SourceEntry) -> list[SourceEntry]:
        """List the regular files and directories inside ``entry``.

        Raises:
            PanTypeMismatchError: If the entry is not a directory
            PanNotFoundError: If the directory disappeared
        """
        if not entry.is_dir:
            raise PanTypeMismatchError(f"Not a directory: {entry.abs_path}")
        try:
            items = list(os.scandir(entry.abs_path))
        except FileNotFoundError as e:
            raise PanNotFoundError(f"No such local directory: {entry.abs_path}") from e

        children = []
        for item in items:
            if item.name.endswith(DOWNLOADING_SUFFIX):
                logger.debug(f"Skipping partial download {item.path}")
                continue
            try:
                st = item.stat(follow_symlinks=False)
            except FileNotFoundError:
                logger.debug(f"{item.path} disappeared while listing")
                continue
            if stat.S_ISDIR(st.st_mode):
                is_dir = True
            elif stat.S_ISREG(st.st_mode):
                is_dir = False
            else:
                logger.warning(
                    f"Skipping {item.path}: not a regular file or directory"
                )
                continue
            children.append(
                SourceEntry(
                    name=item.name,
                    rel_path=posixpath.join(entry.rel_path, item.name),
                    abs_path=item.path,
                    size=0 if is_dir else st.st_size,
                    is_dir=is_dir,
                    mtime=st.st_mtime,
                )
            )
        return children

    def delete(self, entry: SourceEntry) -> None:
        logger.info(f"Deleting local {entry.abs_path}")
        try:
            if entry.is_dir:
                shutil.rmtree(entry.abs_path)
            else:
                os.remove(entry.abs_path)
        except FileNotFoundError:
            logger.debug(f"{entry.abs_path} already gone")


class ReadOnlySourceClient:
    """Local tree wrapper that only logs deletions."""

    def __init__(self, client: SourceClient):
        self.client = client

    def new(self, path: str) -> SourceEntry:
        return self.client.new(path)

    def list(self, entry: SourceEntry) -> list[SourceEntry]:
        return self.client.list(entry)

    def delete(self, entry: SourceEntry) -> None:
        logger.info(f"[dry-run] delete local {entry.abs_path}")


# =============================================================================
# Remote destination
# =============================================================================


class RemoteDestinationClient:
    """Remote tree accessed through the API client."""

    def __init__(
        self,
        client: PanClient,
        downloader: DownloadManager,
        progress: Optional[ProgressFactory] = None,
        upload_workers: int = 1,
        cancel: Optional[CancelToken] = None,
    ):
        self.client = client
        self.downloader = downloader
        self.progress = progress
        self.upload_workers = upload_workers
        self.cancel = cancel

    def abs_path(self, path: str) -> str:
        return self.client.abs_path(path)

    def _entry(self, item: FileEntry) -> DestinationEntry:
        return DestinationEntry(
            name=item.server_filename,
            rel_path=self.client.rel_path(item.path),
            abs_path=item.path,
            size=item.size,
            is_dir=item.isdir,
            content_hash=item.md5,
            fs_id=item.fs_id,
            mtime=item.server_mtime,
        )

    def new(self, path: str) -> DestinationEntry:
        """Create the entry of a sync root.

        Raises:
            PanNotFoundError: If the path or its parent does not exist
        """
        return self._entry(self.client.stat(path))

    def list(self, entry: DestinationEntry) -> list[DestinationEntry]:
        if not entry.is_dir:
            raise PanTypeMismatchError(f"Not a directory: {entry.abs_path}")
        return [self._entry(item) for item in self.client.list(entry.rel_path)]

    def upload(self, src: SourceEntry, path: str) -> UploadResponse:
        logger.info(f"Uploading {src.abs_path} -> {self.client.abs_path(path)}")
        sink = self.progress(src.rel_path) if self.progress is not None else None
        return self.client.upload(
            src.abs_path,
            path,
            progress=sink,
            workers=self.upload_workers,
            cancel=self.cancel,
        )

    def download(self, entry: DestinationEntry, local_path: str) -> None:
        logger.info(f"Downloading {entry.abs_path} -> {local_path}")
        self.downloader.download_by_id(entry.fs_id, Path(local_path))

    def delete(self, entry: DestinationEntry) -> None:
        """Delete a remote file or a whole remote directory.

        Raises:
            PanAPIError: If the server reports the item as not deleted
        """
        logger.info(f"Deleting remote {entry.abs_path}")
        resp = self.client.delete(entry.rel_path)
        failed = [item for item in resp.failed if item.errno != -9]
        if failed:
            raise PanAPIError(
                f"Delete {entry.abs_path} failed: errno {failed[0].errno}",
                code=failed[0].errno,
            )

    def probe(self, entry: DestinationEntry) -> Optional[DestinationCacheEntry]:
        """Observe the content hash of a remote file without downloading it.

        The download link is requested and only its response headers are
        read.

        Returns:
            A cache entry built from the listing hash and the ``Content-MD5``
            header, or None if the hash could not be observed
        """
        try:
            meta = self.client.file_meta(entry.fs_id)
            with self.client.stream_dlink(meta.dlink) as response:
                content_md5 = response.headers.get("Content-MD5", "").lower()
        except (PanError, OSError) as e:
            logger.debug(f"Probe of {entry.abs_path} failed: {e}")
            return None
        if not content_md5:
            return None
        return DestinationCacheEntry(
            dst_md5=meta.md5, src_md5=content_md5, size=meta.size
        )


class ReadOnlyDestinationClient:
    """Remote tree wrapper that only logs transfers and deletions."""

    def __init__(self, client: DestinationClient):
        self.client = client

    def abs_path(self, path: str) -> str:
        return self.client.abs_path(path)

    def new(self, path: str) -> DestinationEntry:
        return self.client.new(path)

    def list(self, entry: DestinationEntry) -> list[DestinationEntry]:
        return self.client.list(entry)

    def upload(self, src: SourceEntry, path: str) -> UploadResponse:
        dst = self.client.abs_path(path)
        logger.info(f"[dry-run] upload {src.abs_path} -> {dst}")
        return UploadResponse(path=dst, size=src.size, md5="", fs_id=0)

    def download(self, entry: DestinationEntry, local_path: str) -> None:
        logger.info(f"[dry-run] download {entry.abs_path} -> {local_path}")

    def delete(self, entry: DestinationEntry) -> None:
        logger.info(f"[dry-run] delete remote {entry.abs_path}")

    def probe(self, entry: DestinationEntry) -> Optional[DestinationCacheEntry]:
        return self.client.probe(entry)
