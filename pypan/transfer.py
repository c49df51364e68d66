"""Resumable downloads of remote files and directories."""

import logging
import os
import posixpath
import time
from pathlib import Path
from typing import BinaryIO, Callable, Optional

from .api import PanClient
from .exceptions import (
    PanAPIError,
    PanCancelledError,
    PanDownloadError,
    PanNetworkError,
    PanTypeMismatchError,
)
from .models import FileMeta
from .parallel import CancelToken, ParallelDo, try_join, try_submit
from .progress import ProgressFactory, ProgressSink
from .utils import DOWNLOAD_CHUNK_SIZE, DOWNLOADING_SUFFIX, parse_content_range

logger = logging.getLogger(__name__)

# Receives (remote path, remote md5, content md5, size) after a download
CacheSetter = Callable[[str, str, str, int], None]


class DownloadManager:
    """Downloads remote files through a temporary ``.downloading`` file.

    The temporary file is renamed into place only once the transfer
    completed. On failure it is kept, and with ``resume`` enabled the next
    attempt continues from its current length with a ranged request.
    """

    def __init__(
        self,
        client: PanClient,
        resume: bool = False,
        parallel: int = 1,
        cache_setter: Optional[CacheSetter] = None,
        progress: Optional[ProgressFactory] = None,
        cancel: Optional[CancelToken] = None,
    ):
        """Initialize the download manager.

        Args:
            client: API client
            resume: Continue existing partial files instead of restarting
            parallel: Number of files of a directory downloaded at a time
            cache_setter: Called with the content hash reported by the
                server after each successful download
            progress: Optional factory creating one progress sink per file
            cancel: Optional cancellation token
        """
        self.client = client
        self.resume = resume
        self.parallel = parallel
        self.cache_setter = cache_setter
        self.progress = progress
        self.cancel = cancel

    def download(self, path: str, out: Path) -> None:
        """Download a remote file, or every file below a remote directory.

        Args:
            path: Remote path, relative to the base directory
            out: Local target; for a directory, files are written below it
                at their relative paths
        """
        entry = self.client.stat(path)
        if not entry.isdir:
            self.download_meta(self.client.file_meta(entry.fs_id), out)
            return

        files = [e for e in self.client.list_all(path) if not e.isdir]
        logger.debug(f"Downloading {len(files)} files below {entry.path}")
        dispatcher = (
            ParallelDo(self.parallel, join_on_check_error=True, cancel=self.cancel)
            if self.parallel > 1
            else None
        )
        try:
            for item in files:
                rel = posixpath.relpath(item.path, entry.path)
                try_submit(
                    dispatcher, self.download_by_id, item.fs_id, out.joinpath(rel)
                )
            try_join(dispatcher)
        finally:
            if dispatcher is not None:
                dispatcher.close()

    def stream(self, path: str, writer: BinaryIO) -> None:
        """Write the content of a remote file to an open binary stream.

        Nothing is resumed or cached; the content goes straight to ``writer``.

        Raises:
            PanTypeMismatchError: If the path is a directory
            PanDownloadError: If the transfer fails
        """
        entry = self.client.stat(path)
        if entry.isdir:
            raise PanTypeMismatchError(f"Cannot stream directory {entry.path}")
        meta = self.client.file_meta(entry.fs_id)

        sink = self.progress(meta.path) if self.progress is not None else None
        try:
            with self.client.stream_dlink(meta.dlink) as response:
                if sink is not None:
                    sink.start(meta.size)
                for chunk in response.iter_bytes(DOWNLOAD_CHUNK_SIZE):
                    if self.cancel is not None:
                        self.cancel.check()
                    writer.write(chunk)
                    if sink is not None:
                        sink.increment(len(chunk))
            writer.flush()
        except (PanDownloadError, PanCancelledError):
            raise
        except (PanAPIError, PanNetworkError, OSError) as e:
            raise PanDownloadError(f"Download {meta.path} failed: {e}") from e
        finally:
            if sink is not None:
                sink.done()

    def download_by_id(self, fs_id: int, out: Path) -> None:
        self.download_meta(self.client.file_meta(fs_id), out)

    def download_meta(self, meta: FileMeta, out: Path) -> None:
        """Download the file described by ``meta`` to ``out``.

        Raises:
            PanDownloadError: If the transfer fails; the partial file is kept
            PanCancelledError: If cancellation is observed mid-transfer
        """
        out = Path(out)
        tmp = out.with_name(out.name + DOWNLOADING_SUFFIX)
        offset = 0
        if self.resume and tmp.exists():
            offset = tmp.stat().st_size

        sink = self.progress(meta.path) if self.progress is not None else None
        start_time = time.time()
        try:
            out.parent.mkdir(parents=True, exist_ok=True)
            content_md5 = self._fetch(meta, tmp, offset, sink)
            if content_md5 is None and offset > 0:
                logger.info(f"Server refused to resume {meta.path}, restarting")
                content_md5 = self._fetch(meta, tmp, 0, sink)
            os.replace(tmp, out)
        except (PanDownloadError, PanCancelledError):
            raise
        except (PanAPIError, PanNetworkError, OSError) as e:
            raise PanDownloadError(f"Download {meta.path} failed: {e}") from e
        finally:
            if sink is not None:
                sink.done()

        logger.debug(
            f"Downloaded {meta.path} -> {out} in {time.time() - start_time:.2f}s"
        )
        if content_md5 and self.cache_setter is not None:
            self.cache_setter(meta.path, meta.md5, content_md5, meta.size)
        elif not content_md5:
            logger.debug(f"No content hash reported for {meta.path}")

    def _fetch(
        self,
        meta: FileMeta,
        tmp: Path,
        offset: int,
        sink: Optional[ProgressSink],
    ) -> Optional[str]:
        """Stream the remote content into ``tmp`` starting at ``offset``.

        Returns:
            The content md5 header ("" if absent), or None when a resume
            could not be honoured and the caller should restart from 0
        """
        with self.client.stream_dlink(meta.dlink, offset) as response:
            if response.status_code == 416:
                if offset == meta.size:
                    logger.debug(f"Partial file of {meta.path} already complete")
                    return response.headers.get("Content-MD5", "").lower()
                return None

            mode = "ab"
            if offset == 0 or response.status_code == 200:
                if offset:
                    logger.info(f"Range ignored for {meta.path}, rewriting")
                mode, offset = "wb", 0

            if sink is not None:
                content_range = parse_content_range(
                    response.headers.get("Content-Range")
                )
                if content_range is not None and content_range[2] >= 0:
                    sink.start(content_range[2])
                    sink.increment(content_range[0])
                else:
                    length = int(response.headers.get("Content-Length", -1))
                    sink.start(offset + length if length >= 0 else -1)

            with open(tmp, mode) as f:
                for chunk in response.iter_bytes(DOWNLOAD_CHUNK_SIZE):
                    if self.cancel is not None:
                        self.cancel.check()
                    f.write(chunk)
                    if sink is not None:
                        sink.increment(len(chunk))
            return response.headers.get("Content-MD5", "").lower()
