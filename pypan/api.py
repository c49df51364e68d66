"""API client for the pan file service."""

from __future__ import annotations

import io
import json
import logging
import os
import posixpath
import random
import time
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Any, Iterator

import httpx

from .config import APP_USER_AGENT, Config
from .exceptions import (
    PanAPIError,
    PanAuthenticationError,
    PanCancelledError,
    PanDownloadError,
    PanInvalidResponseError,
    PanMultiError,
    PanNetworkError,
    PanNotFoundError,
    PanPermissionError,
    PanRateLimitError,
    PanUploadError,
)
from .models import (
    FileEntry,
    FileManagerResponse,
    FileMeta,
    PrecreateResponse,
    QuotaInfo,
    UploadResponse,
    UserInfo,
)
from .parallel import CancelToken, ParallelDo
from .progress import ProgressSink, TrackedReader
from .utils import (
    MIN_SIZE_MULTIPART_UPLOAD,
    UPLOAD_API_BLOCK_SIZE,
    compute_block_list,
)

if TYPE_CHECKING:
    from collections.abc import Sequence

logger = logging.getLogger(__name__)

# Page size of the listing endpoints
LIST_PAGE_LIMIT = 1000

# Server error codes meaning "no such file or directory"
NOT_FOUND_CODES = frozenset({-9, 31066})

# Server error codes meaning the access token is invalid or expired
AUTH_ERROR_CODES = frozenset({-6, 110, 111})

# Server error codes for request frequency control
RATE_LIMIT_CODES = frozenset({31034})

# Duplicate handling of uploads and file manager operations
ONDUP_OVERWRITE = "overwrite"

# Overwrite on path conflict when finalizing a chunked upload
RTYPE_OVERWRITE = 3

# Download links reject requests without this user agent
DLINK_USER_AGENT = "pan.baidu.com"


def decode_api_error(data: Any) -> PanAPIError | None:
    """Decode the error envelope of an API response.

    The service reports errors in one of three shapes: ``errno``,
    ``error_code`` or an OAuth style ``error`` string.

    Args:
        data: Decoded JSON response body

    Returns:
        The matching exception, or None if the response is not an error

    Examples:
        >>> decode_api_error({"errno": 0, "list": []}) is None
        True
        >>> type(decode_api_error({"errno": -9})).__name__
        'PanNotFoundError'
    """
    if not isinstance(data, dict):
        return None

    code: Any = None
    if data.get("errno"):
        code = data["errno"]
    elif data.get("error_code"):
        code = data["error_code"]
    elif data.get("error"):
        code = data["error"]
    if code is None:
        return None

    message = (
        data.get("error_description")
        or data.get("errmsg")
        or data.get("error_msg")
        or json.dumps(data, sort_keys=True)
    )
    request_id = data.get("request_id")
    if request_id is not None:
        request_id = str(request_id)

    if isinstance(code, int):
        if code in NOT_FOUND_CODES:
            return PanNotFoundError(f"Not found: {message}", code, request_id)
        if code in AUTH_ERROR_CODES:
            return PanAuthenticationError(
                f"Access token rejected: {message}", code, request_id
            )
        if code in RATE_LIMIT_CODES:
            return PanRateLimitError(f"Rate limited: {message}", code, request_id)
    return PanAPIError(f"API error {code}: {message}", code, request_id)


class PanClient:
    """Client for the pan REST API.

    Paths accepted by public methods are relative to the application base
    directory (``Config.app_base_dir``); paths in responses are absolute.
    """

    def __init__(
        self,
        config: Config | None = None,
        access_token: str | None = None,
    ):
        """Initialize the API client.

        Args:
            config: Settings to use (defaults to the environment)
            access_token: Optional token overriding the configured one

        Raises:
            PanConfigError: If no access token is available
        """
        self.config = config or Config.from_env().with_stored_token()
        self.access_token = access_token or self.config.require_token()
        self.app_base_dir = "/" + self.config.app_base_dir.strip("/")
        self.max_retries = self.config.max_retries
        self.retry_delay = self.config.retry_delay
        self.timeout = self.config.timeout

        self._client: httpx.Client | None = None

    def __enter__(self) -> PanClient:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def _get_client(self) -> httpx.Client:
        """Get or create the httpx client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.Client(
                headers={"User-Agent": APP_USER_AGENT},
                timeout=httpx.Timeout(self.timeout),
                follow_redirects=True,
            )
        return self._client

    def close(self) -> None:
        """Close the client and release connections."""
        if self._client is not None and not self._client.is_closed:
            self._client.close()
            self._client = None

    # =========================
    # Paths
    # =========================

    def abs_path(self, path: str) -> str:
        """Resolve a path relative to the application base directory.

        Examples:
            ``"docs/a.txt"`` and ``"/docs/a.txt"`` both resolve to
            ``"/apps/pypan/docs/a.txt"``; ``"/"`` resolves to the base
            directory itself.
        """
        return posixpath.normpath(posixpath.join(self.app_base_dir, path.lstrip("/")))

    def rel_path(self, path: str) -> str:
        """Strip the application base directory from an absolute path."""
        if path == self.app_base_dir:
            return "/"
        prefix = self.app_base_dir.rstrip("/") + "/"
        if path.startswith(prefix):
            return "/" + path[len(prefix):]
        return path

    # =========================
    # Request handling
    # =========================

    def _should_retry(self, exception: Exception, attempt: int) -> bool:
        """Determine if a request should be retried.

        Args:
            exception: The exception that occurred
            attempt: Current attempt number (0-based)

        Returns:
            True if the request should be retried, False otherwise
        """
        if attempt >= self.max_retries:
            return False
        if isinstance(exception, (PanNetworkError, PanRateLimitError)):
            return True
        if isinstance(exception, httpx.HTTPStatusError):
            return 500 <= exception.response.status_code < 600
        return False

    def _calculate_retry_delay(self, attempt: int) -> float:
        """Calculate delay before next retry using exponential backoff.

        Args:
            attempt: Current attempt number (0-based)

        Returns:
            Delay in seconds, with +/- 25% jitter
        """
        base_delay = self.retry_delay * (2**attempt)
        jitter = base_delay * 0.25 * (2 * random.random() - 1)
        return base_delay + jitter

    def _error_for_status(self, e: httpx.HTTPStatusError) -> Exception:
        """Map an HTTP error status to a pypan exception.

        A JSON error envelope in the body takes precedence over the bare
        status code.
        """
        status_code = e.response.status_code
        try:
            api_error = decode_api_error(e.response.json())
        except ValueError:
            api_error = None
        if api_error is not None:
            return api_error

        if status_code == 401:
            return PanAuthenticationError("Invalid or expired access token")
        if status_code == 403:
            return PanPermissionError("Access forbidden - check your permissions")
        if status_code == 404:
            return PanNotFoundError("Resource not found")
        if status_code == 429:
            return PanRateLimitError("Rate limit exceeded - please try again later")
        return PanAPIError(f"API request failed with status {status_code}")

    def _request(
        self,
        method: str,
        url: str,
        params: dict[str, Any] | None = None,
        **kwargs: Any,
    ) -> Any:
        """Make an API request with retry logic.

        Args:
            method: HTTP method
            url: Absolute endpoint URL
            params: Query parameters; the access token is added
            **kwargs: Additional arguments passed to httpx

        Returns:
            Decoded JSON response body

        Raises:
            PanAPIError: If the server reports an error
            PanNetworkError: If the request fails after all retries
        """
        query = {"access_token": self.access_token, **(params or {})}
        client = self._get_client()
        last_exception: Exception | None = None

        for attempt in range(self.max_retries + 1):
            try:
                response = client.request(method, url, params=query, **kwargs)
                response.raise_for_status()
                try:
                    data = response.json()
                except ValueError as e:
                    raise PanInvalidResponseError(
                        f"Invalid JSON response from {url}"
                    ) from e
                api_error = decode_api_error(data)
                if api_error is not None:
                    raise api_error
                return data

            except httpx.HTTPStatusError as e:
                error = self._error_for_status(e)
                last_exception = error
                if self._should_retry(e, attempt) or self._should_retry(
                    error, attempt
                ):
                    retry_after = e.response.headers.get("Retry-After")
                    if retry_after and retry_after.isdigit():
                        delay = float(retry_after)
                    else:
                        delay = self._calculate_retry_delay(attempt)
                    time.sleep(delay)
                    continue
                raise error from e
            except PanRateLimitError as e:
                last_exception = e
                if self._should_retry(e, attempt):
                    time.sleep(self._calculate_retry_delay(attempt))
                    continue
                raise
            except httpx.RequestError as e:
                error = PanNetworkError(f"Network error: {e}")
                last_exception = error
                if self._should_retry(error, attempt):
                    time.sleep(self._calculate_retry_delay(attempt))
                    continue
                raise error from e

        if last_exception:
            raise last_exception
        raise PanAPIError("Request failed after all retry attempts")

    @property
    def _file_url(self) -> str:
        return f"{self.config.pan_host}/rest/2.0/xpan/file"

    @property
    def _multimedia_url(self) -> str:
        return f"{self.config.pan_host}/rest/2.0/xpan/multimedia"

    # =========================
    # Listing and metadata
    # =========================

    def list(self, path: str) -> list[FileEntry]:
        """List the direct children of a remote directory.

        Pages are fetched until one comes back shorter than the page limit.

        Args:
            path: Remote directory, relative to the base directory

        Returns:
            All children in server order

        Raises:
            PanNotFoundError: If the directory does not exist
        """
        return self._list_abs(self.abs_path(path))

    def _list_abs(self, directory: str) -> list[FileEntry]:
        entries: list[FileEntry] = []
        start = 0
        while True:
            data = self._request(
                "GET",
                self._file_url,
                params={
                    "method": "list",
                    "dir": directory,
                    "start": start,
                    "limit": LIST_PAGE_LIMIT,
                    "showempty": 1,
                    "folder": 0,
                    "web": 0,
                },
            )
            page = [FileEntry.from_dict(item) for item in data.get("list") or []]
            entries.extend(page)
            if len(page) < LIST_PAGE_LIMIT:
                break
            start += len(page)
        logger.debug(f"Listed {len(entries)} entries in {directory}")
        return entries

    def list_all(self, path: str) -> list[FileEntry]:
        """Recursively list every descendant of a remote directory.

        Args:
            path: Remote directory, relative to the base directory

        Returns:
            All descendants, files and directories

        Raises:
            PanNotFoundError: If the directory does not exist
        """
        directory = self.abs_path(path)
        entries: list[FileEntry] = []
        cursor = 0
        while True:
            data = self._request(
                "GET",
                self._multimedia_url,
                params={
                    "method": "listall",
                    "path": directory,
                    "recursion": 1,
                    "start": cursor,
                    "limit": LIST_PAGE_LIMIT,
                    "web": 0,
                },
            )
            entries.extend(FileEntry.from_dict(item) for item in data.get("list") or [])
            if not data.get("has_more"):
                break
            cursor = int(data.get("cursor", 0))
        return entries

    def file_metas(self, fs_ids: Sequence[int]) -> list[FileMeta]:
        """Fetch metadata, including download links, by file id.

        Args:
            fs_ids: Server side file ids

        Returns:
            Metadata in server order
        """
        if not fs_ids:
            return []
        data = self._request(
            "GET",
            self._multimedia_url,
            params={
                "method": "filemetas",
                "fsids": json.dumps([int(i) for i in fs_ids]),
                "dlink": 1,
            },
        )
        return [FileMeta.from_dict(item) for item in data.get("list") or []]

    def file_meta(self, fs_id: int) -> FileMeta:
        metas = self.file_metas([fs_id])
        if not metas:
            raise PanNotFoundError(f"No metadata for file id {fs_id}")
        return metas[0]

    def file_metas_by_path(self, paths: Sequence[str]) -> list[FileMeta]:
        """Fetch metadata for several paths.

        Each path is resolved through a listing of its parent directory.

        Raises:
            PanNotFoundError: If any path does not exist
        """
        entries = [self.stat(path) for path in paths]
        fs_ids = [e.fs_id for e in entries]
        metas = {meta.fs_id: meta for meta in self.file_metas(fs_ids)}
        missing = [e.path for e in entries if e.fs_id not in metas]
        if missing:
            raise PanNotFoundError(f"No metadata for {', '.join(missing)}")
        return [metas[e.fs_id] for e in entries]

    def file_meta_by_path(self, path: str) -> FileMeta:
        return self.file_metas_by_path([path])[0]

    def stat(self, path: str) -> FileEntry:
        """Find the listing entry of a remote path.

        Args:
            path: Remote path, relative to the base directory

        Returns:
            The entry as listed in its parent directory

        Raises:
            PanNotFoundError: If the parent or the entry does not exist
        """
        abs_path = self.abs_path(path)
        parent, name = posixpath.split(abs_path)
        for entry in self._list_abs(parent):
            if entry.server_filename == name:
                return entry
        raise PanNotFoundError(f"Not found: {abs_path}")

    # =========================
    # Download
    # =========================

    @contextmanager
    def stream_dlink(self, dlink: str, offset: int = 0) -> Iterator[httpx.Response]:
        """Open a streaming GET on a download link.

        Args:
            dlink: Direct link from ``file_metas``
            offset: Byte offset to start from; a ``Range`` header is sent
                when positive

        Yields:
            The open response. Status 416 is passed through so callers can
            recognize an already complete partial file.

        Raises:
            PanNotFoundError: If the link target is gone
            PanDownloadError: On any other HTTP failure
            PanNetworkError: On transport failures
        """
        headers = {"User-Agent": DLINK_USER_AGENT}
        if offset > 0:
            headers["Range"] = f"bytes={offset}-"
        client = self._get_client()
        try:
            with client.stream(
                "GET",
                dlink,
                params={"access_token": self.access_token},
                headers=headers,
            ) as response:
                if response.status_code == 416:
                    yield response
                    return
                if response.status_code == 404:
                    raise PanNotFoundError(f"Download link expired or missing: {dlink}")
                response.raise_for_status()
                yield response
        except httpx.HTTPStatusError as e:
            raise PanDownloadError(f"Download failed: {e}") from e
        except httpx.RequestError as e:
            raise PanNetworkError(f"Network error during download: {e}") from e

    # =========================
    # Upload Operations
    # =========================

    def upload(
        self,
        src: str | Path,
        dst: str,
        progress: ProgressSink | None = None,
        workers: int = 1,
        cancel: CancelToken | None = None,
    ) -> UploadResponse:
        """Upload a local file, overwriting the remote path.

        Files smaller than ``MIN_SIZE_MULTIPART_UPLOAD`` are sent in one
        request; larger files go through the chunked protocol.

        Args:
            src: Local file
            dst: Remote path, relative to the base directory
            progress: Optional progress sink
            workers: Maximum number of blocks uploaded concurrently
            cancel: Optional cancellation token

        Returns:
            Canonical metadata of the uploaded file

        Raises:
            PanUploadError: If any step of the upload fails
        """
        src = Path(src)
        dst_abs = self.abs_path(dst)
        try:
            st = src.stat()
        except OSError as e:
            raise PanUploadError(f"Cannot read {src}: {e}") from e

        start_time = time.time()
        if st.st_size < MIN_SIZE_MULTIPART_UPLOAD:
            resp = self._upload_single(src, dst_abs, progress)
        else:
            resp = self._upload_multipart(
                src,
                dst_abs,
                size=st.st_size,
                ctime=int(st.st_ctime),
                mtime=int(st.st_mtime),
                progress=progress,
                workers=workers,
                cancel=cancel,
            )
        logger.debug(
            f"Uploaded {src} -> {resp.path} ({st.st_size} bytes) "
            f"in {time.time() - start_time:.2f}s"
        )
        return resp

    def _upload_single(
        self,
        src: Path,
        dst_abs: str,
        progress: ProgressSink | None,
    ) -> UploadResponse:
        try:
            with open(src, "rb") as f:
                body: Any = f
                if progress is not None:
                    progress.start(os.fstat(f.fileno()).st_size)
                    body = TrackedReader(f, progress)
                try:
                    data = self._request(
                        "POST",
                        f"{self.config.pcs_host}/rest/2.0/pcs/file",
                        params={
                            "method": "upload",
                            "path": dst_abs,
                            "ondup": ONDUP_OVERWRITE,
                        },
                        files={"file": (src.name, body)},
                    )
                finally:
                    if progress is not None:
                        progress.done()
        except (PanAPIError, PanNetworkError, OSError) as e:
            raise PanUploadError(f"Upload {dst_abs} failed: {e}") from e
        return UploadResponse.from_dict(data)

    def _upload_multipart(
        self,
        src: Path,
        dst_abs: str,
        size: int,
        ctime: int,
        mtime: int,
        progress: ProgressSink | None,
        workers: int,
        cancel: CancelToken | None,
    ) -> UploadResponse:
        try:
            block_list = compute_block_list(src, UPLOAD_API_BLOCK_SIZE, cancel)
        except OSError as e:
            raise PanUploadError(f"Compute block list of {src}: {e}") from e
        block_list_data = json.dumps(block_list)

        try:
            precreate = self._precreate(dst_abs, size, block_list_data)
        except (PanAPIError, PanNetworkError) as e:
            raise PanUploadError(f"Precreate {dst_abs}: {e}") from e
        logger.debug(
            f"Precreated {dst_abs}: {len(precreate.block_list)} of "
            f"{len(block_list)} blocks needed"
        )

        if progress is not None:
            needed_bytes = sum(
                min(UPLOAD_API_BLOCK_SIZE, size - seq * UPLOAD_API_BLOCK_SIZE)
                for seq in precreate.block_list
            )
            progress.start(needed_bytes)
        try:
            if workers > 1 and len(precreate.block_list) > 1:
                with ParallelDo(workers, cancel=cancel) as pd:
                    for seq in precreate.block_list:
                        pd.submit(
                            self._upload_block,
                            src,
                            dst_abs,
                            precreate.upload_id,
                            seq,
                            progress,
                        )
                    pd.join()
            else:
                for seq in precreate.block_list:
                    if cancel is not None:
                        cancel.check()
                    self._upload_block(
                        src, dst_abs, precreate.upload_id, seq, progress
                    )
        except PanMultiError as e:
            raise PanUploadError(f"Upload {dst_abs}: {e}") from e
        finally:
            if progress is not None:
                progress.done()

        try:
            return self._create(
                dst_abs, size, precreate.upload_id, block_list_data, ctime, mtime
            )
        except (PanAPIError, PanNetworkError) as e:
            raise PanUploadError(f"File create {dst_abs}: {e}") from e

    def _precreate(
        self, dst_abs: str, size: int, block_list_data: str
    ) -> PrecreateResponse:
        data = self._request(
            "POST",
            self._file_url,
            params={"method": "precreate"},
            data={
                "path": dst_abs,
                "isdir": 0,
                "autoinit": 1,
                "size": size,
                "block_list": block_list_data,
                "rtype": RTYPE_OVERWRITE,
            },
        )
        return PrecreateResponse.from_dict(data)

    def _upload_block(
        self,
        src: Path,
        dst_abs: str,
        upload_id: str,
        partseq: int,
        progress: ProgressSink | None,
    ) -> str:
        """Upload one block of a chunked upload.

        Returns:
            The block md5 reported by the server
        """
        try:
            with open(src, "rb") as f:
                f.seek(partseq * UPLOAD_API_BLOCK_SIZE)
                block: Any = io.BytesIO(f.read(UPLOAD_API_BLOCK_SIZE))
            if progress is not None:
                block = TrackedReader(block, progress)
            data = self._request(
                "POST",
                f"{self.config.pcs_host}/rest/2.0/pcs/superfile2",
                params={
                    "method": "upload",
                    "type": "tmpfile",
                    "path": dst_abs,
                    "uploadid": upload_id,
                    "partseq": partseq,
                },
                files={"file": (src.name, block)},
            )
        except PanCancelledError:
            raise
        except (PanAPIError, PanNetworkError, OSError) as e:
            raise PanUploadError(f"Upload {dst_abs} ({partseq}): {e}") from e
        logger.debug(f"Uploaded block {partseq} of {dst_abs}: {data.get('md5')}")
        return str(data.get("md5", ""))

    def _create(
        self,
        dst_abs: str,
        size: int,
        upload_id: str,
        block_list_data: str,
        ctime: int,
        mtime: int,
    ) -> UploadResponse:
        data = self._request(
            "POST",
            self._file_url,
            params={"method": "create"},
            data={
                "path": dst_abs,
                "isdir": 0,
                "uploadid": upload_id,
                "block_list": block_list_data,
                "rtype": RTYPE_OVERWRITE,
                "size": size,
                "local_ctime": ctime,
                "local_mtime": mtime,
            },
        )
        return UploadResponse.from_dict(data)

    # =========================
    # File manager operations
    # =========================

    def _filemanager(
        self,
        opera: str,
        filelist: list[Any],
        ondup: str | None = None,
    ) -> FileManagerResponse:
        form: dict[str, Any] = {"async": 1, "filelist": json.dumps(filelist)}
        if ondup:
            form["ondup"] = ondup
        data = self._request(
            "POST",
            self._file_url,
            params={"method": "filemanager", "opera": opera},
            data=form,
        )
        resp = FileManagerResponse.from_dict(data)
        logger.debug(
            f"filemanager {opera}: task {resp.task_id}, {len(resp.info)} items"
        )
        return resp

    def delete(self, paths: str | Sequence[str]) -> FileManagerResponse:
        """Delete remote files or directories.

        Args:
            paths: One path or several paths, relative to the base directory
        """
        if isinstance(paths, str):
            paths = [paths]
        return self._filemanager("delete", [self.abs_path(p) for p in paths])

    def rename(self, path: str, new_name: str) -> FileManagerResponse:
        """Rename a remote entry in place."""
        return self._filemanager(
            "rename",
            [{"path": self.abs_path(path), "newname": new_name}],
            ondup=ONDUP_OVERWRITE,
        )

    def _relocate(self, opera: str, src: str, dst: str) -> FileManagerResponse:
        dst_abs = self.abs_path(dst)
        dest, newname = posixpath.split(dst_abs)
        return self._filemanager(
            opera,
            [{"path": self.abs_path(src), "dest": dest, "newname": newname}],
            ondup=ONDUP_OVERWRITE,
        )

    def copy(self, src: str, dst: str) -> FileManagerResponse:
        """Copy a remote entry to the full destination path ``dst``."""
        return self._relocate("copy", src, dst)

    def move(self, src: str, dst: str) -> FileManagerResponse:
        """Move a remote entry to the full destination path ``dst``."""
        return self._relocate("move", src, dst)

    # =========================
    # Account
    # =========================

    def quota(self) -> QuotaInfo:
        data = self._request(
            "GET",
            f"{self.config.pan_host}/api/quota",
            params={"checkfree": 1, "checkexpire": 1},
        )
        return QuotaInfo.from_dict(data)

    def uinfo(self) -> UserInfo:
        data = self._request(
            "GET",
            f"{self.config.pan_host}/rest/2.0/xpan/nas",
            params={"method": "uinfo"},
        )
        return UserInfo.from_dict(data)
