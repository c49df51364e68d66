"""Utility functions for pypan."""

import hashlib
import re
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Optional, Union

if TYPE_CHECKING:
    from .parallel import CancelToken

# =============================================================================
# Constants for file operations
# =============================================================================

KiB: int = 1024
MiB: int = 1024 * KiB

# Block size used by the chunked upload API (4 MB)
UPLOAD_API_BLOCK_SIZE: int = 4 * MiB

# Files at or above this size are uploaded in blocks (5 MB)
MIN_SIZE_MULTIPART_UPLOAD: int = 5 * MiB

# Read size when hashing local files
HASH_READ_SIZE: int = 1 * MiB

# Read size when streaming downloads to disk
DOWNLOAD_CHUNK_SIZE: int = 64 * KiB

# Suffix of partially downloaded files
DOWNLOADING_SUFFIX: str = ".downloading"

# Retry configuration for transient errors
DEFAULT_MAX_RETRIES: int = 3
DEFAULT_RETRY_DELAY: float = 1.0  # seconds


# =============================================================================
# Size and time formatting utilities
# =============================================================================


def format_size(size_bytes: int) -> str:
    """Format a byte count with binary units.

    Examples:
        >>> format_size(256)
        '256 B'
        >>> format_size(1536)
        '1.5 KiB'
    """
    if size_bytes < KiB:
        return f"{size_bytes} B"
    value = size_bytes / KiB
    for unit in ("KiB", "MiB", "GiB"):
        if value < KiB:
            return f"{value:.1f} {unit}"
        value /= KiB
    return f"{value:.1f} TiB"


def format_timestamp(epoch: Optional[int]) -> str:
    """Format a unix timestamp from the API for display."""
    if not epoch:
        return "-"
    return datetime.fromtimestamp(epoch).strftime("%Y-%m-%d %H:%M:%S")


# =============================================================================
# Hash calculation utilities
# =============================================================================


def md5_file(
    path: Union[str, Path],
    cancel: Optional["CancelToken"] = None,
) -> str:
    """Compute the md5 hex digest of a whole file.

    Args:
        path: File to hash
        cancel: Optional cancellation token, checked between reads

    Returns:
        Lowercase hex digest

    Raises:
        PanCancelledError: If cancellation is observed while reading
    """
    digest = hashlib.md5()
    with open(path, "rb") as f:
        while True:
            if cancel is not None:
                cancel.check()
            chunk = f.read(HASH_READ_SIZE)
            if not chunk:
                break
            digest.update(chunk)
    return digest.hexdigest()


def compute_block_list(
    path: Union[str, Path],
    block_size: int = UPLOAD_API_BLOCK_SIZE,
    cancel: Optional["CancelToken"] = None,
) -> list[str]:
    """Compute the md5 hex digest of each fixed-size block of a file.

    The last block may be shorter than ``block_size``. An empty file has
    a single block: the digest of no bytes.

    Args:
        path: File to hash
        block_size: Block size in bytes
        cancel: Optional cancellation token, checked between blocks

    Returns:
        Ordered list of block digests
    """
    blocks: list[str] = []
    with open(path, "rb") as f:
        while True:
            if cancel is not None:
                cancel.check()
            data = f.read(block_size)
            if not data and blocks:
                break
            blocks.append(hashlib.md5(data).hexdigest())
            if len(data) < block_size:
                break
    return blocks


# =============================================================================
# HTTP header utilities
# =============================================================================

_CONTENT_RANGE_RE = re.compile(r"^bytes (\d+)-(\d+)/(\d+|\*)$")


def parse_content_range(value: Optional[str]) -> Optional[tuple[int, int, int]]:
    """Parse a ``Content-Range`` response header.

    Args:
        value: Header value such as ``"bytes 100-199/200"``

    Returns:
        Tuple of (start, end, total) or None if the header is absent or
        malformed. An unknown total (``*``) is reported as -1.

    Examples:
        >>> parse_content_range("bytes 100-199/200")
        (100, 199, 200)
        >>> parse_content_range("bytes 0-9/*")
        (0, 9, -1)
        >>> parse_content_range("items 1-2/3") is None
        True
    """
    if not value:
        return None
    match = _CONTENT_RANGE_RE.match(value.strip())
    if not match:
        return None
    start, end, total = match.groups()
    return int(start), int(end), -1 if total == "*" else int(total)
