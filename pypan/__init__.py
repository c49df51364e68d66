"""pypan - Sync local directories with pan cloud storage."""

from .api import PanClient
from .config import Config
from .exceptions import (
    PanAPIError,
    PanAuthenticationError,
    PanCacheError,
    PanCancelledError,
    PanConfigError,
    PanDownloadError,
    PanError,
    PanInvalidResponseError,
    PanMultiError,
    PanNetworkError,
    PanNotFoundError,
    PanPermissionError,
    PanRateLimitError,
    PanSyncError,
    PanTransferError,
    PanTypeMismatchError,
    PanUploadError,
    PanWalkError,
)
from .parallel import CancelToken, ParallelDo
from .readonly import ReadOnlyClient
from .transfer import DownloadManager
from .utils import compute_block_list, md5_file

__all__ = [
    "PanClient",
    "ReadOnlyClient",
    "Config",
    "CancelToken",
    "ParallelDo",
    "DownloadManager",
    "PanError",
    "PanAPIError",
    "PanAuthenticationError",
    "PanCacheError",
    "PanCancelledError",
    "PanConfigError",
    "PanDownloadError",
    "PanInvalidResponseError",
    "PanMultiError",
    "PanNetworkError",
    "PanNotFoundError",
    "PanPermissionError",
    "PanRateLimitError",
    "PanSyncError",
    "PanTransferError",
    "PanTypeMismatchError",
    "PanUploadError",
    "PanWalkError",
    "compute_block_list",
    "md5_file",
]
