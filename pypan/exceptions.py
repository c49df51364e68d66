"""Exceptions raised by pypan."""

from typing import Optional


class PanError(Exception):
    """Base exception for all pypan errors."""


class PanConfigError(PanError):
    """Raised when configuration is missing or invalid."""


class PanAPIError(PanError):
    """Raised when the remote API returns an error.

    Attributes:
        code: Numeric ``errno``/``error_code`` or string ``error`` reported
            by the server, if any
        request_id: Server request id, if any
    """

    def __init__(
        self,
        message: str,
        code: Optional[object] = None,
        request_id: Optional[str] = None,
    ):
        super().__init__(message)
        self.code = code
        self.request_id = request_id


class PanNotFoundError(PanAPIError):
    """Raised when a remote or local path does not exist."""


class PanAuthenticationError(PanAPIError):
    """Raised when the access token is rejected."""


class PanPermissionError(PanAPIError):
    """Raised when access to a resource is forbidden."""


class PanRateLimitError(PanAPIError):
    """Raised when the server throttles requests."""


class PanInvalidResponseError(PanAPIError):
    """Raised when the server response cannot be decoded."""


class PanNetworkError(PanError):
    """Raised on transport level failures."""


class PanTypeMismatchError(PanError):
    """Raised when a path is a directory on one side and a file on the other."""


class PanTransferError(PanError):
    """Base exception for failed transfers."""


class PanUploadError(PanTransferError):
    """Raised when an upload fails."""


class PanDownloadError(PanTransferError):
    """Raised when a download fails."""


class PanCacheError(PanError):
    """Raised when the local cache store cannot be read or written."""


class PanCancelledError(PanError):
    """Raised when an operation observes cancellation."""


class PanWalkError(PanError):
    """Raised when a walk command exits with a non-zero status."""


class PanSyncError(PanError):
    """Wraps an error raised while synchronizing a directory.

    Nested directory failures wrap each other, so ``str()`` reads as a
    path trail ending in the original message.
    """

    def __init__(self, path: str, cause: BaseException):
        super().__init__(f"{path}: {cause}")
        self.path = path
        self.cause = cause


class PanMultiError(PanError):
    """Aggregate of several independent errors.

    Attributes:
        errors: The collected exceptions, in completion order
    """

    def __init__(self, errors: list[BaseException]):
        self.errors = list(errors)
        lines = [f"{len(self.errors)} errors occurred:"]
        lines.extend(f"  * {e}" for e in self.errors)
        super().__init__("\n".join(lines))

    def __len__(self) -> int:
        return len(self.errors)


def multi_error(errors: list[BaseException]) -> Optional[BaseException]:
    """Collapse a list of errors into a single exception.

    Args:
        errors: Collected errors

    Returns:
        None for an empty list, the only error for a list of one, and a
        PanMultiError otherwise
    """
    if not errors:
        return None
    if len(errors) == 1:
        return errors[0]
    return PanMultiError(errors)
