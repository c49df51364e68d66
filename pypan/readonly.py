"""Read-only wrapper around the API client used for dry runs."""

import logging
from pathlib import Path
from typing import Any, Sequence, Union

from .api import PanClient
from .models import FileManagerResponse, UploadResponse

logger = logging.getLogger(__name__)


class ReadOnlyClient:
    """Delegates reads to a PanClient and logs writes instead of sending them.

    Every attribute not overridden here is looked up on the wrapped client,
    so listing, metadata and download calls behave exactly as usual.
    """

    def __init__(self, client: PanClient):
        self.client = client

    def __getattr__(self, name: str) -> Any:
        return getattr(self.client, name)

    def upload(
        self, src: Union[str, Path], dst: str, *args: Any, **kwargs: Any
    ) -> UploadResponse:
        logger.info(f"[dry-run] upload {src} -> {self.client.abs_path(dst)}")
        return UploadResponse(path=self.client.abs_path(dst), size=0, md5="", fs_id=0)

    def delete(self, paths: Union[str, Sequence[str]]) -> FileManagerResponse:
        if isinstance(paths, str):
            paths = [paths]
        for path in paths:
            logger.info(f"[dry-run] delete {self.client.abs_path(path)}")
        return FileManagerResponse()

    def rename(self, path: str, new_name: str) -> FileManagerResponse:
        logger.info(f"[dry-run] rename {self.client.abs_path(path)} -> {new_name}")
        return FileManagerResponse()

    def copy(self, src: str, dst: str) -> FileManagerResponse:
        logger.info(
            f"[dry-run] copy {self.client.abs_path(src)} -> {self.client.abs_path(dst)}"
        )
        return FileManagerResponse()

    def move(self, src: str, dst: str) -> FileManagerResponse:
        logger.info(
            f"[dry-run] move {self.client.abs_path(src)} -> {self.client.abs_path(dst)}"
        )
        return FileManagerResponse()
