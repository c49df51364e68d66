"""Configuration for pypan.

Settings come from environment variables, optionally overridden by CLI
options. The run directory holds the key/value store with the access
token blob and the sync caches.
"""

import logging
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Optional

from .exceptions import PanCacheError, PanConfigError, PanNotFoundError
from .store import DirStore, JSONStore
from .utils import DEFAULT_MAX_RETRIES, DEFAULT_RETRY_DELAY

logger = logging.getLogger(__name__)

APP_USER_AGENT = "pypan/1.0.0"

# Store key of the access token blob
ACCESS_AUTH_KEY = "accessAuth.json"

DEFAULT_APP_BASE_DIR = "/apps/pypan"
DEFAULT_RUN_DIR = Path.home() / ".config" / "pypan"


@dataclass(frozen=True)
class Config:
    """Settings shared by the API client, the stores and the sync engine."""

    access_token: Optional[str] = None
    """OAuth access token sent with every API request"""

    app_base_dir: str = DEFAULT_APP_BASE_DIR
    """Remote directory that relative paths are resolved against"""

    run_dir: Path = field(default_factory=lambda: DEFAULT_RUN_DIR)
    """Local directory of the key/value store"""

    pan_host: str = "https://pan.baidu.com"
    pcs_host: str = "https://d.pcs.baidu.com"

    timeout: float = 60.0
    max_retries: int = DEFAULT_MAX_RETRIES
    retry_delay: float = DEFAULT_RETRY_DELAY

    @classmethod
    def from_env(cls, **overrides: Any) -> "Config":
        """Build a configuration from ``PYPAN_*`` environment variables.

        Args:
            **overrides: Field values that take precedence over the
                environment; None values are ignored

        Returns:
            A new Config
        """
        values: dict[str, Any] = {}
        if os.environ.get("PYPAN_ACCESS_TOKEN"):
            values["access_token"] = os.environ["PYPAN_ACCESS_TOKEN"]
        if os.environ.get("PYPAN_APP_DIR"):
            values["app_base_dir"] = os.environ["PYPAN_APP_DIR"]
        if os.environ.get("PYPAN_RUN_DIR"):
            values["run_dir"] = Path(os.environ["PYPAN_RUN_DIR"]).expanduser()
        values.update({k: v for k, v in overrides.items() if v is not None})
        if "run_dir" in values:
            values["run_dir"] = Path(values["run_dir"])
        return cls(**values)

    def with_stored_token(self) -> "Config":
        """Fill in the access token from the run directory if unset.

        Returns:
            This config when a token is already set or none is stored,
            otherwise a copy carrying the stored token
        """
        if self.access_token:
            return self
        token = load_access_token(self.run_dir)
        if not token:
            return self
        return replace(self, access_token=token)

    def require_token(self) -> str:
        """Return the access token or raise PanConfigError."""
        if not self.access_token:
            raise PanConfigError(
                "Access token not configured. Set PYPAN_ACCESS_TOKEN or store "
                f"one in {self.run_dir / ACCESS_AUTH_KEY}."
            )
        return self.access_token


def load_access_token(run_dir: Path) -> Optional[str]:
    """Read the access token from the stored auth blob.

    Args:
        run_dir: Directory of the key/value store

    Returns:
        The ``access_token`` field of the blob, or None if absent or
        unreadable
    """
    try:
        data = JSONStore(DirStore(run_dir)).get(ACCESS_AUTH_KEY)
    except PanNotFoundError:
        return None
    except PanCacheError as e:
        logger.warning(f"Failed to read access token: {e}")
        return None
    if not isinstance(data, dict):
        return None
    token = data.get("access_token")
    return token if isinstance(token, str) and token else None
