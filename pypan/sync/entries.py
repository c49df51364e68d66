"""Tree entries compared by the sync engine and their ordering."""

from dataclasses import dataclass
from typing import Iterable, TypeVar, Union


@dataclass(frozen=True)
class SourceEntry:
    """A local file or directory, as seen by one listing."""

    name: str
    """Base name"""

    rel_path: str
    """Path relative to the sync root, with forward slashes ("" for a root
    directory)"""

    abs_path: str
    """Absolute local path"""

    size: int
    is_dir: bool

    mtime: float = 0.0


@dataclass(frozen=True)
class DestinationEntry:
    """A remote file or directory, as seen by one listing."""

    name: str
    rel_path: str
    """Path relative to the application base directory"""

    abs_path: str
    """Absolute remote path"""

    size: int
    is_dir: bool

    content_hash: str = ""
    """md5 reported by the remote listing"""

    fs_id: int = 0
    """Stable server side id"""

    mtime: int = 0


Entry = Union[SourceEntry, DestinationEntry]
T = TypeVar("T", SourceEntry, DestinationEntry)


def entry_sort_key(entry: Entry) -> tuple[bool, bytes]:
    """Sort key placing files before directories, then ordering by name.

    Names compare by their UTF-8 bytes, case-sensitively.
    """
    return entry.is_dir, entry.name.encode("utf-8", "surrogateescape")


def entry_less(a: Entry, b: Entry) -> bool:
    """Return True if ``a`` orders strictly before ``b``."""
    return entry_sort_key(a) < entry_sort_key(b)


def sort_entries(entries: Iterable[T]) -> list[T]:
    return sorted(entries, key=entry_sort_key)
