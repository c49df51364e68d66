"""Typed views of remote API responses."""

from dataclasses import asdict, dataclass, field
from typing import Any, Optional


def _int(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


@dataclass(frozen=True)
class FileEntry:
    """One file or directory as returned by the listing endpoints."""

    fs_id: int
    """Stable server side id"""

    path: str
    """Absolute remote path"""

    server_filename: str
    size: int
    isdir: bool
    md5: str = ""
    """Content hash reported by the listing (empty for directories)"""

    server_ctime: int = 0
    server_mtime: int = 0
    local_ctime: int = 0
    local_mtime: int = 0
    category: int = 0

    @classmethod
    def from_dict(cls, data: dict) -> "FileEntry":
        return cls(
            fs_id=_int(data.get("fs_id")),
            path=data.get("path", ""),
            server_filename=data.get("server_filename", ""),
            size=_int(data.get("size")),
            isdir=bool(_int(data.get("isdir"))),
            md5=data.get("md5", "") or "",
            server_ctime=_int(data.get("server_ctime")),
            server_mtime=_int(data.get("server_mtime")),
            local_ctime=_int(data.get("local_ctime")),
            local_mtime=_int(data.get("local_mtime")),
            category=_int(data.get("category")),
        )

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["isdir"] = int(self.isdir)
        return data


@dataclass(frozen=True)
class FileMeta(FileEntry):
    """File metadata including the short-lived download link."""

    dlink: str = ""

    @classmethod
    def from_dict(cls, data: dict) -> "FileMeta":
        entry = FileEntry.from_dict(
            {"server_filename": data.get("filename", ""), **data}
        )
        return cls(**{**asdict(entry), "dlink": data.get("dlink", "") or ""})


@dataclass(frozen=True)
class UploadResponse:
    """Canonical metadata of an uploaded file."""

    path: str
    size: int
    md5: str
    fs_id: int
    ctime: int = 0
    mtime: int = 0

    @classmethod
    def from_dict(cls, data: dict) -> "UploadResponse":
        return cls(
            path=data.get("path", ""),
            size=_int(data.get("size")),
            md5=data.get("md5", "") or "",
            fs_id=_int(data.get("fs_id")),
            ctime=_int(data.get("ctime")),
            mtime=_int(data.get("mtime")),
        )


@dataclass(frozen=True)
class PrecreateResponse:
    """Reply of the precreate call of a chunked upload."""

    upload_id: str
    block_list: list[int] = field(default_factory=list)
    """Indices of the blocks the server still needs"""

    return_type: int = 0

    @classmethod
    def from_dict(cls, data: dict) -> "PrecreateResponse":
        return cls(
            upload_id=data.get("uploadid", ""),
            block_list=[int(i) for i in data.get("block_list") or []],
            return_type=_int(data.get("return_type")),
        )


@dataclass(frozen=True)
class FileManagerItem:
    errno: int
    path: str


@dataclass(frozen=True)
class FileManagerResponse:
    """Per-item result of a file manager operation.

    ``task_id`` identifies the asynchronous server task; it is never polled.
    """

    info: list[FileManagerItem] = field(default_factory=list)
    task_id: int = 0

    @classmethod
    def from_dict(cls, data: dict) -> "FileManagerResponse":
        return cls(
            info=[
                FileManagerItem(errno=_int(i.get("errno")), path=i.get("path", ""))
                for i in data.get("info") or []
            ],
            task_id=_int(data.get("taskid")),
        )

    @property
    def failed(self) -> list[FileManagerItem]:
        return [item for item in self.info if item.errno != 0]


@dataclass(frozen=True)
class QuotaInfo:
    total: int
    used: int
    free: int
    expire: bool = False

    @classmethod
    def from_dict(cls, data: dict) -> "QuotaInfo":
        return cls(
            total=_int(data.get("total")),
            used=_int(data.get("used")),
            free=_int(data.get("free")),
            expire=bool(data.get("expire")),
        )


@dataclass(frozen=True)
class UserInfo:
    uk: int
    baidu_name: str
    netdisk_name: str
    vip_type: int
    avatar_url: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict) -> "UserInfo":
        return cls(
            uk=_int(data.get("uk")),
            baidu_name=data.get("baidu_name", ""),
            netdisk_name=data.get("netdisk_name", ""),
            vip_type=_int(data.get("vip_type")),
            avatar_url=data.get("avatar_url"),
        )
