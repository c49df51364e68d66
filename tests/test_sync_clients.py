"""Tests for the local and remote tree clients of the sync engine."""

import os
from contextlib import contextmanager
from pathlib import Path
from unittest.mock import Mock

import pytest

from pypan.api import PanClient
from pypan.exceptions import (
    PanAPIError,
    PanNetworkError,
    PanNotFoundError,
    PanTypeMismatchError,
)
from pypan.models import FileEntry, FileManagerItem, FileManagerResponse, FileMeta
from pypan.sync import (
    DestinationCacheEntry,
    LocalSourceClient,
    ReadOnlyDestinationClient,
    RemoteDestinationClient,
)
from pypan.sync.entries import DestinationEntry
from pypan.transfer import DownloadManager


class TestLocalSourceClient:
    """Tests for LocalSourceClient."""

    def test_new_directory(self, tmp_path):
        """Test the entry of a root directory."""
        entry = LocalSourceClient().new(str(tmp_path))
        assert entry.is_dir
        assert entry.rel_path == ""
        assert entry.abs_path == str(tmp_path)

    def test_new_missing(self, tmp_path):
        """Test that a missing root raises PanNotFoundError."""
        with pytest.raises(PanNotFoundError):
            LocalSourceClient().new(str(tmp_path / "missing"))

    def test_list(self, tmp_path):
        """Test listing files and directories with relative paths."""
        (tmp_path / "a.txt").write_bytes(b"abc")
        (tmp_path / "sub").mkdir()
        client = LocalSourceClient()
        root = client.new(str(tmp_path))

        children = {e.name: e for e in client.list(root)}

        assert children["a.txt"].size == 3
        assert not children["a.txt"].is_dir
        assert children["sub"].is_dir
        sub_children = client.list(children["sub"])
        assert sub_children == []
        (tmp_path / "sub" / "b").write_bytes(b"")
        assert client.list(children["sub"])[0].rel_path == "sub/b"

    def test_list_skips_symlinks(self, tmp_path):
        """Test that symlinks are not synchronized."""
        (tmp_path / "a.txt").write_bytes(b"abc")
        os.symlink(tmp_path / "a.txt", tmp_path / "link")
        client = LocalSourceClient()

        names = [e.name for e in client.list(client.new(str(tmp_path)))]

        assert names == ["a.txt"]

    def test_list_skips_partial_downloads(self, tmp_path):
        """Test that leftover .downloading files are not synchronized."""
        (tmp_path / "a.txt").write_bytes(b"abc")
        (tmp_path / "b.txt.downloading").write_bytes(b"par")
        client = LocalSourceClient()

        names = [e.name for e in client.list(client.new(str(tmp_path)))]

        assert names == ["a.txt"]

    def test_delete_missing_entry(self, tmp_path):
        """Test that deleting an already removed entry is not an error."""
        (tmp_path / "a.txt").write_bytes(b"abc")
        (tmp_path / "sub").mkdir()
        client = LocalSourceClient()
        entries = client.list(client.new(str(tmp_path)))
        (tmp_path / "a.txt").unlink()
        (tmp_path / "sub").rmdir()

        for entry in entries:
            client.delete(entry)

        assert list(tmp_path.iterdir()) == []

    def test_list_file_raises(self, tmp_path):
        """Test that listing a file is a type mismatch."""
        path = tmp_path / "a.txt"
        path.write_bytes(b"abc")
        client = LocalSourceClient()
        with pytest.raises(PanTypeMismatchError):
            client.list(client.new(str(path)))

    def test_delete(self, tmp_path):
        """Test deleting a file and a whole directory."""
        (tmp_path / "a.txt").write_bytes(b"abc")
        (tmp_path / "sub" / "deep").mkdir(parents=True)
        (tmp_path / "sub" / "deep" / "b").write_bytes(b"")
        client = LocalSourceClient()

        for entry in client.list(client.new(str(tmp_path))):
            client.delete(entry)

        assert list(tmp_path.iterdir()) == []


class TestRemoteDestinationClient:
    """Tests for RemoteDestinationClient."""

    @pytest.fixture
    def mock_client(self):
        """Create a mock API client."""
        client = Mock(spec=PanClient)
        client.abs_path.side_effect = lambda p: "/apps/pypan/" + p.lstrip("/")
        client.rel_path.side_effect = lambda p: p[len("/apps/pypan"):]
        return client

    @pytest.fixture
    def remote(self, mock_client):
        """Create a destination client around the mock."""
        return RemoteDestinationClient(mock_client, Mock(spec=DownloadManager))

    def _dir(self, path="/apps/pypan/d"):
        return DestinationEntry(
            name="d", rel_path="/d", abs_path=path, size=0, is_dir=True
        )

    def test_list_maps_entries(self, remote, mock_client):
        """Test that listing entries become destination entries."""
        mock_client.list.return_value = [
            FileEntry(
                fs_id=5,
                path="/apps/pypan/d/a.txt",
                server_filename="a.txt",
                size=3,
                isdir=False,
                md5="m",
            )
        ]

        (entry,) = remote.list(self._dir())

        mock_client.list.assert_called_once_with("/d")
        assert entry.name == "a.txt"
        assert entry.rel_path == "/d/a.txt"
        assert entry.content_hash == "m"
        assert entry.fs_id == 5

    def test_list_file_raises(self, remote):
        """Test that listing a file is a type mismatch."""
        entry = DestinationEntry(
            name="a", rel_path="/a", abs_path="/apps/pypan/a", size=1, is_dir=False
        )
        with pytest.raises(PanTypeMismatchError):
            remote.list(entry)

    def test_delete_tolerates_missing(self, remote, mock_client):
        """Test that deleting an already missing entry succeeds."""
        mock_client.delete.return_value = FileManagerResponse(
            info=[FileManagerItem(errno=-9, path="/apps/pypan/d")]
        )
        remote.delete(self._dir())
        mock_client.delete.assert_called_once_with("/d")

    def test_delete_failure(self, remote, mock_client):
        """Test that other per-item failures raise."""
        mock_client.delete.return_value = FileManagerResponse(
            info=[FileManagerItem(errno=12, path="/apps/pypan/d")]
        )
        with pytest.raises(PanAPIError):
            remote.delete(self._dir())

    def test_download_by_id(self, remote):
        """Test that downloads go through the download manager."""
        entry = DestinationEntry(
            name="a", rel_path="/a", abs_path="/apps/pypan/a", size=1,
            is_dir=False, fs_id=8,
        )
        remote.download(entry, "/tmp/x/a")
        remote.downloader.download_by_id.assert_called_once_with(8, Path("/tmp/x/a"))

    def test_probe(self, remote, mock_client):
        """Test that probing reads the Content-MD5 header of the download."""
        mock_client.file_meta.return_value = FileMeta(
            fs_id=8, path="/apps/pypan/a", server_filename="a", size=3,
            isdir=False, md5="dst", dlink="https://d/x",
        )

        @contextmanager
        def stream(dlink, offset=0):
            yield Mock(headers={"Content-MD5": "ABC"})

        mock_client.stream_dlink.side_effect = stream
        entry = DestinationEntry(
            name="a", rel_path="/a", abs_path="/apps/pypan/a", size=3,
            is_dir=False, fs_id=8,
        )

        assert remote.probe(entry) == DestinationCacheEntry("dst", "abc", 3)

    def test_probe_failure(self, remote, mock_client):
        """Test that a failed probe yields no entry."""
        mock_client.file_meta.side_effect = PanNetworkError("down")
        entry = DestinationEntry(
            name="a", rel_path="/a", abs_path="/apps/pypan/a", size=3,
            is_dir=False, fs_id=8,
        )
        assert remote.probe(entry) is None


class TestReadOnlyDestinationClient:
    """Tests for the dry-run destination wrapper."""

    def test_mutations_are_logged(self, caplog):
        """Test that uploads and deletions are only logged."""
        inner = Mock()
        inner.abs_path.return_value = "/apps/pypan/a"
        client = ReadOnlyDestinationClient(inner)
        src = Mock(abs_path="/l/a", size=4)
        entry = DestinationEntry(
            name="a", rel_path="/a", abs_path="/apps/pypan/a", size=1, is_dir=False
        )

        with caplog.at_level("INFO", logger="pypan"):
            resp = client.upload(src, "a")
            client.delete(entry)
            client.download(entry, "/l/a")

        assert resp.md5 == ""
        assert resp.size == 4
        inner.upload.assert_not_called()
        inner.delete.assert_not_called()
        inner.download.assert_not_called()
        assert "[dry-run] upload /l/a -> /apps/pypan/a" in caplog.text
