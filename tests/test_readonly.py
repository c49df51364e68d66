"""Tests for the dry-run API client wrapper."""

import logging
from unittest.mock import Mock

from pypan.api import PanClient
from pypan.readonly import ReadOnlyClient


class TestReadOnlyClient:
    """Tests for ReadOnlyClient."""

    def test_reads_are_delegated(self):
        """Test that read calls reach the wrapped client."""
        client = Mock(spec=PanClient)
        client.list.return_value = ["entry"]

        assert ReadOnlyClient(client).list("/d") == ["entry"]
        client.list.assert_called_once_with("/d")

    def test_writes_are_logged(self, caplog):
        """Test that mutations are logged instead of sent."""
        client = Mock(spec=PanClient)
        client.abs_path.side_effect = lambda p: "/apps/pypan/" + p
        ro = ReadOnlyClient(client)

        with caplog.at_level(logging.INFO, logger="pypan"):
            resp = ro.upload("local.txt", "a.txt")
            ro.delete(["a", "b"])
            ro.rename("a", "c")
            ro.copy("a", "d")
            ro.move("a", "e")

        assert resp.path == "/apps/pypan/a.txt"
        assert resp.md5 == ""
        for name in ["upload", "delete", "rename", "copy", "move"]:
            getattr(client, name).assert_not_called()
        assert "[dry-run] delete /apps/pypan/b" in caplog.text
        assert "[dry-run] move /apps/pypan/a -> /apps/pypan/e" in caplog.text
