"""Unit tests for the pypan CLI commands."""

import json
from unittest.mock import patch

import pytest
from click.testing import CliRunner

from pypan.cli import main
from pypan.exceptions import PanNotFoundError, PanSyncError, PanUploadError
from pypan.models import (
    FileEntry,
    FileManagerItem,
    FileManagerResponse,
    QuotaInfo,
    UserInfo,
)
from pypan.sync import SyncDirection, SyncStats


@pytest.fixture
def runner():
    """Provide a Click CLI test runner."""
    return CliRunner()


@pytest.fixture
def base_args(tmp_path):
    """Global options pointing at an isolated run directory."""
    return ["--token", "tok", "--run-dir", str(tmp_path / "run")]


class TestMainGroup:
    """Tests for the main CLI group."""

    def test_main_help(self, runner):
        """Test main help shows all commands."""
        result = runner.invoke(main, ["--help"])
        assert result.exit_code == 0
        for command in ["syncup", "syncdown", "down", "up", "ls", "walk", "quota"]:
            assert command in result.output
        assert "--dry-run" in result.output

    def test_missing_token(self, runner, tmp_path):
        """Test that commands fail cleanly without an access token."""
        result = runner.invoke(
            main,
            ["--run-dir", str(tmp_path / "run"), "ls"],
            env={"PYPAN_ACCESS_TOKEN": None},
        )
        assert result.exit_code == 1
        assert "Access token not configured" in result.output

    def test_stored_token(self, runner, tmp_path):
        """Test that the token is read from the run directory."""
        run_dir = tmp_path / "run"
        run_dir.mkdir()
        (run_dir / "accessAuth.json").write_text(json.dumps({"access_token": "stored"}))

        with patch("pypan.cli.PanClient") as mock_client_class:
            mock_client_class.return_value.list.return_value = []
            result = runner.invoke(
                main,
                ["--run-dir", str(run_dir), "--json", "ls"],
                env={"PYPAN_ACCESS_TOKEN": None},
            )

        assert result.exit_code == 0
        config = mock_client_class.call_args.args[0]
        assert config.access_token == "stored"


class TestSyncCommands:
    """Tests for syncup and syncdown."""

    @patch("pypan.cli.PanClient")
    @patch("pypan.cli.SyncEngine")
    def test_syncup(
        self, mock_engine_class, mock_client_class, runner, base_args, tmp_path
    ):
        """Test that syncup runs an upload sync and prints a summary."""
        engine = mock_engine_class.from_client.return_value
        engine.synchronize.return_value = SyncStats(uploads=2, skips=3)

        result = runner.invoke(
            main, base_args + ["syncup", str(tmp_path), "/photos", "-j", "4"]
        )

        assert result.exit_code == 0, result.output
        assert "Sync Complete" in result.output
        assert "Uploaded: 2" in result.output
        engine.synchronize.assert_called_once_with(str(tmp_path), "/photos")
        sync_config = mock_engine_class.from_client.call_args.args[2]
        assert sync_config.direction == SyncDirection.UPLOAD
        assert sync_config.max_workers == 4
        assert sync_config.no_delete is False

    @patch("pypan.cli.PanClient")
    @patch("pypan.cli.SyncEngine")
    def test_syncdown_options(
        self, mock_engine_class, mock_client_class, runner, base_args, tmp_path
    ):
        """Test that syncdown passes direction and flags."""
        engine = mock_engine_class.from_client.return_value
        engine.synchronize.return_value = SyncStats(downloads=1)

        result = runner.invoke(
            main,
            base_args
            + [
                "--json",
                "syncdown",
                "/photos",
                str(tmp_path),
                "--no-delete",
                "-c",
                "--probe",
            ],
        )

        assert result.exit_code == 0, result.output
        assert json.loads(result.output)["Downloaded"] == 1
        engine.synchronize.assert_called_once_with(str(tmp_path), "/photos")
        sync_config = mock_engine_class.from_client.call_args.args[2]
        assert sync_config.direction == SyncDirection.DOWNLOAD
        assert sync_config.no_delete is True
        assert sync_config.resume is True
        assert sync_config.probe_remote is True

    @patch("pypan.cli.PanClient")
    @patch("pypan.cli.SyncEngine")
    def test_dry_run(
        self, mock_engine_class, mock_client_class, runner, base_args, tmp_path
    ):
        """Test that --dry-run reaches the sync configuration."""
        engine = mock_engine_class.from_client.return_value
        engine.synchronize.return_value = SyncStats()

        result = runner.invoke(main, base_args + ["-n", "syncup", str(tmp_path), "/p"])

        assert result.exit_code == 0, result.output
        assert "Dry Run Complete" in result.output
        assert mock_engine_class.from_client.call_args.args[2].dry_run is True

    @patch("pypan.cli.PanClient")
    @patch("pypan.cli.SyncEngine")
    def test_sync_error(
        self, mock_engine_class, mock_client_class, runner, base_args, tmp_path
    ):
        """Test that sync failures exit with status 1."""
        mock_engine_class.from_client.return_value.synchronize.side_effect = (
            PanSyncError("sub", PanUploadError("boom"))
        )

        result = runner.invoke(main, base_args + ["syncup", str(tmp_path), "/p"])

        assert result.exit_code == 1
        assert "sub: boom" in result.output


class TestFileCommands:
    """Tests for the remote file commands."""

    @patch("pypan.cli.PanClient")
    def test_ls_json(self, mock_client_class, runner, base_args):
        """Test listing a directory as JSON."""
        mock_client_class.return_value.list.return_value = [
            FileEntry(
                fs_id=1,
                path="/apps/pypan/a.txt",
                server_filename="a.txt",
                size=2048,
                isdir=False,
                md5="m",
            ),
            FileEntry(
                fs_id=2,
                path="/apps/pypan/sub",
                server_filename="sub",
                size=0,
                isdir=True,
            ),
        ]

        result = runner.invoke(main, base_args + ["--json", "ls", "/"])

        assert result.exit_code == 0, result.output
        rows = json.loads(result.output)
        assert [r["name"] for r in rows] == ["a.txt", "sub/"]
        assert rows[0]["size"] == "2.0 KiB"
        mock_client_class.return_value.list.assert_called_once_with("/")

    @patch("pypan.cli.PanClient")
    def test_ls_not_found(self, mock_client_class, runner, base_args):
        """Test listing a missing directory."""
        mock_client_class.return_value.list.side_effect = PanNotFoundError("Not found")

        result = runner.invoke(main, base_args + ["ls", "/missing"])

        assert result.exit_code == 1
        assert "Not found" in result.output

    @patch("pypan.cli.PanClient")
    def test_rm_reports_failures(self, mock_client_class, runner, base_args):
        """Test that items the server failed to delete are reported."""
        mock_client_class.return_value.delete.return_value = FileManagerResponse(
            info=[FileManagerItem(errno=12, path="/apps/pypan/a")]
        )

        result = runner.invoke(main, base_args + ["rm", "a"])

        assert result.exit_code == 1
        assert "Failed to delete /apps/pypan/a" in result.output

    @patch("pypan.cli.PanClient")
    def test_dry_run_rm(self, mock_client_class, runner, base_args):
        """Test that a dry run never sends a delete."""
        mock_client_class.return_value.abs_path.return_value = "/apps/pypan/a"

        result = runner.invoke(main, base_args + ["-n", "rm", "a"])

        assert result.exit_code == 0, result.output
        mock_client_class.return_value.delete.assert_not_called()

    @patch("pypan.cli.PanClient")
    def test_mv(self, mock_client_class, runner, base_args):
        """Test moving a remote entry."""
        result = runner.invoke(main, base_args + ["mv", "a", "b/c"])
        assert result.exit_code == 0, result.output
        mock_client_class.return_value.move.assert_called_once_with("a", "b/c")

    @patch("pypan.cli.PanClient")
    @patch("pypan.cli.DownloadManager")
    def test_down_to_stdout(
        self, mock_manager_class, mock_client_class, runner, base_args
    ):
        """Test that down without OUT writes the file content to stdout."""
        manager = mock_manager_class.return_value
        manager.stream.side_effect = lambda path, writer: writer.write(b"content")

        result = runner.invoke(main, base_args + ["-q", "down", "a.txt"])

        assert result.exit_code == 0, result.output
        assert result.stdout_bytes == b"content"
        assert manager.stream.call_args.args[0] == "a.txt"
        manager.download.assert_not_called()

    @patch("pypan.cli.PanClient")
    @patch("pypan.cli.DownloadManager")
    def test_down_to_path(
        self, mock_manager_class, mock_client_class, runner, base_args, tmp_path
    ):
        """Test that down with OUT downloads to the given path."""
        result = runner.invoke(main, base_args + ["down", "dir", str(tmp_path / "o")])

        assert result.exit_code == 0, result.output
        mock_manager_class.return_value.download.assert_called_once_with(
            "dir", tmp_path / "o"
        )
        mock_manager_class.return_value.stream.assert_not_called()

    @patch("pypan.cli.PanClient")
    def test_quota(self, mock_client_class, runner, base_args):
        """Test showing the storage quota."""
        mock_client_class.return_value.quota.return_value = QuotaInfo(
            total=2048, used=1024, free=1024
        )
        result = runner.invoke(main, base_args + ["--json", "quota"])
        assert result.exit_code == 0, result.output
        assert json.loads(result.output) == {
            "Total": "2.0 KiB",
            "Used": "1.0 KiB",
            "Free": "1.0 KiB",
        }

    @patch("pypan.cli.PanClient")
    def test_whoami(self, mock_client_class, runner, base_args):
        """Test showing the account of the token."""
        mock_client_class.return_value.uinfo.return_value = UserInfo(
            uk=42, baidu_name="b", netdisk_name="n", vip_type=1
        )
        result = runner.invoke(main, base_args + ["--json", "whoami"])
        assert result.exit_code == 0, result.output
        assert json.loads(result.output) == {"Name": "n", "User ID": 42, "VIP type": 1}

    def test_walk_exclusive_filters(self, runner, base_args):
        """Test that --files and --dirs cannot be combined."""
        result = runner.invoke(
            main, base_args + ["walk", "--files", "--dirs", "/", "cat"]
        )
        assert result.exit_code == 2
