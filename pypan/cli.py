"""CLI interface for pypan."""

import logging
from dataclasses import asdict
from pathlib import Path
from typing import Any, Optional, Union

import click

from .api import PanClient
from .config import Config
from .exceptions import PanError
from .output import OutputFormatter
from .parallel import CancelToken
from .progress import ProgressFactory, RichProgressDisplay
from .readonly import ReadOnlyClient
from .store import DirStore, JSONStore
from .sync import SyncConfig, SyncDirection, SyncEngine
from .transfer import DownloadManager
from .utils import format_timestamp
from .walker import Walker

logger = logging.getLogger(__name__)


def _get_client(ctx: Any) -> Union[PanClient, ReadOnlyClient]:
    """Create the API client for a command, read-only in dry-run mode."""
    client = PanClient(ctx.obj["config"])
    if ctx.obj["dry_run"]:
        return ReadOnlyClient(client)
    return client


def _progress_display(out: OutputFormatter) -> Optional[RichProgressDisplay]:
    if out.quiet or out.json_output:
        return None
    return RichProgressDisplay()


def _run_with_progress(ctx: Any, fn: Any) -> Any:
    """Call ``fn(progress_factory, cancel)`` and turn errors into exit codes."""
    out: OutputFormatter = ctx.obj["out"]
    cancel = CancelToken()
    display = _progress_display(out)
    factory: Optional[ProgressFactory] = display.create_sink if display else None
    try:
        if display is not None:
            with display:
                return fn(factory, cancel)
        return fn(factory, cancel)
    except KeyboardInterrupt:
        cancel.cancel()
        out.warning("Cancelled by user")
        ctx.exit(130)
    except PanError as e:
        out.error(str(e))
        ctx.exit(1)


@click.group()
@click.option(
    "--token", "-t", envvar="PYPAN_ACCESS_TOKEN", help="Access token for the API"
)
@click.option(
    "--app-dir",
    envvar="PYPAN_APP_DIR",
    help="Remote base directory that paths are relative to",
)
@click.option(
    "--run-dir",
    envvar="PYPAN_RUN_DIR",
    type=click.Path(file_okay=False, path_type=Path),
    help="Directory for the token blob and sync caches",
)
@click.option("--quiet", "-q", is_flag=True, help="Suppress non-essential output")
@click.option("--json", is_flag=True, help="Output in JSON format")
@click.option(
    "--dry-run", "-n", is_flag=True, help="Log changes instead of making them"
)
@click.option(
    "--verbose",
    "-v",
    is_flag=True,
    help="Enable verbose/debug logging output",
)
@click.version_option(package_name="pypan")
@click.pass_context
def main(
    ctx: Any,
    token: Optional[str],
    app_dir: Optional[str],
    run_dir: Optional[Path],
    quiet: bool,
    json: bool,
    dry_run: bool,
    verbose: bool,
) -> None:
    """pypan - Sync local directories with pan cloud storage."""
    ctx.ensure_object(dict)
    ctx.obj["config"] = Config.from_env(
        access_token=token, app_base_dir=app_dir, run_dir=run_dir
    ).with_stored_token()
    ctx.obj["out"] = OutputFormatter(json_output=json, quiet=quiet)
    ctx.obj["dry_run"] = dry_run

    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%H:%M:%S",
        )
        logging.getLogger("pypan").setLevel(logging.DEBUG)
    elif dry_run:
        # Dry-run actions are reported as INFO records
        logging.basicConfig(level=logging.INFO, format="%(message)s")
        logging.getLogger("httpx").setLevel(logging.WARNING)
    else:
        logging.basicConfig(level=logging.WARNING)


# =============================================================================
# Sync
# =============================================================================


def _sync(
    ctx: Any,
    direction: SyncDirection,
    local: Path,
    remote: str,
    no_delete: bool,
    resume: bool,
    workers: int,
    upload_workers: int,
    probe: bool,
) -> None:
    out: OutputFormatter = ctx.obj["out"]
    config: Config = ctx.obj["config"]
    sync_config = SyncConfig(
        direction=direction,
        dry_run=ctx.obj["dry_run"],
        no_delete=no_delete,
        resume=resume,
        max_workers=workers,
        upload_workers=upload_workers,
        probe_remote=probe,
    )

    def run(progress: Optional[ProgressFactory], cancel: CancelToken) -> None:
        with PanClient(config) as client:
            engine = SyncEngine.from_client(
                client,
                JSONStore(DirStore(config.run_dir)),
                sync_config,
                progress=progress,
                cancel=cancel,
            )
            stats = engine.synchronize(str(local), remote)
        title = "Dry Run Complete" if sync_config.dry_run else "Sync Complete"
        out.print_summary(
            title,
            [
                ("Uploaded", stats.uploads),
                ("Downloaded", stats.downloads),
                ("Deleted locally", stats.deletes_local),
                ("Deleted remotely", stats.deletes_remote),
                ("Unchanged", stats.skips),
                ("Deletions skipped", stats.delete_skips),
            ],
        )

    _run_with_progress(ctx, run)


def _sync_options(fn: Any) -> Any:
    fn = click.option(
        "--probe",
        is_flag=True,
        help="Ask the server for content hashes of files missing from the cache",
    )(fn)
    fn = click.option(
        "--upload-workers",
        type=click.IntRange(min=1),
        default=1,
        show_default=True,
        help="Blocks of one large file uploaded at a time",
    )(fn)
    fn = click.option(
        "--workers",
        "-j",
        type=click.IntRange(min=1),
        default=1,
        show_default=True,
        help="Files transferred at a time",
    )(fn)
    fn = click.option(
        "--resume", "-c", is_flag=True, help="Continue partial downloads"
    )(fn)
    fn = click.option(
        "--no-delete", is_flag=True, help="Do not delete extraneous files"
    )(fn)
    return fn


@main.command()
@click.argument("local", type=click.Path(path_type=Path))
@click.argument("remote")
@_sync_options
@click.pass_context
def syncup(
    ctx: Any,
    local: Path,
    remote: str,
    no_delete: bool,
    resume: bool,
    workers: int,
    upload_workers: int,
    probe: bool,
) -> None:
    """Make REMOTE match the LOCAL directory.

    Examples:
        pypan syncup ./photos /photos
        pypan -n syncup ./photos /photos     # Show what would change
    """
    _sync(
        ctx,
        SyncDirection.UPLOAD,
        local,
        remote,
        no_delete,
        resume,
        workers,
        upload_workers,
        probe,
    )


@main.command()
@click.argument("remote")
@click.argument("local", type=click.Path(path_type=Path))
@_sync_options
@click.pass_context
def syncdown(
    ctx: Any,
    remote: str,
    local: Path,
    no_delete: bool,
    resume: bool,
    workers: int,
    upload_workers: int,
    probe: bool,
) -> None:
    """Make the LOCAL directory match REMOTE.

    Examples:
        pypan syncdown /photos ./photos
        pypan syncdown --no-delete -c /photos ./photos
    """
    _sync(
        ctx,
        SyncDirection.DOWNLOAD,
        local,
        remote,
        no_delete,
        resume,
        workers,
        upload_workers,
        probe,
    )


# =============================================================================
# Transfers
# =============================================================================


@main.command()
@click.argument("remote")
@click.argument(
    "out_path",
    metavar="[OUT]",
    required=False,
    default="-",
    type=click.Path(allow_dash=True, path_type=Path),
)
@click.option("--resume", "-c", is_flag=True, help="Continue partial downloads")
@click.option(
    "--parallel",
    "-j",
    type=click.IntRange(min=1),
    default=1,
    show_default=True,
    help="Files downloaded at a time",
)
@click.pass_context
def down(ctx: Any, remote: str, out_path: Path, resume: bool, parallel: int) -> None:
    """Download a remote file or directory to OUT.

    Without OUT, or with OUT set to -, a single file is written to stdout.
    """
    config: Config = ctx.obj["config"]
    out: OutputFormatter = ctx.obj["out"]
    to_stdout = str(out_path) == "-"

    def run(progress: Optional[ProgressFactory], cancel: CancelToken) -> None:
        with PanClient(config) as client:
            manager = DownloadManager(
                client,
                resume=resume,
                parallel=parallel,
                progress=progress,
                cancel=cancel,
            )
            if to_stdout:
                manager.stream(remote, click.get_binary_stream("stdout"))
                return
            manager.download(remote, out_path)
        out.success(f"Downloaded {remote} to {out_path}")

    _run_with_progress(ctx, run)


@main.command()
@click.argument("local", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.argument("remote")
@click.option(
    "--workers",
    "-j",
    type=click.IntRange(min=1),
    default=1,
    show_default=True,
    help="Blocks uploaded at a time",
)
@click.pass_context
def up(ctx: Any, local: Path, remote: str, workers: int) -> None:
    """Upload the LOCAL file to the REMOTE path."""
    out: OutputFormatter = ctx.obj["out"]

    def run(progress: Optional[ProgressFactory], cancel: CancelToken) -> None:
        client = _get_client(ctx)
        sink = progress(local.name) if progress is not None else None
        resp = client.upload(
            local, remote, progress=sink, workers=workers, cancel=cancel
        )
        if out.json_output:
            out.output_json(asdict(resp))
        else:
            out.success(f"Uploaded {local} to {resp.path}")

    _run_with_progress(ctx, run)


# =============================================================================
# Remote file operations
# =============================================================================


@main.command()
@click.argument("path", default="/")
@click.option("--recursive", "-r", is_flag=True, help="List all descendants")
@click.pass_context
def ls(ctx: Any, path: str, recursive: bool) -> None:
    """List a remote directory."""
    out: OutputFormatter = ctx.obj["out"]
    try:
        client = _get_client(ctx)
        entries = client.list_all(path) if recursive else client.list(path)
    except PanError as e:
        out.error(str(e))
        ctx.exit(1)
        return

    rows = [
        {
            "name": (
                client.rel_path(e.path) if recursive else e.server_filename
            )
            + ("/" if e.isdir else ""),
            "size": "-" if e.isdir else out.format_size(e.size),
            "mtime": format_timestamp(e.server_mtime),
            "md5": e.md5,
            "fs_id": e.fs_id,
        }
        for e in entries
    ]
    out.output_table(
        rows,
        ["name", "size", "mtime", "md5", "fs_id"],
        {
            "name": "Name",
            "size": "Size",
            "mtime": "Modified",
            "md5": "MD5",
            "fs_id": "ID",
        },
    )


@main.command()
@click.argument("path")
@click.pass_context
def meta(ctx: Any, path: str) -> None:
    """Show metadata, including the download link, of a remote path."""
    out: OutputFormatter = ctx.obj["out"]
    try:
        info = _get_client(ctx).file_meta_by_path(path)
    except PanError as e:
        out.error(str(e))
        ctx.exit(1)
        return
    out.output_json({**info.to_dict(), "dlink": info.dlink})


@main.command()
@click.argument("paths", nargs=-1, required=True)
@click.pass_context
def rm(ctx: Any, paths: tuple[str, ...]) -> None:
    """Delete remote files or directories."""
    out: OutputFormatter = ctx.obj["out"]
    try:
        resp = _get_client(ctx).delete(list(paths))
    except PanError as e:
        out.error(str(e))
        ctx.exit(1)
        return
    for item in resp.failed:
        out.error(f"Failed to delete {item.path} (errno {item.errno})")
    if resp.failed:
        ctx.exit(1)
    out.success(f"Deleted {len(paths)} item(s)")


@main.command()
@click.argument("src")
@click.argument("dst")
@click.pass_context
def mv(ctx: Any, src: str, dst: str) -> None:
    """Move the remote SRC to the full path DST."""
    out: OutputFormatter = ctx.obj["out"]
    try:
        _get_client(ctx).move(src, dst)
    except PanError as e:
        out.error(str(e))
        ctx.exit(1)
        return
    out.success(f"Moved {src} to {dst}")


@main.command()
@click.argument("src")
@click.argument("dst")
@click.pass_context
def cp(ctx: Any, src: str, dst: str) -> None:
    """Copy the remote SRC to the full path DST."""
    out: OutputFormatter = ctx.obj["out"]
    try:
        _get_client(ctx).copy(src, dst)
    except PanError as e:
        out.error(str(e))
        ctx.exit(1)
        return
    out.success(f"Copied {src} to {dst}")


@main.command()
@click.argument("path")
@click.argument("name")
@click.pass_context
def rename(ctx: Any, path: str, name: str) -> None:
    """Rename the remote PATH to NAME within its directory."""
    out: OutputFormatter = ctx.obj["out"]
    try:
        _get_client(ctx).rename(path, name)
    except PanError as e:
        out.error(str(e))
        ctx.exit(1)
        return
    out.success(f"Renamed {path} to {name}")


@main.command(context_settings={"ignore_unknown_options": True})
@click.argument("path")
@click.argument("command", nargs=-1, required=True, type=click.UNPROCESSED)
@click.option("--shell", is_flag=True, help="Run COMMAND through the shell")
@click.option(
    "--parallel",
    "-j",
    type=click.IntRange(min=1),
    default=1,
    show_default=True,
    help="Commands run at a time",
)
@click.option("--files", "files_only", is_flag=True, help="Only visit files")
@click.option("--dirs", "dirs_only", is_flag=True, help="Only visit directories")
@click.pass_context
def walk(
    ctx: Any,
    path: str,
    command: tuple[str, ...],
    shell: bool,
    parallel: int,
    files_only: bool,
    dirs_only: bool,
) -> None:
    """Run COMMAND for every entry below the remote PATH.

    Each entry is passed as JSON on stdin.

    Examples:
        pypan walk /photos --files -- jq -r .path
        pypan walk /photos --shell -j 4 -- 'jq .size >> sizes.txt'
    """
    out: OutputFormatter = ctx.obj["out"]
    if files_only and dirs_only:
        raise click.UsageError("--files and --dirs are mutually exclusive")
    cancel = CancelToken()
    try:
        with PanClient(ctx.obj["config"]) as client:
            count = Walker(
                client,
                command,
                shell=shell,
                parallel=parallel,
                files_only=files_only,
                dirs_only=dirs_only,
                cancel=cancel,
            ).walk(path)
    except KeyboardInterrupt:
        cancel.cancel()
        out.warning("Cancelled by user")
        ctx.exit(130)
        return
    except PanError as e:
        out.error(str(e))
        ctx.exit(1)
        return
    out.info(f"Visited {count} entries")


@main.command()
@click.pass_context
def quota(ctx: Any) -> None:
    """Show storage usage."""
    out: OutputFormatter = ctx.obj["out"]
    try:
        info = _get_client(ctx).quota()
    except PanError as e:
        out.error(str(e))
        ctx.exit(1)
        return
    out.print_summary(
        "Storage",
        [
            ("Total", out.format_size(info.total)),
            ("Used", out.format_size(info.used)),
            ("Free", out.format_size(info.free)),
        ],
    )


@main.command()
@click.pass_context
def whoami(ctx: Any) -> None:
    """Show the account the access token belongs to."""
    out: OutputFormatter = ctx.obj["out"]
    try:
        user = _get_client(ctx).uinfo()
    except PanError as e:
        out.error(str(e))
        ctx.exit(1)
        return
    out.print_summary(
        "Account",
        [
            ("Name", user.netdisk_name or user.baidu_name),
            ("User ID", user.uk),
            ("VIP type", user.vip_type),
        ],
    )


if __name__ == "__main__":
    main()
