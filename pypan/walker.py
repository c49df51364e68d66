"""Run a command for every entry of a remote tree."""

import json
import logging
import os
import subprocess
from typing import Optional, Sequence, Union

from .api import PanClient
from .exceptions import PanWalkError
from .models import FileEntry
from .parallel import CancelToken, ParallelDo, try_join, try_submit

logger = logging.getLogger(__name__)


class Walker:
    """Walks a remote tree and feeds each entry, as JSON, to a command.

    The command receives the entry on stdin and its absolute remote path
    in the ``PYPAN_PATH`` environment variable.
    """

    def __init__(
        self,
        client: PanClient,
        command: Sequence[str],
        shell: bool = False,
        parallel: int = 1,
        files_only: bool = False,
        dirs_only: bool = False,
        cancel: Optional[CancelToken] = None,
    ):
        """Initialize the walker.

        Args:
            client: API client
            command: Command and arguments to run per entry
            shell: Run the command through the shell
            parallel: Number of commands running at a time
            files_only: Only run the command for files
            dirs_only: Only run the command for directories
            cancel: Optional cancellation token
        """
        if files_only and dirs_only:
            raise ValueError("files_only and dirs_only are mutually exclusive")
        self.client = client
        self.command = list(command)
        self.shell = shell
        self.parallel = parallel
        self.files_only = files_only
        self.dirs_only = dirs_only
        self.cancel = cancel
        self.count = 0

    def walk(self, path: str) -> int:
        """Walk ``path`` and everything below it.

        Args:
            path: Remote path, relative to the base directory

        Returns:
            Number of commands run

        Raises:
            PanWalkError: If a command failed; with parallel runs every
                failure is reported, wrapped in PanMultiError
        """
        self.count = 0
        root = self.client.stat(path)
        dispatcher = (
            ParallelDo(self.parallel, join_on_check_error=True, cancel=self.cancel)
            if self.parallel > 1
            else None
        )
        try:
            self._visit(root, dispatcher)
            try_join(dispatcher)
        finally:
            if dispatcher is not None:
                dispatcher.close()
        return self.count

    def _visit(self, entry: FileEntry, dispatcher: Optional[ParallelDo]) -> None:
        if self.cancel is not None:
            self.cancel.check()
        if self._selected(entry):
            self.count += 1
            try_submit(dispatcher, self.run, entry)
        if entry.isdir:
            for child in self.client.list(self.client.rel_path(entry.path)):
                self._visit(child, dispatcher)

    def _selected(self, entry: FileEntry) -> bool:
        if self.files_only:
            return not entry.isdir
        if self.dirs_only:
            return entry.isdir
        return True

    def run(self, entry: FileEntry) -> None:
        """Run the command for one entry.

        Raises:
            PanWalkError: If the command exits with a non-zero status
        """
        payload = json.dumps(entry.to_dict()).encode("utf-8")
        args: Union[str, list[str]] = self.command
        if self.shell:
            args = " ".join(self.command)
        env = {**os.environ, "PYPAN_PATH": entry.path}
        logger.debug(f"Running {self.command} for {entry.path}")
        result = subprocess.run(args, input=payload, shell=self.shell, env=env)
        if result.returncode != 0:
            raise PanWalkError(
                f"{' '.join(self.command)} exited with status "
                f"{result.returncode} for {entry.path}"
            )
