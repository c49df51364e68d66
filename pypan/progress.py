"""Transfer progress reporting.

The transfer layer reports progress through the small ``ProgressSink``
protocol. ``RichProgressDisplay`` renders sinks as rows of a Rich progress
display, and ``TrackedReader`` reports every read of a stream to a sink.
"""

import threading
from typing import IO, Any, Callable, Optional, Protocol

from rich.console import Console
from rich.progress import (
    BarColumn,
    DownloadColumn,
    Progress,
    TaskID,
    TextColumn,
    TimeRemainingColumn,
    TransferSpeedColumn,
)


class ProgressSink(Protocol):
    """Receiver of byte counts for one tracked stream."""

    def start(self, total: int) -> None: ...

    def increment(self, n: int) -> None: ...

    def done(self) -> None: ...


class NullProgressSink:
    """Progress sink that ignores everything."""

    def start(self, total: int) -> None:
        pass

    def increment(self, n: int) -> None:
        pass

    def done(self) -> None:
        pass


# Creates a sink for a transfer described by its path
ProgressFactory = Callable[[str], ProgressSink]


class RichProgressSink:
    """Progress sink rendered as one task of a Rich Progress instance."""

    def __init__(self, progress: Progress, description: str):
        self._progress = progress
        self._description = description
        self._task: Optional[TaskID] = None

    def start(self, total: int) -> None:
        if self._task is None:
            self._task = self._progress.add_task(
                self._description, total=total if total >= 0 else None
            )
        else:
            self._progress.update(self._task, total=total)

    def increment(self, n: int) -> None:
        if self._task is not None:
            self._progress.advance(self._task, n)

    def done(self) -> None:
        if self._task is not None:
            self._progress.remove_task(self._task)
            self._task = None


class RichProgressDisplay:
    """Rich-based live display shared by concurrent transfers.

    The display is drawn on stderr, leaving stdout to command results.

    Example:
        >>> with RichProgressDisplay() as display:
        ...     manager = DownloadManager(client, progress=display.create_sink)
        ...     manager.download("/remote/file", Path("file"))
    """

    def __init__(self, transient: bool = True) -> None:
        self._progress = Progress(
            TextColumn("[bold blue]{task.description}", justify="right"),
            BarColumn(bar_width=None),
            "[progress.percentage]{task.percentage:>3.1f}%",
            DownloadColumn(),
            TransferSpeedColumn(),
            TimeRemainingColumn(),
            console=Console(stderr=True),
            transient=transient,
        )

    def __enter__(self) -> "RichProgressDisplay":
        self._progress.start()
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self._progress.stop()

    def create_sink(self, description: str) -> ProgressSink:
        return RichProgressSink(self._progress, description)


class TrackedReader:
    """Binary reader that reports consumed bytes to a progress sink.

    Only the file-like methods needed by HTTP body encoders are provided.
    Progress follows the highest position read, so a retried request that
    re-reads the stream does not count its bytes twice.
    """

    def __init__(self, stream: IO[bytes], sink: ProgressSink):
        self._stream = stream
        self._sink = sink
        self._lock = threading.Lock()
        self._reported = 0

    def read(self, size: int = -1) -> bytes:
        data = self._stream.read(size)
        if data:
            with self._lock:
                position = self._stream.tell()
                delta = position - self._reported
                if delta > 0:
                    self._reported = position
            if delta > 0:
                self._sink.increment(delta)
        return data

    def seek(self, offset: int, whence: int = 0) -> int:
        return self._stream.seek(offset, whence)

    def tell(self) -> int:
        return self._stream.tell()
