"""Bounded parallel task dispatch and cooperative cancellation.

``ParallelDo`` runs submitted callables on a thread pool while keeping at
most ``max_workers`` of them in flight. Exceptions raised by tasks are
collected rather than lost, and surface either from a later ``submit``
(fail fast) or from ``join``.

Example:
    >>> pd = ParallelDo(4)
    >>> for path in paths:
    ...     pd.submit(upload, path)
    >>> pd.join()  # raises the collected error(s), if any
"""

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Any, Callable, Optional

from .exceptions import PanCancelledError, multi_error

logger = logging.getLogger(__name__)

# How often a blocked submit re-checks for cancellation
_SLOT_POLL_INTERVAL = 0.1


class CancelToken:
    """Cancellation signal shared by every operation of one run.

    The token fires either when ``cancel()`` is called or once the
    optional deadline passes.
    """

    def __init__(self, timeout: Optional[float] = None):
        """Initialize the token.

        Args:
            timeout: Optional number of seconds after which the token
                fires by itself
        """
        self._event = threading.Event()
        self._deadline = time.monotonic() + timeout if timeout else None

    def cancel(self) -> None:
        """Fire the token."""
        self._event.set()

    @property
    def cancelled(self) -> bool:
        """True once the token has been cancelled or the deadline passed."""
        if self._event.is_set():
            return True
        if self._deadline is not None and time.monotonic() >= self._deadline:
            self._event.set()
            return True
        return False

    def check(self) -> None:
        """Raise PanCancelledError if the token has fired."""
        if self.cancelled:
            raise PanCancelledError("operation cancelled")


class ParallelDo:
    """Run tasks concurrently with a hard cap on in-flight work."""

    def __init__(
        self,
        max_workers: int,
        check_before_dispatch: bool = True,
        join_on_check_error: bool = False,
        cancel: Optional[CancelToken] = None,
    ):
        """Initialize the dispatcher.

        Args:
            max_workers: Maximum number of tasks running at the same time
            check_before_dispatch: If True, ``submit`` raises a pending task
                error instead of starting new work
            join_on_check_error: If True, a pending error makes ``submit``
                wait for all in-flight work and raise the complete error set
            cancel: Optional cancellation token; once fired no new work is
                started

        Raises:
            ValueError: If max_workers is smaller than 1
        """
        if max_workers < 1:
            raise ValueError(f"max_workers must be at least 1, got {max_workers}")
        self.max_workers = max_workers
        self.check_before_dispatch = check_before_dispatch
        self.join_on_check_error = join_on_check_error
        self.cancel = cancel

        self._slots = threading.BoundedSemaphore(max_workers)
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="pypan-worker"
        )
        self._lock = threading.Lock()
        self._errors: list[BaseException] = []
        self._futures: set[Future] = set()

    def __enter__(self) -> "ParallelDo":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def close(self) -> None:
        """Wait for running tasks and release the worker threads."""
        self._executor.shutdown(wait=True)

    def submit(self, task: Callable[..., Any], *args: Any, **kwargs: Any) -> None:
        """Run ``task(*args, **kwargs)`` once a slot is free.

        Args:
            task: Callable to run in the background
            *args: Positional arguments for the task
            **kwargs: Keyword arguments for the task

        Raises:
            Exception: A pending task error when check_before_dispatch is set
            PanCancelledError: If the cancel token has fired
        """
        if self.check_before_dispatch:
            self._raise_pending()
        self._acquire_slot()
        try:
            future = self._executor.submit(self._run, task, args, kwargs)
        except BaseException:
            self._slots.release()
            raise
        with self._lock:
            self._futures.add(future)
        future.add_done_callback(self._discard)

    def join(self) -> None:
        """Wait for every submitted task to finish.

        The collected errors are drained: a second ``join`` without new
        failures returns normally.

        Raises:
            Exception: The single collected error, or PanMultiError when
                several tasks failed
        """
        while True:
            with self._lock:
                pending = [f for f in self._futures if not f.done()]
            if not pending:
                break
            wait(pending)
        error = self._drain()
        if error is not None:
            raise error

    def _raise_pending(self) -> None:
        if self.join_on_check_error:
            with self._lock:
                has_errors = bool(self._errors)
            if has_errors:
                self.join()
            return
        error = self._drain()
        if error is not None:
            raise error

    def _acquire_slot(self) -> None:
        while True:
            if self.cancel is not None:
                self.cancel.check()
            if self._slots.acquire(timeout=_SLOT_POLL_INTERVAL):
                return

    def _run(
        self,
        task: Callable[..., Any],
        args: tuple,
        kwargs: dict,
    ) -> None:
        try:
            task(*args, **kwargs)
        except Exception as e:
            logger.debug(f"Task {getattr(task, '__name__', task)!r} failed: {e}")
            with self._lock:
                self._errors.append(e)
        finally:
            self._slots.release()

    def _discard(self, future: Future) -> None:
        with self._lock:
            self._futures.discard(future)

    def _drain(self) -> Optional[BaseException]:
        with self._lock:
            errors, self._errors = self._errors, []
        return multi_error(errors)


def try_submit(
    dispatcher: Optional[ParallelDo],
    task: Callable[..., Any],
    *args: Any,
    **kwargs: Any,
) -> None:
    """Submit a task, or run it inline when there is no dispatcher."""
    if dispatcher is None:
        task(*args, **kwargs)
        return
    dispatcher.submit(task, *args, **kwargs)


def try_join(dispatcher: Optional[ParallelDo]) -> None:
    """Join a dispatcher if there is one."""
    if dispatcher is not None:
        dispatcher.join()
