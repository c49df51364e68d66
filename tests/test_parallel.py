"""Tests for the bounded task dispatcher and cancellation token."""

import threading
import time

import pytest

from pypan.exceptions import PanCancelledError, PanMultiError
from pypan.parallel import CancelToken, ParallelDo, try_join, try_submit


class TestCancelToken:
    """Tests for CancelToken."""

    def test_not_cancelled_initially(self):
        """Test that a new token has not fired."""
        token = CancelToken()
        assert not token.cancelled
        token.check()

    def test_cancel(self):
        """Test that cancel fires the token."""
        token = CancelToken()
        token.cancel()
        assert token.cancelled
        with pytest.raises(PanCancelledError):
            token.check()

    def test_deadline(self):
        """Test that the token fires once the timeout passes."""
        token = CancelToken(timeout=0.01)
        time.sleep(0.05)
        assert token.cancelled


class TestParallelDo:
    """Tests for ParallelDo."""

    def test_invalid_worker_count(self):
        """Test that fewer than one worker is rejected."""
        with pytest.raises(ValueError):
            ParallelDo(0)

    def test_runs_all_tasks(self):
        """Test that every submitted task runs before join returns."""
        results = []
        lock = threading.Lock()

        def task(i):
            with lock:
                results.append(i)

        with ParallelDo(3) as pd:
            for i in range(20):
                pd.submit(task, i)
            pd.join()

        assert sorted(results) == list(range(20))

    def test_never_exceeds_max_workers(self):
        """Test that at most max_workers tasks run at the same time."""
        running = 0
        peak = 0
        lock = threading.Lock()

        def task():
            nonlocal running, peak
            with lock:
                running += 1
                peak = max(peak, running)
            time.sleep(0.01)
            with lock:
                running -= 1

        with ParallelDo(2) as pd:
            for _ in range(10):
                pd.submit(task)
            pd.join()

        assert peak <= 2

    def test_submit_raises_pending_error(self):
        """Test that a failed task makes the next submit raise."""
        done = threading.Event()

        def failing():
            done.set()
            raise ValueError("boom")

        with ParallelDo(1) as pd:
            pd.submit(failing)
            done.wait()
            # Wait for the failure to be recorded
            time.sleep(0.05)
            with pytest.raises(ValueError, match="boom"):
                pd.submit(lambda: None)
            pd.join()

    def test_join_reports_single_error(self):
        """Test that join raises the only collected error unchanged."""
        def failing():
            raise ValueError("boom")

        with ParallelDo(2, check_before_dispatch=False) as pd:
            pd.submit(failing)
            with pytest.raises(ValueError, match="boom"):
                pd.join()
            # Errors are drained by join
            pd.join()

    def test_join_aggregates_errors(self):
        """Test that several failures surface as one PanMultiError."""
        barrier = threading.Barrier(2)

        def failing(i):
            barrier.wait(timeout=5)
            raise ValueError(f"task {i}")

        with ParallelDo(2, check_before_dispatch=False) as pd:
            pd.submit(failing, 1)
            pd.submit(failing, 2)
            with pytest.raises(PanMultiError) as exc_info:
                pd.join()

        assert len(exc_info.value) == 2
        assert "2 errors occurred" in str(exc_info.value)

    def test_join_on_check_error_waits_for_in_flight_work(self):
        """Test that a pending error makes submit wait and report all errors."""
        first_failed = threading.Event()
        release = threading.Event()
        finished = []

        def failing():
            first_failed.set()
            raise ValueError("first")

        def slow():
            release.wait(timeout=5)
            finished.append(True)
            raise ValueError("second")

        with ParallelDo(2, join_on_check_error=True) as pd:
            pd.submit(slow)
            pd.submit(failing)
            first_failed.wait()
            time.sleep(0.05)
            release.set()
            with pytest.raises(PanMultiError) as exc_info:
                pd.submit(lambda: None)

        assert finished == [True]
        assert sorted(str(e) for e in exc_info.value.errors) == ["first", "second"]

    def test_cancelled_submit(self):
        """Test that submit refuses new work once the token fired."""
        token = CancelToken()
        with ParallelDo(1, cancel=token) as pd:
            token.cancel()
            with pytest.raises(PanCancelledError):
                pd.submit(lambda: None)

    def test_cancel_while_waiting_for_slot(self):
        """Test that a submit blocked on a full pool observes cancellation."""
        token = CancelToken()
        release = threading.Event()

        with ParallelDo(1, cancel=token) as pd:
            pd.submit(release.wait, 5)
            timer = threading.Timer(0.2, token.cancel)
            timer.start()
            with pytest.raises(PanCancelledError):
                pd.submit(lambda: None)
            release.set()
            pd.join()


class TestHelpers:
    """Tests for try_submit and try_join."""

    def test_without_dispatcher_runs_inline(self):
        """Test that tasks run synchronously without a dispatcher."""
        calls = []
        try_submit(None, calls.append, 1)
        try_join(None)
        assert calls == [1]

    def test_inline_errors_propagate(self):
        """Test that inline task errors are raised directly."""
        def failing():
            raise ValueError("boom")

        with pytest.raises(ValueError):
            try_submit(None, failing)

    def test_with_dispatcher(self):
        """Test that tasks go through the dispatcher when one is given."""
        calls = []
        with ParallelDo(2) as pd:
            try_submit(pd, calls.append, 1)
            try_join(pd)
        assert calls == [1]
