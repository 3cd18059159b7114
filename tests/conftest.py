import threading
from concurrent.futures import Future

import pytest

from timedcache import Clock


class ManualClock(Clock):
    def __init__(self, now=0.0):
        self._now = now

    def now(self):
        return self._now

    def set(self, now):
        self._now = now


class ManualExecutor:
    """Queues submitted tasks until run_pending() is called."""

    def __init__(self):
        self._lock = threading.Lock()
        self.pending = []
        self.submitted = 0

    def submit(self, fn, *args, **kwargs):
        future = Future()
        with self._lock:
            self.pending.append((future, fn, args, kwargs))
            self.submitted += 1
        return future

    def run_pending(self):
        with self._lock:
            tasks, self.pending = self.pending, []

        for future, fn, args, kwargs in tasks:
            try:
                future.set_result(fn(*args, **kwargs))
            except BaseException as error:
                future.set_exception(error)


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def executor():
    return ManualExecutor()
