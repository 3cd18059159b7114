import datetime
import logging
import math
import os
import threading
import time

import datadog

logger = logging.getLogger(__name__)

FALLBACK_STALENESS = 30.0


def _staleness_from_env():
    value = os.environ.get("TIMEDCACHE_DEFAULT_STALENESS")
    if value is None:
        return FALLBACK_STALENESS

    try:
        return _as_seconds(float(value))
    except ValueError:
        logger.warning("Ignoring invalid TIMEDCACHE_DEFAULT_STALENESS=%r", value)
        return FALLBACK_STALENESS


def _as_seconds(staleness):
    if isinstance(staleness, datetime.timedelta):
        staleness = staleness.total_seconds()

    if not math.isfinite(staleness) or staleness < 0:
        raise ValueError("staleness must be a finite, non-negative number: {}".format(staleness))

    return float(staleness)


DEFAULT_STALENESS = _staleness_from_env()

stats = datadog.ThreadStats()


def metric_name(name):
    return "timedcache." + name


def initialize_stats(**options):
    """Configures datadog and starts flushing metrics if an api key is set."""
    datadog.initialize(**options)
    if datadog.api._api_key:
        stats.start()


class ComputationError(Exception):
    def __init__(self, cause):
        super().__init__("source function failed: {!r}".format(cause))
        self.cause = cause


class Clock:
    def now(self):
        raise NotImplementedError


class MonotonicClock(Clock):
    def now(self):
        return time.monotonic()


class Result:
    """Outcome of one invocation of the source function."""

    __slots__ = ("value", "error")

    def __init__(self, value=None, error=None):
        self.value = value
        self.error = error

    @property
    def failed(self):
        return self.error is not None

    def get(self):
        if self.failed:
            raise ComputationError(self.error) from self.error

        return self.value

    @classmethod
    def of(cls, source):
        try:
            with stats.timer(metric_name("load")):
                return cls(value=source())

        except (KeyboardInterrupt, SystemExit):
            raise

        except BaseException as error:
            return cls(error=error)


_ABSENT = object()


class CacheEntry:
    def __init__(self):
        self.value = _ABSENT
        self.computed_at = None
        self.refresh_in_flight = False

    @property
    def empty(self):
        return self.value is _ABSENT

    def is_stale(self, now, staleness):
        return now - self.computed_at >= staleness

    def commit(self, value, now):
        self.value = value
        self.computed_at = now
        self.refresh_in_flight = False


class AsyncRefresher:
    def __init__(self, executor, source, clock, lock):
        self._executor = executor
        self._source = source
        self._clock = clock
        self._lock = lock

    def trigger_refresh(self, entry):
        """Recomputes the value of the given entry in the background.

        The caller must have flagged the entry as refresh_in_flight.

        :rtype: concurrent.futures.Future
        """

        def on_finished(result_future):
            try:
                result = result_future.result()
            except BaseException as error:
                # KeyboardInterrupt and SystemExit raised by the source land here too
                result = Result(error=error)

            with self._lock:
                try:
                    if not result.failed:
                        entry.commit(result.value, self._clock.now())
                finally:
                    entry.refresh_in_flight = False

            if result.failed:
                stats.increment(metric_name("refresh.failed"))
                logger.error("Background refresh failed, keeping the stale value",
                             exc_info=result.error)

        try:
            future = self._executor.submit(Result.of, self._source)
        except Exception:
            logger.exception("Could not schedule background refresh")
            with self._lock:
                entry.refresh_in_flight = False
            return None

        future.add_done_callback(on_finished)
        return future


class TimedCache:
    """Holds the last value computed by `source` and refreshes it in the
    background once it is older than `staleness` seconds. Only the very
    first call blocks on the source function."""

    def __init__(self, executor, source, clock=None, staleness=DEFAULT_STALENESS):
        self.staleness = _as_seconds(staleness)
        self._source = source
        self._clock = clock or MonotonicClock()
        self._lock = threading.RLock()
        self._cold_start_lock = threading.Lock()
        self._entry = CacheEntry()
        self._refresher = AsyncRefresher(executor, source, self._clock, self._lock)

    def get(self):
        with self._lock:
            if not self._entry.empty:
                return self._serve(self._entry)

        return self._cold_start()

    __call__ = get

    def _serve(self, entry):
        # called with the lock held
        if not entry.is_stale(self._clock.now(), self.staleness):
            stats.increment(metric_name("hit.fresh"))
            return entry.value

        stats.increment(metric_name("hit.stale"))
        value = entry.value
        if not entry.refresh_in_flight:
            entry.refresh_in_flight = True
            self._refresher.trigger_refresh(entry)

        return value

    def _cold_start(self):
        with self._cold_start_lock:
            # someone else might have finished the first computation meanwhile
            with self._lock:
                if not self._entry.empty:
                    return self._serve(self._entry)

            result = Result.of(self._source)
            if result.failed:
                logger.warning("Initial computation failed: %r", result.error)
                return result.get()

            with self._lock:
                self._entry.commit(result.value, self._clock.now())

            return result.value


def cached(executor, function, *args, staleness=DEFAULT_STALENESS, clock=None, **kwargs):
    cache = TimedCache(executor, lambda: function(*args, **kwargs),
                       clock=clock, staleness=staleness)
    return cache.get


def timed_cache(executor, staleness=DEFAULT_STALENESS, clock=None):
    def decorator(function):
        return TimedCache(executor, function, clock=clock, staleness=staleness)

    return decorator
