"""Performance monitoring utilities for the progress consistency batch jobs."""
import time
import logging
import threading
import functools
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger("progress-api.perf")


def timed_async(func: Callable) -> Callable:
    """
    Decorator that measures and logs execution time for async functions.

    Usage::

        @timed_async
        async def my_async_function():
            ...
    """
    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        start = time.perf_counter()
        try:
            return await func(*args, **kwargs)
        finally:
            duration_ms = round((time.perf_counter() - start) * 1000, 2)
            logger.debug(
                f"{func.__module__}.{func.__qualname__} finished",
                extra={"duration_ms": duration_ms},
            )
    return wrapper


class BatchRunTracker:
    """
    Thread-safe in-memory tracker for dedup / audit batch runs.

    Tracks per job name:
    - Number of runs and cumulative duration
    - Summed outcome counters reported by each run (merged, skipped, failed, ...)
    - Error count (runs that raised)
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._runs: Dict[str, int] = {}
        self._durations_ms: Dict[str, float] = {}
        self._counters: Dict[str, Dict[str, int]] = {}
        self._errors: Dict[str, int] = {}
        self._last_run_ms: Dict[str, float] = {}

    def record_run(self, job: str, duration_ms: float, counters: Optional[Dict[str, int]] = None) -> None:
        """Call once when a batch job finishes (successfully or with per-group failures)."""
        with self._lock:
            self._runs[job] = self._runs.get(job, 0) + 1
            self._durations_ms[job] = self._durations_ms.get(job, 0.0) + duration_ms
            self._last_run_ms[job] = duration_ms
            bucket = self._counters.setdefault(job, {})
            for name, value in (counters or {}).items():
                bucket[name] = bucket.get(name, 0) + int(value)

    def record_error(self, job: str) -> None:
        """Increment the error counter for a job that raised."""
        with self._lock:
            self._errors[job] = self._errors.get(job, 0) + 1

    def get_metrics(self) -> Dict[str, Any]:
        """
        Snapshot of all collected metrics, keyed by job name:
            runs, avg_duration_ms, last_duration_ms, errors, counters
        """
        with self._lock:
            jobs = set(self._runs) | set(self._errors)
            return {
                job: {
                    "runs": self._runs.get(job, 0),
                    "avg_duration_ms": (
                        round(self._durations_ms[job] / self._runs[job], 2)
                        if self._runs.get(job) else 0.0
                    ),
                    "last_duration_ms": round(self._last_run_ms.get(job, 0.0), 2),
                    "errors": self._errors.get(job, 0),
                    "counters": dict(self._counters.get(job, {})),
                }
                for job in sorted(jobs)
            }

    def reset(self) -> None:
        """Reset all counters (useful in tests)."""
        with self._lock:
            self._runs.clear()
            self._durations_ms.clear()
            self._counters.clear()
            self._errors.clear()
            self._last_run_ms.clear()


# Module-level singleton; import this instance everywhere else.
tracker = BatchRunTracker()
