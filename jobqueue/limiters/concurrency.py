from datetime import datetime, timedelta

from ..utils import clock
from .base import Limiter


class ConcurrencyLimiter(Limiter):
    """
    Caps the number of jobs in flight and spaces out job starts.

    max_concurrent_jobs: how many jobs may be PROCESSING at once
    min_interval_ms: minimum delay between two consecutive job starts
    """

    def __init__(self, max_concurrent_jobs: int = 1, min_interval_ms: float = 0):
        if max_concurrent_jobs < 1:
            raise ValueError("max_concurrent_jobs must be at least 1")
        if min_interval_ms < 0:
            raise ValueError("min_interval_ms cannot be negative")
        self.max_concurrent_jobs = max_concurrent_jobs
        self.min_interval = timedelta(milliseconds=min_interval_ms)
        self.running = 0
        self._next_allowed_start = None

    def can_proceed(self) -> bool:
        if self.running >= self.max_concurrent_jobs:
            return False
        return self._next_allowed_start is None or clock.utcnow() >= self._next_allowed_start

    def record_job_start(self) -> None:
        self.running += 1
        self._next_allowed_start = clock.utcnow() + self.min_interval

    def record_job_completion(self) -> None:
        self.running = max(0, self.running - 1)

    def get_next_available_time(self) -> datetime:
        now = clock.utcnow()
        if self.running >= self.max_concurrent_jobs:
            # Completion time is unknown, the poller caps this by its interval
            return now + self.min_interval
        if self._next_allowed_start is None or self._next_allowed_start < now:
            return now
        return self._next_allowed_start

    def clear(self) -> None:
        self.running = 0
        self._next_allowed_start = None
