from collections import deque
from datetime import datetime, timedelta

from ..utils import clock
from .base import Limiter


class RateLimiter(Limiter):
    """Allows at most max_executions job starts in any sliding window of window_seconds"""

    def __init__(self, max_executions: int, window_seconds: float = 60):
        if max_executions < 1:
            raise ValueError("max_executions must be at least 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self.max_executions = max_executions
        self.window = timedelta(seconds=window_seconds)
        self._starts = deque()

    def _recent(self, now: datetime) -> list:
        cutoff = now - self.window
        return [ts for ts in self._starts if ts > cutoff]

    def can_proceed(self) -> bool:
        return len(self._recent(clock.utcnow())) < self.max_executions

    def record_job_start(self) -> None:
        now = clock.utcnow()
        cutoff = now - self.window
        while self._starts and self._starts[0] <= cutoff:
            self._starts.popleft()
        self._starts.append(now)

    def record_job_completion(self) -> None:
        # The window counts starts only
        pass

    def get_next_available_time(self) -> datetime:
        now = clock.utcnow()
        recent = self._recent(now)
        if len(recent) < self.max_executions:
            return now
        # The window frees up when enough of the oldest starts expire
        return recent[len(recent) - self.max_executions] + self.window

    def clear(self) -> None:
        self._starts.clear()
