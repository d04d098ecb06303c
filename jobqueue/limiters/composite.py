from datetime import datetime
from typing import Iterable, List

from ..utils import clock
from .base import Limiter


class CompositeLimiter(Limiter):
    """Admits a job only when every child limiter agrees"""

    def __init__(self, limiters: Iterable[Limiter] = ()):
        self.limiters: List[Limiter] = list(limiters)

    def add_limiter(self, limiter: Limiter) -> None:
        self.limiters.append(limiter)

    def can_proceed(self) -> bool:
        return all(limiter.can_proceed() for limiter in self.limiters)

    def record_job_start(self) -> None:
        for limiter in self.limiters:
            limiter.record_job_start()

    def record_job_completion(self) -> None:
        for limiter in self.limiters:
            limiter.record_job_completion()

    def get_next_available_time(self) -> datetime:
        latest = clock.utcnow()
        for limiter in self.limiters:
            candidate = limiter.get_next_available_time()
            if candidate > latest:
                latest = candidate
        return latest

    def clear(self) -> None:
        for limiter in self.limiters:
            limiter.clear()
