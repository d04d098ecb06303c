from abc import ABC, abstractmethod
from datetime import datetime

from ..utils import clock


class Limiter(ABC):
    """Admission policy consulted by a queue's poll loop before pulling work"""

    @abstractmethod
    def can_proceed(self) -> bool:
        """True if one more job may start now. Must not change state."""

    @abstractmethod
    def record_job_start(self) -> None:
        ...

    @abstractmethod
    def record_job_completion(self) -> None:
        ...

    @abstractmethod
    def get_next_available_time(self) -> datetime:
        """Earliest UTC time at which can_proceed() is expected to be true"""

    @abstractmethod
    def clear(self) -> None:
        ...


class NullLimiter(Limiter):
    """Admits every job"""

    def can_proceed(self) -> bool:
        return True

    def record_job_start(self) -> None:
        pass

    def record_job_completion(self) -> None:
        pass

    def get_next_available_time(self) -> datetime:
        return clock.utcnow()

    def clear(self) -> None:
        pass
