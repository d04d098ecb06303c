import inspect
import logging
from typing import Any, Callable, List, Optional

from ..models.job import JobStatus

logger = logging.getLogger(__name__)

CompletionCallback = Callable[[Any, JobStatus, Any, Optional[str]], Any]


class CompletionListeners:
    """Observers notified with (id, status, output, error) on every terminal transition"""

    def __init__(self):
        self._callbacks: List[CompletionCallback] = []

    def __len__(self):
        return len(self._callbacks)

    def subscribe(self, callback: CompletionCallback) -> Callable[[], None]:
        self._callbacks.append(callback)

        def unsubscribe():
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return unsubscribe

    async def notify(self, job_id, status: JobStatus, output: Any = None, error: Optional[str] = None):
        # Copy so listeners may unsubscribe themselves while being notified
        for callback in list(self._callbacks):
            try:
                result = callback(job_id, status, output, error)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception(f"Completion listener failed for job {job_id}")
