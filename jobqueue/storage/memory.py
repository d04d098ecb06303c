import logging
from typing import Any, List, Optional
from uuid import uuid4

from ..errors import DuplicateJobError, JobNotFoundError
from ..limiters.base import Limiter
from ..models.fingerprint import fingerprint
from ..models.job import Job, JobStatus
from ..queues.base import JobQueue
from ..utils import clock

logger = logging.getLogger(__name__)


class InMemoryJobQueue(JobQueue):
    """
    Non-durable queue holding jobs in a list.

    Nothing awaits between reading and mutating a job, so every operation is
    atomic with respect to other coroutines on the same event loop.
    """

    def __init__(self, queue_name: str, limiter: Optional[Limiter] = None, poll_interval: float = 0.1):
        super().__init__(queue_name, limiter, poll_interval)
        self._jobs: List[Job] = []

    def _find(self, job_id) -> Optional[Job]:
        for job in self._jobs:
            if job.id == job_id:
                return job
        return None

    def _eligible(self) -> List[Job]:
        now = clock.utcnow()
        # sorted() is stable, so equal created_at keeps insertion order
        return sorted((job for job in self._jobs if job.is_eligible(now)), key=lambda job: job.created_at)

    def _matching(self, task_type: str, input: Any, statuses) -> List[Job]:
        fp = fingerprint(input)
        return [
            job for job in self._jobs
            if job.task_type == task_type and job.fingerprint == fp and job.status in statuses
        ]

    async def add(self, job: Job):
        stored = job.model_copy(deep=True)
        if stored.id is None:
            stored.id = str(uuid4())
        elif self._find(stored.id) is not None:
            raise DuplicateJobError(f"Job with id {stored.id} already exists in queue '{self.queue_name}'")
        stored.queue_name = self.queue_name
        stored.fingerprint = fingerprint(stored.input)
        stored.status = JobStatus.PENDING
        self._jobs.append(stored)
        job.id = stored.id
        logger.debug(f"Queue {self.queue_name}: added job {stored.id} ({stored.task_type})")
        return stored.id

    async def get(self, job_id) -> Optional[Job]:
        job = self._find(job_id)
        return job.model_copy(deep=True) if job else None

    async def peek(self, num: int = 100) -> List[Job]:
        num = int(num) if num else 100
        return [job.model_copy(deep=True) for job in self._jobs[:num]]

    async def processing(self) -> List[Job]:
        return [job.model_copy(deep=True) for job in self._jobs if job.status == JobStatus.PROCESSING]

    async def next(self) -> Optional[Job]:
        eligible = self._eligible()
        if not eligible:
            return None
        job = eligible[0]
        job.status = JobStatus.PROCESSING
        job.last_ran_at = clock.utcnow()
        return job.model_copy(deep=True)

    async def complete(self, job_id, output: Any = None, error: Optional[str] = None) -> None:
        job = self._find(job_id)
        if job is None:
            raise JobNotFoundError(job_id, self.queue_name)
        if job.is_terminal:
            logger.warning(f"Queue {self.queue_name}: ignoring complete() for job {job_id}, already {job.status.value}")
            return

        job.completed_at = clock.utcnow()
        if job.last_ran_at is None:
            job.last_ran_at = job.completed_at
        if error is not None:
            job.error = error
            job.retries += 1
            job.status = JobStatus.FAILED if job.retries >= job.max_retries else JobStatus.PENDING
        else:
            job.output = output
            job.error = None
            job.status = JobStatus.COMPLETED
        await self._notify_if_terminal(job.model_copy(deep=True))

    async def size(self, status: JobStatus = JobStatus.PENDING) -> int:
        return sum(1 for job in self._jobs if job.status == status)

    async def clear(self) -> None:
        self._jobs = []
        self.limiter.clear()

    async def output_for_input(self, task_type: str, input: Any) -> Any:
        completed = self._matching(task_type, input, {JobStatus.COMPLETED})
        if not completed:
            return None
        # reversed() so the later insert wins a completed_at tie
        latest = max(reversed(completed), key=lambda job: job.completed_at)
        return latest.model_copy(deep=True).output

    async def find_active(self, task_type: str, input: Any) -> Optional[Job]:
        active = self._matching(task_type, input, {JobStatus.PENDING, JobStatus.PROCESSING})
        if not active:
            return None
        return min(active, key=lambda job: job.created_at).model_copy(deep=True)
