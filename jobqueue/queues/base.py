import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Callable, List, Optional

from ..errors import JobFailedError, JobNotFoundError
from ..limiters.base import Limiter, NullLimiter
from ..models.job import Job, JobStatus
from ..workers.worker import QueueWorker, Runner
from .events import CompletionCallback, CompletionListeners

logger = logging.getLogger(__name__)


class JobQueue(ABC):
    """
    One named queue of jobs.

    Backends implement storage and the state transitions; the poll loop
    (QueueWorker) and completion listeners are composed in, not inherited.
    """

    def __init__(self, queue_name: str, limiter: Optional[Limiter] = None, poll_interval: float = 0.1):
        if not queue_name:
            raise ValueError("queue_name cannot be empty")
        self.queue_name = queue_name
        self.limiter = limiter if limiter is not None else NullLimiter()
        self.poll_interval = poll_interval
        self.listeners = CompletionListeners()
        self._worker: Optional[QueueWorker] = None

    # Storage contract

    @abstractmethod
    async def add(self, job: Job):
        """Store a job as PENDING and return its id"""

    @abstractmethod
    async def get(self, job_id) -> Optional[Job]:
        ...

    @abstractmethod
    async def peek(self, num: int = 100) -> List[Job]:
        """Up to num jobs in insertion order, for inspection"""

    @abstractmethod
    async def processing(self) -> List[Job]:
        ...

    @abstractmethod
    async def next(self) -> Optional[Job]:
        """Claim the oldest eligible PENDING job, marking it PROCESSING"""

    @abstractmethod
    async def complete(self, job_id, output: Any = None, error: Optional[str] = None) -> None:
        """Record a job's result; error set means the attempt failed"""

    @abstractmethod
    async def size(self, status: JobStatus = JobStatus.PENDING) -> int:
        ...

    @abstractmethod
    async def clear(self) -> None:
        ...

    @abstractmethod
    async def output_for_input(self, task_type: str, input: Any) -> Any:
        """Output of the latest COMPLETED job for this task type and input, else None"""

    @abstractmethod
    async def find_active(self, task_type: str, input: Any) -> Optional[Job]:
        """Oldest PENDING or PROCESSING job for this task type and input"""

    # Shared helpers

    async def enqueue(
        self,
        task_type: str,
        input: Any,
        *,
        run_after: Optional[datetime] = None,
        deadline_at: Optional[datetime] = None,
        max_retries: int = 10,
        dedupe: bool = False,
    ):
        """Build a job for task_type/input and add it, returning its id"""
        if dedupe:
            active = await self.find_active(task_type, input)
            if active is not None:
                logger.debug(f"Queue {self.queue_name}: reusing active job {active.id} for {task_type}")
                return active.id
        job = Job(
            task_type=task_type,
            input=input,
            run_after=run_after,
            deadline_at=deadline_at,
            max_retries=max_retries,
        )
        return await self.add(job)

    def on_completed(self, callback: CompletionCallback) -> Callable[[], None]:
        """Subscribe to terminal transitions; returns an unsubscribe function"""
        return self.listeners.subscribe(callback)

    async def wait_for(self, job_id, timeout: Optional[float] = None) -> Any:
        """
        Wait until a job is COMPLETED and return its output.

        Raises JobFailedError if the job ends FAILED, JobNotFoundError for an
        unknown id and asyncio.TimeoutError if timeout elapses first.
        """
        future = asyncio.get_running_loop().create_future()

        def _on_done(done_id, status, output, error):
            if done_id == job_id and not future.done():
                future.set_result((status, output, error))

        # Subscribe before reading so a completion in between is not missed
        unsubscribe = self.listeners.subscribe(_on_done)
        try:
            job = await self.get(job_id)
            if job is None:
                raise JobNotFoundError(job_id, self.queue_name)
            if job.is_terminal:
                status, output, error = job.status, job.output, job.error
            else:
                status, output, error = await asyncio.wait_for(future, timeout)
        finally:
            unsubscribe()

        if status == JobStatus.FAILED:
            raise JobFailedError(job_id, error)
        return output

    async def _notify_if_terminal(self, job: Job) -> None:
        if job.status == JobStatus.COMPLETED:
            logger.info(f"Queue {self.queue_name}: job {job.id} completed")
        elif job.status == JobStatus.FAILED:
            logger.info(f"Queue {self.queue_name}: job {job.id} failed after {job.retries} attempt(s): {job.error}")
        else:
            logger.debug(f"Queue {self.queue_name}: job {job.id} back to PENDING (retry {job.retries}/{job.max_retries})")
            return
        await self.listeners.notify(job.id, job.status, job.output, job.error)

    # Poll loop

    @property
    def running(self) -> bool:
        return self._worker is not None and self._worker.running

    def start(self, runner: Runner) -> QueueWorker:
        """Start polling this queue, handing claimed jobs to runner(task_type, input)"""
        if self.running:
            raise RuntimeError(f"Queue {self.queue_name} is already running")
        self._worker = QueueWorker(self, runner, poll_interval=self.poll_interval)
        self._worker.start()
        return self._worker

    async def stop(self, wait: bool = True) -> None:
        """Stop polling; with wait, also let in-flight jobs finish"""
        if self._worker is not None:
            await self._worker.stop(wait=wait)
