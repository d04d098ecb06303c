import asyncio
import logging
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, Optional, Set

from ..models.job import Job
from ..utils import clock

if TYPE_CHECKING:
    from ..queues.base import JobQueue

Runner = Callable[[str, Any], Awaitable[Any]]


class QueueWorker:
    """Poll loop for one queue: admits jobs through the limiter and runs them"""

    def __init__(self, queue: "JobQueue", runner: Runner, poll_interval: Optional[float] = None):
        self.queue = queue
        self.runner = runner
        self.poll_interval = poll_interval if poll_interval is not None else queue.poll_interval
        self.running = False
        self._stop_event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._in_flight: Set[asyncio.Task] = set()
        self.logger = logging.getLogger(f"worker_{queue.queue_name}")

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    def start(self) -> asyncio.Task:
        """Schedule the loop on the running event loop"""
        self.running = True
        self._stop_event.clear()
        self._task = asyncio.create_task(self.run(), name=f"poll-{self.queue.queue_name}")
        return self._task

    async def stop(self, wait: bool = True) -> None:
        """Stop polling after the current iteration; never cancels running jobs"""
        self.running = False
        self._stop_event.set()
        if self._task is not None:
            await self._task
            self._task = None
        if wait and self._in_flight:
            await asyncio.gather(*self._in_flight, return_exceptions=True)

    async def _sleep(self, seconds: float) -> None:
        # Returns early when stop() is called
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=max(0.0, seconds))
        except asyncio.TimeoutError:
            pass

    def _limiter_wait(self) -> float:
        next_time = self.queue.limiter.get_next_available_time()
        delay = (next_time - clock.utcnow()).total_seconds()
        if delay <= 0:
            # Limiter refuses but cannot say until when
            return self.poll_interval
        return min(self.poll_interval, delay)

    async def poll_once(self) -> int:
        """Claim and dispatch jobs while the limiter admits them; returns how many started"""
        started = 0
        limiter = self.queue.limiter
        while not self._stop_event.is_set() and limiter.can_proceed():
            job = await self.queue.next()
            if job is None:
                break
            limiter.record_job_start()
            self.logger.debug(f"Claimed job {job.id} ({job.task_type})")
            task = asyncio.create_task(self.process_job(job))
            self._in_flight.add(task)
            task.add_done_callback(self._in_flight.discard)
            started += 1
        return started

    async def process_job(self, job: Job) -> None:
        """Run a single job and record its result"""
        try:
            try:
                output = await self.runner(job.task_type, job.input)
            except Exception as e:
                error = str(e) or type(e).__name__
                self.logger.warning(f"Job {job.id} raised: {error}")
                await self.queue.complete(job.id, error=error)
            else:
                await self.queue.complete(job.id, output=output)
        except Exception as e:
            # complete() itself failed; the job stays PROCESSING for external recovery
            self.logger.error(f"Error completing job {job.id}: {str(e)}")
        finally:
            self.queue.limiter.record_job_completion()

    async def run(self) -> None:
        """Main poll loop"""
        self.logger.info(f"Polling queue {self.queue.queue_name} every {self.poll_interval}s")
        while not self._stop_event.is_set():
            try:
                if not self.queue.limiter.can_proceed():
                    await self._sleep(self._limiter_wait())
                    continue

                # Empty queue
                if await self.poll_once() == 0:
                    await self._sleep(self.poll_interval)
                else:
                    await asyncio.sleep(0)

            except Exception:
                self.logger.exception(f"Worker error on queue {self.queue.queue_name}")
                await self._sleep(self.poll_interval)
        self.running = False
        self.logger.info(f"Stopped polling queue {self.queue.queue_name}")


class WorkerManager:
    """Runs independent poll loops for several queues"""

    def __init__(self):
        self.workers: Dict[str, QueueWorker] = {}

    def start(self, queue: "JobQueue", runner: Runner) -> QueueWorker:
        if queue.queue_name in self.workers and self.workers[queue.queue_name].running:
            raise RuntimeError(f"Queue {queue.queue_name} already has a running worker")
        worker = queue.start(runner)
        self.workers[queue.queue_name] = worker
        return worker

    async def stop_all(self, wait: bool = True) -> None:
        """Stop all workers gracefully"""
        for worker in list(self.workers.values()):
            await worker.stop(wait=wait)
        self.workers.clear()

    @property
    def active_count(self) -> int:
        """Number of loops currently polling"""
        return sum(1 for worker in self.workers.values() if worker.running)
