from .errors import (
    DuplicateJobError,
    JobFailedError,
    JobNotFoundError,
    JobQueueError,
    StorageConfigurationError,
)
from .limiters.base import Limiter, NullLimiter
from .limiters.composite import CompositeLimiter
from .limiters.concurrency import ConcurrencyLimiter
from .limiters.rate import RateLimiter
from .models.fingerprint import fingerprint
from .models.job import Job, JobStatus
from .queues.base import JobQueue
from .storage.database import SqlJobQueue
from .storage.memory import InMemoryJobQueue
from .workers.worker import QueueWorker, WorkerManager

__version__ = "0.1.0"
