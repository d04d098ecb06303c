class JobQueueError(Exception):
    """Base class for job queue errors"""


class JobNotFoundError(JobQueueError, KeyError):
    """A job id is unknown to the queue"""

    def __init__(self, job_id, queue_name: str = None):
        self.job_id = job_id
        self.queue_name = queue_name
        where = f" in queue '{queue_name}'" if queue_name else ""
        super().__init__(f"Job {job_id} not found{where}")

    def __str__(self):
        # KeyError would otherwise repr() the message
        return self.args[0]


class DuplicateJobError(JobQueueError, ValueError):
    """A caller-supplied job id is already stored"""


class JobFailedError(JobQueueError):
    """A waited-on job ended in FAILED status"""

    def __init__(self, job_id, error: str = None):
        self.job_id = job_id
        self.error = error
        super().__init__(f"Job {job_id} failed: {error or 'Unknown error'}")


class StorageConfigurationError(JobQueueError):
    """The backing store is misconfigured or its schema is incompatible"""
