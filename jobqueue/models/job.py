from datetime import datetime
from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel, Field, field_validator, model_validator

from ..utils import clock
from .fingerprint import fingerprint as make_fingerprint


class JobStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED})


class Job(BaseModel):
    id: Optional[Union[int, str]] = None
    queue_name: Optional[str] = None
    task_type: str
    input: Any = None
    output: Any = None
    error: Optional[str] = None
    fingerprint: Optional[str] = None
    status: JobStatus = JobStatus.PENDING
    created_at: datetime = Field(default_factory=lambda: clock.utcnow())
    run_after: Optional[datetime] = None  # defaults to created_at
    deadline_at: Optional[datetime] = None  # advisory only
    last_ran_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    retries: int = Field(default=0, ge=0)
    max_retries: int = Field(default=10, ge=0)

    @field_validator("created_at", "run_after", "deadline_at", "last_ran_at", "completed_at")
    @classmethod
    def _to_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return clock.ensure_utc(value)

    @model_validator(mode="after")
    def _fill_derived(self) -> "Job":
        if self.run_after is None:
            self.run_after = self.created_at
        if not self.fingerprint:
            self.fingerprint = make_fingerprint(self.input)
        return self

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def is_eligible(self, now: datetime) -> bool:
        """PENDING and past its run_after"""
        return self.status == JobStatus.PENDING and self.run_after <= now
