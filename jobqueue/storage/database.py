import asyncio
import json
import logging
import os
from datetime import timezone
from typing import Any, List, Optional

from pydantic_core import to_jsonable_python
from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Enum as SQLEnum,
    Index,
    Integer,
    String,
    Text,
    case,
    create_engine,
    delete,
    func,
    inspect,
    literal,
    select,
    update,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool
from sqlalchemy.types import TypeDecorator

from ..errors import JobNotFoundError, StorageConfigurationError
from ..limiters.base import Limiter
from ..models.fingerprint import fingerprint
from ..models.job import Job, JobStatus
from ..queues.base import JobQueue
from ..utils import clock

logger = logging.getLogger(__name__)

Base = declarative_base()

DEFAULT_DB_PATH = os.path.join(os.path.expanduser("~"), ".jobqueue", "jobs.db")


class UTCDateTime(TypeDecorator):
    """Stores naive UTC, returns aware UTC"""

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return clock.ensure_utc(value).replace(tzinfo=None)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return value.replace(tzinfo=timezone.utc)


class JobModel(Base):
    __tablename__ = "job_queue"

    id = Column(Integer, primary_key=True, autoincrement=True)
    fingerprint = Column(String(64), nullable=False)
    queue = Column(String, nullable=False)
    status = Column(SQLEnum(JobStatus), nullable=False, default=JobStatus.PENDING)
    task_type = Column(String, nullable=False)
    input = Column(JSON, nullable=False)
    output = Column(JSON(none_as_null=True), nullable=True)
    retries = Column(Integer, nullable=False, default=0)
    max_retries = Column(Integer, nullable=False, default=10)
    run_after = Column(UTCDateTime, nullable=False)
    last_ran_at = Column(UTCDateTime, nullable=True)
    created_at = Column(UTCDateTime, nullable=False)
    completed_at = Column(UTCDateTime, nullable=True)
    deadline_at = Column(UTCDateTime, nullable=True)
    error = Column(Text, nullable=True)

    __table_args__ = (
        Index("job_queue_fetcher_idx", "queue", "status", "run_after"),
        Index("job_queue_fingerprint_idx", "queue", "fingerprint", "status"),
    )


job_table = JobModel.__table__

ACTIVE_STATUSES = (JobStatus.PENDING, JobStatus.PROCESSING)


def _to_job(row: JobModel) -> Job:
    return Job(
        id=row.id,
        queue_name=row.queue,
        task_type=row.task_type,
        input=row.input,
        output=row.output,
        error=row.error,
        fingerprint=row.fingerprint,
        status=row.status,
        created_at=row.created_at,
        run_after=row.run_after,
        deadline_at=row.deadline_at,
        last_ran_at=row.last_ran_at,
        completed_at=row.completed_at,
        retries=row.retries,
        max_retries=row.max_retries,
    )


def _dumps(value: Any) -> str:
    return json.dumps(to_jsonable_python(value))


def create_sqlite_engine(db_path: str = None) -> Engine:
    """Engine for a SQLite file (or any SQLAlchemy URL containing '://')"""
    if not db_path:
        db_path = DEFAULT_DB_PATH
    if "://" in db_path:
        return create_engine(db_path, json_serializer=_dumps)
    if db_path == ":memory:":
        # One shared connection, used from the worker threads
        return create_engine(
            "sqlite://",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
            json_serializer=_dumps,
        )
    directory = os.path.dirname(os.path.abspath(db_path))
    os.makedirs(directory, exist_ok=True)
    return create_engine(f"sqlite:///{db_path}", connect_args={"timeout": 30}, json_serializer=_dumps)


class SqlJobQueue(JobQueue):
    """
    Durable queue stored in the job_queue table.

    Several processes may poll the same table and queue name; claiming relies
    on a conditional UPDATE, not on in-process locks.
    """

    # Candidates examined per next() call when other pollers win the race
    claim_batch = 5

    def __init__(
        self,
        queue_name: str,
        db_path: str = None,
        limiter: Optional[Limiter] = None,
        poll_interval: float = 0.1,
        engine: Optional[Engine] = None,
    ):
        super().__init__(queue_name, limiter, poll_interval)
        self._owns_engine = engine is None
        self.engine = engine if engine is not None else create_sqlite_engine(db_path)
        self.Session = sessionmaker(bind=self.engine, expire_on_commit=False)
        self.ensure_schema()

    def __del__(self):
        if getattr(self, "_owns_engine", False) and hasattr(self, "engine"):
            self.engine.dispose()

    def dispose(self) -> None:
        self.engine.dispose()

    def ensure_schema(self) -> None:
        """Create the table and indexes, refusing an incompatible existing schema"""
        try:
            inspector = inspect(self.engine)
            if inspector.has_table(job_table.name):
                existing = {col["name"] for col in inspector.get_columns(job_table.name)}
                missing = set(job_table.columns.keys()) - existing
                if missing:
                    raise StorageConfigurationError(
                        f"Table {job_table.name} is missing columns: {', '.join(sorted(missing))}"
                    )
                expected = {index.name: [col.name for col in index.columns] for index in job_table.indexes}
                for index in inspector.get_indexes(job_table.name):
                    wanted = expected.get(index["name"])
                    if wanted is not None and list(index["column_names"]) != wanted:
                        raise StorageConfigurationError(
                            f"Index {index['name']} covers {index['column_names']}, expected {wanted}"
                        )
            Base.metadata.create_all(self.engine)
            for index in job_table.indexes:
                index.create(bind=self.engine, checkfirst=True)
        except SQLAlchemyError as e:
            raise StorageConfigurationError(f"Could not prepare job store: {str(e)}") from e

    def _in_queue(self, *criteria):
        return (JobModel.queue == self.queue_name, *criteria)

    # Session work runs on worker threads, off the event loop

    async def add(self, job: Job):
        return await asyncio.to_thread(self._add, job)

    def _add(self, job: Job):
        session = self.Session()
        try:
            row = JobModel(
                fingerprint=fingerprint(job.input),
                queue=self.queue_name,
                status=JobStatus.PENDING,
                task_type=job.task_type,
                input=job.input,
                retries=job.retries,
                max_retries=job.max_retries,
                run_after=job.run_after,
                created_at=job.created_at,
                deadline_at=job.deadline_at,
            )
            session.add(row)
            session.commit()
            job.id = row.id
            logger.debug(f"Queue {self.queue_name}: added job {row.id} ({row.task_type})")
            return row.id
        finally:
            session.close()

    async def get(self, job_id) -> Optional[Job]:
        return await asyncio.to_thread(self._get, job_id)

    def _get(self, job_id) -> Optional[Job]:
        session = self.Session()
        try:
            row = session.execute(
                select(JobModel).where(*self._in_queue(JobModel.id == job_id))
            ).scalar_one_or_none()
            return _to_job(row) if row else None
        finally:
            session.close()

    async def peek(self, num: int = 100) -> List[Job]:
        num = int(num) if num else 100
        return await asyncio.to_thread(self._peek, num)

    def _peek(self, num: int) -> List[Job]:
        session = self.Session()
        try:
            rows = session.execute(
                select(JobModel).where(*self._in_queue()).order_by(JobModel.id.asc()).limit(num)
            ).scalars()
            return [_to_job(row) for row in rows]
        finally:
            session.close()

    async def processing(self) -> List[Job]:
        return await asyncio.to_thread(self._processing)

    def _processing(self) -> List[Job]:
        session = self.Session()
        try:
            rows = session.execute(
                select(JobModel)
                .where(*self._in_queue(JobModel.status == JobStatus.PROCESSING))
                .order_by(JobModel.id.asc())
            ).scalars()
            return [_to_job(row) for row in rows]
        finally:
            session.close()

    async def next(self) -> Optional[Job]:
        return await asyncio.to_thread(self._next)

    def _next(self) -> Optional[Job]:
        now = clock.utcnow()
        with self.Session() as session, session.begin():
            candidates = session.execute(
                select(JobModel.id)
                .where(*self._in_queue(JobModel.status == JobStatus.PENDING, JobModel.run_after <= now))
                .order_by(JobModel.created_at.asc(), JobModel.id.asc())
                .limit(self.claim_batch)
            ).scalars().all()

            for candidate in candidates:
                # Only one poller can flip a given row out of PENDING
                result = session.execute(
                    update(job_table)
                    .where(job_table.c.id == candidate, job_table.c.status == JobStatus.PENDING)
                    .values(status=JobStatus.PROCESSING, last_ran_at=now)
                )
                if result.rowcount == 1:
                    return _to_job(session.get(JobModel, candidate))
                logger.debug(f"Queue {self.queue_name}: job {candidate} claimed elsewhere")
        return None

    async def complete(self, job_id, output: Any = None, error: Optional[str] = None) -> None:
        job = await asyncio.to_thread(self._complete, job_id, output, error)
        if job is not None:
            await self._notify_if_terminal(job)

    def _complete(self, job_id, output: Any, error: Optional[str]) -> Optional[Job]:
        """Apply the result in one UPDATE; returns None when the job was already terminal"""
        now = clock.utcnow()
        if error is not None:
            values = {
                "error": error,
                "retries": job_table.c.retries + 1,
                # SET expressions read the row's values from before this UPDATE
                "status": case(
                    (job_table.c.retries + 1 >= job_table.c.max_retries, JobStatus.FAILED.value),
                    else_=JobStatus.PENDING.value,
                ),
                "completed_at": now,
                "last_ran_at": func.coalesce(job_table.c.last_ran_at, literal(now, UTCDateTime())),
            }
        else:
            values = {
                "output": output,
                "error": None,
                "status": JobStatus.COMPLETED,
                "completed_at": now,
                "last_ran_at": func.coalesce(job_table.c.last_ran_at, literal(now, UTCDateTime())),
            }

        with self.Session() as session, session.begin():
            result = session.execute(
                update(job_table)
                .where(
                    job_table.c.id == job_id,
                    job_table.c.queue == self.queue_name,
                    job_table.c.status.in_(ACTIVE_STATUSES),
                )
                .values(**values)
            )
            if result.rowcount == 0:
                status = session.execute(
                    select(JobModel.status).where(*self._in_queue(JobModel.id == job_id))
                ).scalar_one_or_none()
                if status is None:
                    raise JobNotFoundError(job_id, self.queue_name)
                logger.warning(f"Queue {self.queue_name}: ignoring complete() for job {job_id}, already {status.value}")
                return None
            return _to_job(session.get(JobModel, job_id))

    async def size(self, status: JobStatus = JobStatus.PENDING) -> int:
        return await asyncio.to_thread(self._size, status)

    def _size(self, status: JobStatus) -> int:
        session = self.Session()
        try:
            return session.execute(
                select(func.count()).select_from(JobModel).where(*self._in_queue(JobModel.status == status))
            ).scalar_one()
        finally:
            session.close()

    async def clear(self) -> None:
        await asyncio.to_thread(self._clear)
        self.limiter.clear()

    def _clear(self) -> None:
        with self.Session() as session, session.begin():
            session.execute(delete(job_table).where(job_table.c.queue == self.queue_name))

    async def output_for_input(self, task_type: str, input: Any) -> Any:
        return await asyncio.to_thread(self._output_for_input, task_type, fingerprint(input))

    def _output_for_input(self, task_type: str, digest: str) -> Any:
        session = self.Session()
        try:
            row = session.execute(
                select(JobModel)
                .where(*self._in_queue(
                    JobModel.task_type == task_type,
                    JobModel.fingerprint == digest,
                    JobModel.status == JobStatus.COMPLETED,
                ))
                .order_by(JobModel.completed_at.desc(), JobModel.id.desc())
                .limit(1)
            ).scalar_one_or_none()
            return row.output if row else None
        finally:
            session.close()

    async def find_active(self, task_type: str, input: Any) -> Optional[Job]:
        return await asyncio.to_thread(self._find_active, task_type, fingerprint(input))

    def _find_active(self, task_type: str, digest: str) -> Optional[Job]:
        session = self.Session()
        try:
            row = session.execute(
                select(JobModel)
                .where(*self._in_queue(
                    JobModel.task_type == task_type,
                    JobModel.fingerprint == digest,
                    JobModel.status.in_(ACTIVE_STATUSES),
                ))
                .order_by(JobModel.created_at.asc(), JobModel.id.asc())
                .limit(1)
            ).scalar_one_or_none()
            return _to_job(row) if row else None
        finally:
            session.close()
