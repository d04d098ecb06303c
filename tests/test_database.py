import asyncio
import sqlite3
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine, inspect, text

from jobqueue.errors import JobNotFoundError, StorageConfigurationError
from jobqueue.models.job import Job, JobStatus
from jobqueue.storage.database import SqlJobQueue


def test_schema_has_lookup_indexes(sql_queue):
    indexes = {index["name"]: index["column_names"] for index in inspect(sql_queue.engine).get_indexes("job_queue")}
    assert indexes["job_queue_fetcher_idx"] == ["queue", "status", "run_after"]
    assert indexes["job_queue_fingerprint_idx"] == ["queue", "fingerprint", "status"]


def test_reopening_existing_store(temp_db):
    SqlJobQueue("test", db_path=temp_db).dispose()
    SqlJobQueue("test", db_path=temp_db).dispose()


def test_incompatible_table_is_rejected(temp_db):
    engine = create_engine(f"sqlite:///{temp_db}")
    with engine.begin() as conn:
        conn.execute(text("CREATE TABLE job_queue (id INTEGER PRIMARY KEY, command TEXT)"))

    with pytest.raises(StorageConfigurationError) as excinfo:
        SqlJobQueue("test", engine=engine)
    assert "fingerprint" in str(excinfo.value)
    engine.dispose()


def test_conflicting_index_is_rejected(temp_db):
    SqlJobQueue("test", db_path=temp_db).dispose()
    engine = create_engine(f"sqlite:///{temp_db}")
    with engine.begin() as conn:
        conn.execute(text("DROP INDEX job_queue_fetcher_idx"))
        conn.execute(text("CREATE INDEX job_queue_fetcher_idx ON job_queue (queue)"))

    with pytest.raises(StorageConfigurationError):
        SqlJobQueue("test", engine=engine)
    engine.dispose()


def test_missing_index_is_recreated(temp_db):
    SqlJobQueue("test", db_path=temp_db).dispose()
    engine = create_engine(f"sqlite:///{temp_db}")
    with engine.begin() as conn:
        conn.execute(text("DROP INDEX job_queue_fingerprint_idx"))

    SqlJobQueue("test", engine=engine)
    names = {index["name"] for index in inspect(engine).get_indexes("job_queue")}
    assert "job_queue_fingerprint_idx" in names
    engine.dispose()


@pytest.mark.asyncio
async def test_ids_are_assigned_by_the_store(sql_queue):
    first = await sql_queue.add(Job(id="caller-id", task_type="t", input=1))
    second = await sql_queue.enqueue("t", 2)
    assert isinstance(first, int)
    assert second == first + 1
    assert await sql_queue.get("caller-id") is None


@pytest.mark.asyncio
async def test_jobs_survive_reopening(temp_db):
    queue = SqlJobQueue("durable", db_path=temp_db)
    job_id = await queue.enqueue("embed", {"text": "a", "nested": {"k": [1, 2]}}, max_retries=4)
    await queue.next()
    queue.dispose()

    reopened = SqlJobQueue("durable", db_path=temp_db)
    job = await reopened.get(job_id)
    assert job.status == JobStatus.PROCESSING
    assert job.input == {"text": "a", "nested": {"k": [1, 2]}}
    assert job.max_retries == 4

    await reopened.complete(job_id, output={"v": 1})
    assert await reopened.output_for_input("embed", {"nested": {"k": [1, 2]}, "text": "a"}) == {"v": 1}
    reopened.dispose()


@pytest.mark.asyncio
async def test_timestamps_come_back_as_utc(sql_queue):
    deadline = datetime(2030, 6, 1, 14, 0, tzinfo=timezone(timedelta(hours=2)))
    job_id = await sql_queue.enqueue("t", 1, deadline_at=deadline, run_after=datetime(2020, 1, 1, 9, 0))
    job = await sql_queue.get(job_id)

    assert job.deadline_at == datetime(2030, 6, 1, 12, 0, tzinfo=timezone.utc)
    assert job.deadline_at.tzinfo == timezone.utc
    assert job.run_after == datetime(2020, 1, 1, 9, 0, tzinfo=timezone.utc)
    assert job.created_at.tzinfo == timezone.utc


@pytest.mark.asyncio
async def test_pollers_sharing_a_store_never_claim_the_same_job(temp_db):
    first = SqlJobQueue("shared", db_path=temp_db)
    second = SqlJobQueue("shared", db_path=temp_db)
    ids = {await first.enqueue("t", n) for n in range(4)}

    claimed = []
    for poller in (first, second, second, first, second):
        job = await poller.next()
        if job is not None:
            claimed.append(job.id)

    assert sorted(claimed) == sorted(ids)
    assert await first.size(JobStatus.PROCESSING) == 4
    first.dispose()
    second.dispose()


@pytest.mark.asyncio
async def test_next_skips_rows_claimed_elsewhere(temp_db):
    queue = SqlJobQueue("race", db_path=temp_db)
    other = SqlJobQueue("race", db_path=temp_db)
    stolen = await queue.enqueue("t", 1)
    remaining = await queue.enqueue("t", 2)

    # Another process claims the head row between our select and update
    make_session = queue.Session

    def racing_session():
        session = make_session()
        original = session.execute
        state = {"raced": False}

        def execute(statement, *args, **kwargs):
            result = original(statement, *args, **kwargs)
            if not state["raced"] and statement.is_select:
                state["raced"] = True
                # Drain the cursor before the competing write
                frozen = result.freeze()
                with other.engine.begin() as conn:
                    conn.execute(
                        text("UPDATE job_queue SET status = 'PROCESSING' WHERE id = :id"), {"id": stolen}
                    )
                return frozen()
            return result

        session.execute = execute
        return session

    queue.Session = racing_session
    job = await queue.next()
    assert job.id == remaining
    queue.dispose()
    other.dispose()


@pytest.mark.asyncio
async def test_queues_are_isolated(temp_db):
    emails = SqlJobQueue("emails", db_path=temp_db)
    images = SqlJobQueue("images", db_path=temp_db)
    email_id = await emails.enqueue("send", {"to": "a@example.com"})
    await images.enqueue("resize", {"w": 10})

    assert await images.get(email_id) is None
    with pytest.raises(JobNotFoundError):
        await images.complete(email_id, output=1)

    await emails.complete(email_id, output="sent")
    assert await images.output_for_input("send", {"to": "a@example.com"}) is None

    await emails.clear()
    assert await emails.peek() == []
    assert await images.size() == 1
    emails.dispose()
    images.dispose()


@pytest.mark.asyncio
async def test_failed_attempt_keeps_previous_output_untouched(sql_queue):
    job_id = await sql_queue.enqueue("t", 1, max_retries=2)
    await sql_queue.next()
    await sql_queue.complete(job_id, error="first")
    job = await sql_queue.get(job_id)
    assert job.output is None
    assert job.retries == 1
    assert job.status == JobStatus.PENDING
    assert job.last_ran_at is not None


@pytest.mark.asyncio
async def test_locked_store_does_not_stall_the_event_loop(temp_db):
    engine = create_engine(f"sqlite:///{temp_db}", connect_args={"timeout": 5})
    queue = SqlJobQueue("locked", engine=engine)
    blocker = sqlite3.connect(temp_db, isolation_level=None)
    blocker.execute("BEGIN IMMEDIATE")

    loop = asyncio.get_running_loop()
    ticks = []

    async def heartbeat():
        while True:
            ticks.append(loop.time())
            await asyncio.sleep(0.02)

    async def release_lock():
        await asyncio.sleep(0.3)
        blocker.execute("COMMIT")

    beat = asyncio.create_task(heartbeat())
    release = asyncio.create_task(release_lock())
    try:
        job_id = await queue.enqueue("t", 1)
    finally:
        beat.cancel()
        await asyncio.gather(beat, release, return_exceptions=True)
        blocker.close()

    gaps = [later - earlier for earlier, later in zip(ticks, ticks[1:])]
    assert len(ticks) > 5
    assert max(gaps) < 0.2
    assert (await queue.get(job_id)).status == JobStatus.PENDING
    engine.dispose()


@pytest.mark.asyncio
async def test_in_memory_database_is_shared_across_calls():
    queue = SqlJobQueue("scratch", db_path=":memory:")
    job_id = await queue.enqueue("t", {"x": 1})
    assert (await queue.get(job_id)).input == {"x": 1}
    assert await queue.size() == 1
    queue.dispose()
