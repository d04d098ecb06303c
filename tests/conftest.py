import os
import tempfile
from datetime import datetime, timedelta, timezone

import pytest

from jobqueue.storage.database import SqlJobQueue
from jobqueue.storage.memory import InMemoryJobQueue
from jobqueue.utils import clock


class FakeClock:
    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def fake_clock(monkeypatch):
    fake = FakeClock(datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc))
    monkeypatch.setattr(clock, "utcnow", fake)
    return fake


@pytest.fixture
def temp_db():
    with tempfile.NamedTemporaryFile(suffix='.db', delete=False) as f:
        db_path = f.name
    yield db_path
    try:
        os.unlink(db_path)
    except (PermissionError, FileNotFoundError):
        pass  # File might still be locked, will be cleaned up later


@pytest.fixture
def sql_queue(temp_db):
    queue = SqlJobQueue("test", db_path=temp_db)
    yield queue
    queue.dispose()


@pytest.fixture(params=["memory", "sql"])
def queue(request, temp_db):
    """Each backend, so contract tests run against both"""
    if request.param == "memory":
        yield InMemoryJobQueue("test")
    else:
        q = SqlJobQueue("test", db_path=temp_db)
        yield q
        q.dispose()
