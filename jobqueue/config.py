import json
import os
from typing import Optional

from pydantic import BaseModel, Field

from .limiters.composite import CompositeLimiter
from .limiters.concurrency import ConcurrencyLimiter
from .limiters.rate import RateLimiter

CONFIG_DIR = os.path.join(os.path.expanduser("~"), ".jobqueue")
CONFIG_ENV = "JOBQUEUE_CONFIG"


class QueueSettings(BaseModel):
    db_path: str = Field(default_factory=lambda: os.path.join(CONFIG_DIR, "jobs.db"))
    poll_interval: float = Field(default=0.1, gt=0)
    max_retries: int = Field(default=10, ge=0)
    max_concurrent_jobs: int = Field(default=1, ge=1)
    min_interval_ms: float = Field(default=0, ge=0)
    rate_limit: Optional[int] = Field(default=None, ge=1)  # max job starts per window
    rate_window_seconds: float = Field(default=60, gt=0)


def config_path(path: Optional[str] = None) -> str:
    return path or os.environ.get(CONFIG_ENV) or os.path.join(CONFIG_DIR, "config.json")


def load_settings(path: Optional[str] = None) -> QueueSettings:
    """Read settings, writing the defaults on first use"""
    path = config_path(path)
    if not os.path.exists(path):
        settings = QueueSettings()
        save_settings(settings, path)
        return settings
    with open(path, "r") as f:
        return QueueSettings(**json.load(f))


def save_settings(settings: QueueSettings, path: Optional[str] = None) -> None:
    path = config_path(path)
    os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
    with open(path, "w") as f:
        json.dump(settings.model_dump(), f, indent=2)


def build_limiter(settings: QueueSettings) -> CompositeLimiter:
    """Concurrency limiter, plus a sliding-window rate limiter when rate_limit is set"""
    limiter = CompositeLimiter([ConcurrencyLimiter(settings.max_concurrent_jobs, settings.min_interval_ms)])
    if settings.rate_limit:
        limiter.add_limiter(RateLimiter(settings.rate_limit, settings.rate_window_seconds))
    return limiter
