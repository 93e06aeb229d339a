"""
Celery application configuration for subscription detection jobs.
"""
import os
from celery import Celery
from celery.schedules import crontab

from recurwatch.services.detection_config import DETECTION_TASK_TIME_LIMIT_SECONDS

# Redis URL for broker and backend
REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")

celery_app = Celery(
    "recurwatch_tasks",
    broker=REDIS_URL,
    backend=REDIS_URL,
    include=["tasks.subscription_tasks"],
)


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _build_beat_schedule() -> dict:
    schedule = {}
    if not _env_bool("SUBSCRIPTION_DETECTION_SCHEDULE_ENABLED", default=True):
        return schedule

    try:
        detection_hour_utc = int(os.getenv("SUBSCRIPTION_DETECTION_HOUR_UTC", "3"))
    except ValueError:
        detection_hour_utc = 3

    detection_hour_utc = max(0, min(23, detection_hour_utc))
    schedule["subscription-detection-nightly"] = {
        "task": "tasks.subscription_tasks.detect_subscriptions_for_all_users",
        "schedule": crontab(minute=0, hour=detection_hour_utc),
    }
    return schedule


celery_app.conf.update(
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],

    timezone="UTC",
    enable_utc=True,

    task_track_started=True,
    task_time_limit=DETECTION_TASK_TIME_LIMIT_SECONDS,
    task_soft_time_limit=max(1, DETECTION_TASK_TIME_LIMIT_SECONDS - 60),

    worker_prefetch_multiplier=1,
    worker_concurrency=int(os.getenv("CELERY_WORKER_CONCURRENCY", "4")),

    beat_schedule=_build_beat_schedule(),
)


if __name__ == "__main__":
    celery_app.start()
