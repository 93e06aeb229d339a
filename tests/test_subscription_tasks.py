"""
Celery task bodies run in-process against an in-memory database.
"""
import os
import sys
from datetime import datetime, timedelta
from types import SimpleNamespace
from unittest.mock import patch

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from recurwatch.models import Subscription  # noqa: E402
from recurwatch.services.detection_config import DetectionConfig  # noqa: E402
from recurwatch.services.detection_lock import UserDetectionLock  # noqa: E402
from tasks.subscription_tasks import (  # noqa: E402
    detect_subscriptions_for_all_users,
    detect_user_subscriptions_task,
)
from tests.sqlite_session import add_transaction, add_user, make_session  # noqa: E402


class _Redis:
    def __init__(self, acquirable=True):
        self.acquirable = acquirable
        self.released = []

    def lock(self, name, timeout=None):
        return SimpleNamespace(
            acquire=lambda blocking=None, blocking_timeout=None: self.acquirable,
            reacquire=lambda: None,
            release=lambda: self.released.append(name),
        )


def _seed_recent_monthly(db, user_id: str = "user-1") -> None:
    now = datetime.utcnow()
    for days_ago in (70, 40, 10):
        add_transaction(db, user_id, "Netflix", "15.49", now - timedelta(days=days_ago))


def _run_user_task(db, redis_client, config=None) -> dict:
    lock = UserDetectionLock(client=redis_client, ttl_seconds=30, blocking_timeout_seconds=0)
    with patch("tasks.subscription_tasks.SessionLocal", return_value=db), \
            patch("tasks.subscription_tasks.UserDetectionLock", return_value=lock), \
            patch("tasks.subscription_tasks.OpenAISubscriptionCategorizer", return_value=None), \
            patch(
                "tasks.subscription_tasks.DetectionConfig.from_env",
                return_value=config or DetectionConfig(analysis_max_workers=1),
            ):
        return detect_user_subscriptions_task.run("user-1")


def test_user_task_reports_created_subscriptions() -> None:
    db = make_session()
    add_user(db)
    _seed_recent_monthly(db)
    redis_client = _Redis()

    payload = _run_user_task(db, redis_client)

    assert payload["user_id"] == "user-1"
    assert payload["detected_count"] == 1
    assert payload["created"] == 1
    assert redis_client.released == ["subscription_detection:user-1"]
    assert db.query(Subscription).count() == 1
    print("✓ user task success payload")


def test_user_task_skips_when_detection_already_running() -> None:
    db = make_session()
    add_user(db)
    _seed_recent_monthly(db)

    payload = _run_user_task(db, _Redis(acquirable=False))

    assert payload == {"user_id": "user-1", "skipped": True, "reason": "ALREADY_RUNNING"}
    assert db.query(Subscription).count() == 0
    print("✓ user task skip payload")


def test_user_task_reports_timeout_without_writing() -> None:
    db = make_session()
    add_user(db)
    _seed_recent_monthly(db)

    payload = _run_user_task(
        db,
        _Redis(),
        config=DetectionConfig(analysis_max_workers=1, run_timeout_seconds=-1),
    )

    assert payload == {"user_id": "user-1", "status": "timed_out"}
    assert db.query(Subscription).count() == 0
    print("✓ user task timeout payload")


def test_nightly_sweep_enqueues_users_with_recent_charges() -> None:
    db = make_session()
    now = datetime.utcnow()
    for user_id in ("user-1", "user-2", "user-3"):
        add_user(db, user_id)
    add_transaction(db, "user-1", "Netflix", "15.49", now - timedelta(days=10))
    add_transaction(db, "user-2", "Netflix", "15.49", now - timedelta(days=400))
    add_transaction(db, "user-3", "Refund Co", "-20.00", now - timedelta(days=5))
    add_transaction(db, "user-3", "Spotify", "9.99", now - timedelta(days=2), pending=True)

    with patch("tasks.subscription_tasks.SessionLocal", return_value=db), \
            patch(
                "tasks.subscription_tasks.DetectionConfig.from_env",
                return_value=DetectionConfig(lookback_days=365),
            ), \
            patch("tasks.subscription_tasks.detect_user_subscriptions_task") as user_task:
        payload = detect_subscriptions_for_all_users.run()

    assert payload == {"enqueued": 1}
    assert [call.args for call in user_task.delay.call_args_list] == [("user-1",)]
    print("✓ nightly sweep fan-out")


if __name__ == "__main__":
    test_user_task_reports_created_subscriptions()
    test_user_task_skips_when_detection_already_running()
    test_user_task_reports_timeout_without_writing()
    test_nightly_sweep_enqueues_users_with_recent_charges()
    print("All subscription task tests passed.")
