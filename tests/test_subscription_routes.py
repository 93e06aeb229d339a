"""
HTTP tests for the subscription detection endpoints.
"""
import os
import sys
import uuid
from datetime import datetime
from types import SimpleNamespace
from unittest.mock import patch

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from fastapi.testclient import TestClient  # noqa: E402

from recurwatch.database import get_db  # noqa: E402
from recurwatch.main import app  # noqa: E402
from recurwatch.models import Subscription  # noqa: E402
from recurwatch.routes.subscriptions import (  # noqa: E402
    get_categorizer,
    get_detection_config,
    get_detection_lock,
)
from recurwatch.services.detection_config import DetectionConfig  # noqa: E402
from recurwatch.services.detection_lock import UserDetectionLock  # noqa: E402
from tests.sqlite_session import add_transaction, add_user, make_session  # noqa: E402


class _BusyRedis:
    def lock(self, name, timeout=None):
        return SimpleNamespace(acquire=lambda blocking=None, blocking_timeout=None: False)


def _client(db, config=None, lock=None) -> TestClient:
    def override_get_db():
        yield db

    app.dependency_overrides = {
        get_db: override_get_db,
        get_detection_config: lambda: config or DetectionConfig(),
        get_detection_lock: lambda: lock,
        get_categorizer: lambda: None,
    }
    return TestClient(app)


def _seed(db):
    add_user(db)
    txns = [
        add_transaction(db, "user-1", "Netflix", "15.49", booked_at)
        for booked_at in (datetime(2024, 1, 1), datetime(2024, 2, 1), datetime(2024, 3, 3))
    ]
    return txns


def test_health() -> None:
    response = TestClient(app).get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "healthy"}
    print("✓ health")


def test_detect_endpoint_creates_subscriptions() -> None:
    db = make_session()
    try:
        _seed(db)
        client = _client(db)

        response = client.post(
            "/api/subscriptions/detect",
            json={"user_id": "user-1", "as_of": "2024-03-20T00:00:00"},
        )

        assert response.status_code == 200, response.text
        payload = response.json()
        assert payload["user_id"] == "user-1"
        assert payload["summary"]["created"] == 1
        assert len(payload["results"]) == 1
        result = payload["results"][0]
        assert result["merchant_name"] == "netflix"
        assert result["frequency"] == "monthly"
        assert result["is_subscription"] is True
        assert result["next_billing_date"].startswith("2024-04-03")
        assert db.query(Subscription).count() == 1
    finally:
        app.dependency_overrides = {}
        db.close()
    print("✓ POST /detect")


def test_detect_endpoint_conflict_when_locked() -> None:
    db = make_session()
    try:
        _seed(db)
        lock = UserDetectionLock(client=_BusyRedis(), blocking_timeout_seconds=0)
        client = _client(db, lock=lock)

        response = client.post("/api/subscriptions/detect", json={"user_id": "user-1"})

        assert response.status_code == 409
        assert db.query(Subscription).count() == 0
    finally:
        app.dependency_overrides = {}
        db.close()
    print("✓ 409 when already running")


def test_detect_endpoint_timeout() -> None:
    db = make_session()
    try:
        _seed(db)
        client = _client(db, config=DetectionConfig(run_timeout_seconds=-1))

        response = client.post(
            "/api/subscriptions/detect",
            json={"user_id": "user-1", "as_of": "2024-03-20T00:00:00"},
        )

        assert response.status_code == 504
        assert db.query(Subscription).count() == 0
    finally:
        app.dependency_overrides = {}
        db.close()
    print("✓ 504 on deadline")


def test_detect_async_enqueues_task() -> None:
    from tasks import subscription_tasks

    with patch.object(
        subscription_tasks.detect_user_subscriptions_task,
        "delay",
        return_value=SimpleNamespace(id="task-123"),
    ) as delay:
        response = TestClient(app).post(
            "/api/subscriptions/detect/async", json={"user_id": "user-1"}
        )

    assert response.status_code == 202
    assert response.json()["task_id"] == "task-123"
    delay.assert_called_once_with("user-1")
    print("✓ POST /detect/async")


def test_single_transaction_detection() -> None:
    db = make_session()
    try:
        txns = _seed(db)
        client = _client(db)

        response = client.get(f"/api/subscriptions/transactions/{txns[-1].id}/detection")

        assert response.status_code == 200
        payload = response.json()
        assert payload["transaction_id"] == str(txns[-1].id)
        assert payload["result"]["merchant_name"] == "Netflix"
        assert payload["result"]["transaction_count"] == 3

        missing = client.get(f"/api/subscriptions/transactions/{uuid.uuid4()}/detection")
        assert missing.status_code == 404
        garbage = client.get("/api/subscriptions/transactions/not-a-uuid/detection")
        assert garbage.status_code == 404
    finally:
        app.dependency_overrides = {}
        db.close()
    print("✓ GET /transactions/{id}/detection")


if __name__ == "__main__":
    test_health()
    test_detect_endpoint_creates_subscriptions()
    test_detect_endpoint_conflict_when_locked()
    test_detect_endpoint_timeout()
    test_detect_async_enqueues_task()
    test_single_transaction_detection()
    print("All subscription route tests passed.")
