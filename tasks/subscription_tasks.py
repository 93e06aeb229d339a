"""Celery tasks for recurring subscription detection."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from celery_app import celery_app
from recurwatch.database import SessionLocal
from recurwatch.errors import DetectionAlreadyRunningError, DetectionTimeoutError
from recurwatch.models import Transaction
from recurwatch.services.categorization_service import OpenAISubscriptionCategorizer
from recurwatch.services.detection_config import DetectionConfig
from recurwatch.services.detection_job import run_subscription_detection
from recurwatch.services.detection_lock import UserDetectionLock

logger = logging.getLogger(__name__)


@celery_app.task(bind=True, max_retries=2, name="tasks.subscription_tasks.detect_user_subscriptions")
def detect_user_subscriptions_task(self, user_id: str) -> dict:
    """Detect and reconcile subscriptions for one user."""
    config = DetectionConfig.from_env()
    session = SessionLocal()
    try:
        report = run_subscription_detection(
            session,
            user_id,
            config=config,
            categorizer=OpenAISubscriptionCategorizer(session),
            lock=UserDetectionLock(),
        )
        return report.as_dict()
    except DetectionAlreadyRunningError:
        logger.info("[SUBSCRIPTION_TASKS] Skipped user=%s: detection already running", user_id)
        return {"user_id": user_id, "skipped": True, "reason": "ALREADY_RUNNING"}
    except DetectionTimeoutError as exc:
        session.rollback()
        logger.error("[SUBSCRIPTION_TASKS] Detection timed out for user=%s: %s", user_id, exc)
        return {"user_id": user_id, "status": "timed_out"}
    except Exception as exc:  # noqa: BLE001
        session.rollback()
        logger.exception("[SUBSCRIPTION_TASKS] Failed detection for user=%s: %s", user_id, exc)
        raise self.retry(exc=exc, countdown=60)
    finally:
        session.close()


@celery_app.task(bind=True, max_retries=0, name="tasks.subscription_tasks.detect_subscriptions_for_all_users")
def detect_subscriptions_for_all_users(self) -> dict:
    """Nightly sweep: enqueue one detection run per user with charges in the lookback window."""
    config = DetectionConfig.from_env()
    since = datetime.utcnow() - timedelta(days=config.lookback_days)

    session = SessionLocal()
    try:
        rows = (
            session.query(Transaction.user_id)
            .filter(
                Transaction.booked_at >= since,
                Transaction.amount > 0,
                Transaction.pending == False,  # noqa: E712
            )
            .distinct()
            .all()
        )
        user_ids = [row[0] for row in rows]
    finally:
        session.close()

    for user_id in user_ids:
        detect_user_subscriptions_task.delay(user_id)

    logger.info("[SUBSCRIPTION_TASKS] Enqueued detection for %s users", len(user_ids))
    return {"enqueued": len(user_ids)}
