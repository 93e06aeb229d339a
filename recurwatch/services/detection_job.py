"""
One detection run for one user: detect, reconcile, report.

Shared by the Celery task and the HTTP trigger.
"""
import logging
import time
from contextlib import nullcontext
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from sqlalchemy.orm import Session

from recurwatch.services.categorization_service import SubscriptionCategorizer
from recurwatch.services.detection_config import DetectionConfig
from recurwatch.services.detection_lock import UserDetectionLock
from recurwatch.services.stores import SqlSubscriptionStore, SqlTransactionSource
from recurwatch.services.subscription_detector import DetectionResult, SubscriptionDetector
from recurwatch.services.subscription_reconciler import (
    ReconciliationSummary,
    SubscriptionReconciler,
)

logger = logging.getLogger(__name__)


@dataclass
class DetectionRunReport:
    user_id: str
    results: List[DetectionResult] = field(default_factory=list)
    summary: ReconciliationSummary = field(default_factory=ReconciliationSummary)
    duration_seconds: float = 0.0

    def as_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "detected_count": len(self.results),
            "duration_seconds": round(self.duration_seconds, 3),
            **self.summary.as_dict(),
        }


def run_subscription_detection(
    db: Session,
    user_id: str,
    config: Optional[DetectionConfig] = None,
    categorizer: Optional[SubscriptionCategorizer] = None,
    lock: Optional[UserDetectionLock] = None,
    as_of: Optional[datetime] = None,
) -> DetectionRunReport:
    """
    Detect and reconcile subscriptions for a user.

    The whole run holds the per-user lock when one is given and renews it
    before each reconciled merchant. Analysis is bounded by
    config.run_timeout_seconds; reconciliation only starts after analysis
    finished in time.
    """
    config = config or DetectionConfig.from_env()
    started = time.monotonic()
    deadline = started + config.run_timeout_seconds

    detector = SubscriptionDetector(SqlTransactionSource(db), config=config)
    reconciler = SubscriptionReconciler(
        SqlSubscriptionStore(db),
        categorizer=categorizer,
        config=config,
    )

    guard = lock.hold(user_id) if lock is not None else nullcontext()
    with guard as renew:
        results = detector.detect_user_subscriptions(user_id, as_of=as_of, deadline=deadline)
        summary = reconciler.reconcile(user_id, results, heartbeat=renew)

    report = DetectionRunReport(
        user_id=user_id,
        results=results,
        summary=summary,
        duration_seconds=time.monotonic() - started,
    )
    logger.info(f"[SUBSCRIPTION_DETECTION] Run complete: {report.as_dict()}")
    return report
