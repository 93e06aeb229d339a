"""
API endpoints for recurring subscription detection.
Runs detection synchronously, enqueues it on Celery, or checks a single transaction.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from recurwatch.database import get_db
from recurwatch.errors import (
    DetectionAlreadyRunningError,
    DetectionTimeoutError,
    TransactionNotFoundError,
)
from recurwatch.schemas import (
    DetectEnqueuedResponse,
    DetectionResultResponse,
    DetectRequest,
    DetectResponse,
    ReconciliationSummaryResponse,
    SingleTransactionDetectionResponse,
)
from recurwatch.services.categorization_service import (
    OpenAISubscriptionCategorizer,
    SubscriptionCategorizer,
)
from recurwatch.services.detection_config import DetectionConfig
from recurwatch.services.detection_job import run_subscription_detection
from recurwatch.services.detection_lock import UserDetectionLock
from recurwatch.services.stores import SqlTransactionSource
from recurwatch.services.subscription_detector import SubscriptionDetector

logger = logging.getLogger(__name__)

router = APIRouter()


def get_detection_config() -> DetectionConfig:
    return DetectionConfig.from_env()


def get_detection_lock() -> Optional[UserDetectionLock]:
    return UserDetectionLock()


def get_categorizer(db: Session = Depends(get_db)) -> Optional[SubscriptionCategorizer]:
    return OpenAISubscriptionCategorizer(db)


@router.post("/detect", response_model=DetectResponse)
def detect_subscriptions(
    request: DetectRequest,
    db: Session = Depends(get_db),
    config: DetectionConfig = Depends(get_detection_config),
    lock: Optional[UserDetectionLock] = Depends(get_detection_lock),
    categorizer: Optional[SubscriptionCategorizer] = Depends(get_categorizer),
):
    """Detect and reconcile subscriptions for a user and return the outcome."""
    try:
        report = run_subscription_detection(
            db,
            request.user_id,
            config=config,
            categorizer=categorizer,
            lock=lock,
            as_of=request.as_of,
        )
    except DetectionAlreadyRunningError:
        raise HTTPException(
            status_code=409,
            detail=f"Subscription detection already running for user {request.user_id}",
        )
    except DetectionTimeoutError as e:
        db.rollback()
        raise HTTPException(status_code=504, detail=str(e))

    return DetectResponse(
        user_id=report.user_id,
        results=[DetectionResultResponse.model_validate(r) for r in report.results],
        summary=ReconciliationSummaryResponse(**report.summary.as_dict()),
        duration_seconds=report.duration_seconds,
    )


@router.post("/detect/async", response_model=DetectEnqueuedResponse, status_code=202)
def enqueue_subscription_detection(request: DetectRequest):
    """Enqueue detection for a user on the Celery worker."""
    from tasks.subscription_tasks import detect_user_subscriptions_task

    try:
        task = detect_user_subscriptions_task.delay(request.user_id)
    except Exception as e:
        logger.exception(f"[SUBSCRIPTION_API] Failed to enqueue detection for {request.user_id}")
        raise HTTPException(status_code=503, detail=f"Failed to enqueue detection: {e}")

    return DetectEnqueuedResponse(
        user_id=request.user_id,
        task_id=task.id,
        message="Subscription detection enqueued",
    )


@router.get(
    "/transactions/{transaction_id}/detection",
    response_model=SingleTransactionDetectionResponse,
)
def detect_single_transaction(
    transaction_id: str,
    db: Session = Depends(get_db),
    config: DetectionConfig = Depends(get_detection_config),
):
    """Check whether one transaction is part of a recurring series. Read-only."""
    detector = SubscriptionDetector(SqlTransactionSource(db), config=config)
    try:
        result = detector.detect_single_transaction(transaction_id)
    except TransactionNotFoundError:
        raise HTTPException(status_code=404, detail="Transaction not found")

    return SingleTransactionDetectionResponse(
        transaction_id=transaction_id,
        result=DetectionResultResponse.model_validate(result) if result else None,
    )
