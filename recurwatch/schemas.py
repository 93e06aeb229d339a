from pydantic import BaseModel, ConfigDict
from typing import Optional, List
from datetime import datetime
from decimal import Decimal
from uuid import UUID

from recurwatch.services.detection_config import Frequency


class DetectRequest(BaseModel):
    user_id: str
    as_of: Optional[datetime] = None


class DetectionResultResponse(BaseModel):
    merchant_name: str
    is_subscription: bool
    confidence: float
    frequency: Optional[Frequency] = None
    average_amount: Decimal
    next_billing_date: Optional[datetime] = None
    last_transaction_date: Optional[datetime] = None
    currency: Optional[str] = None
    transaction_count: int = 0

    model_config = ConfigDict(from_attributes=True, use_enum_values=True)


class ReconciliationSummaryResponse(BaseModel):
    created: int = 0
    updated: int = 0
    skipped: int = 0
    errors: int = 0
    deduplicated: int = 0


class DetectResponse(BaseModel):
    user_id: str
    results: List[DetectionResultResponse]
    summary: ReconciliationSummaryResponse
    duration_seconds: float


class DetectEnqueuedResponse(BaseModel):
    user_id: str
    task_id: str
    message: str


class SingleTransactionDetectionResponse(BaseModel):
    """Detection outcome for one transaction; result is None when no recurring series was found."""
    transaction_id: UUID
    result: Optional[DetectionResultResponse] = None
