"""
Subscription pattern detection service for discovering recurring payments.

Core approach: group a user's settled charges by normalized merchant name,
classify the gaps between charges into a billing cadence, score how stable
the amount is, and combine both with the sample size into one confidence.

Usage:
    detector = SubscriptionDetector(SqlTransactionSource(db))
    results = detector.detect_user_subscriptions(user_id)
    # flags matched transactions and returns DetectionResults for the reconciler
"""
import logging
import math
import time
from collections import Counter, defaultdict
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeoutError
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, List, Optional, Sequence, Union
from uuid import UUID

from dateutil.relativedelta import relativedelta

from recurwatch.errors import DetectionTimeoutError, TransactionNotFoundError
from recurwatch.models import Transaction
from recurwatch.services.detection_config import DetectionConfig, Frequency
from recurwatch.services.merchant_normalizer import normalize_merchant_name
from recurwatch.services.stores import MerchantAggregate, TransactionSource

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 24 * 60 * 60

NEXT_BILLING_STEPS = {
    Frequency.WEEKLY: relativedelta(days=7),
    Frequency.BIWEEKLY: relativedelta(days=14),
    Frequency.MONTHLY: relativedelta(months=1),
    Frequency.QUARTERLY: relativedelta(months=3),
    Frequency.YEARLY: relativedelta(years=1),
}


@dataclass
class TransactionGroup:
    """Transactions of one user sharing a merchant key."""
    merchant_name: str
    transactions: List[Transaction]


@dataclass(frozen=True)
class FrequencyMatch:
    frequency: Frequency
    confidence: float
    match_ratio: float
    average_interval: float


@dataclass
class DetectionResult:
    """Outcome of analyzing one merchant group."""
    merchant_name: str
    is_subscription: bool
    confidence: float
    frequency: Optional[Frequency]
    average_amount: Decimal
    next_billing_date: Optional[datetime] = None
    last_transaction_date: Optional[datetime] = None
    currency: Optional[str] = None
    transaction_count: int = 0
    transaction_ids: List[UUID] = field(default_factory=list)


class SubscriptionDetector:
    """
    Detects recurring subscriptions from a user's transaction history.

    Pipeline:
    1. Prefilter merchants from aggregates (count, date span) before loading rows
    2. Group the candidate rows by normalized merchant name
    3. Analyze each group in a bounded worker pool (pure, no I/O)
    4. Write is_subscription/confidence back onto matched transactions
    """

    def __init__(
        self,
        transactions: TransactionSource,
        config: Optional[DetectionConfig] = None,
    ):
        self.transactions = transactions
        self.config = config or DetectionConfig()

    # ------------------------------------------------------------------
    # Batch path
    # ------------------------------------------------------------------

    def detect_user_subscriptions(
        self,
        user_id: str,
        as_of: Optional[datetime] = None,
        deadline: Optional[float] = None,
    ) -> List[DetectionResult]:
        """
        Analyze a user's last year of charges and return detected subscriptions.

        Only results that clear min_confidence are returned and flagged on
        their source transactions. `deadline` is a time.monotonic() value;
        exceeding it raises DetectionTimeoutError before anything is written.
        """
        if deadline is None:
            deadline = time.monotonic() + self.config.run_timeout_seconds

        since = (as_of or datetime.utcnow()) - timedelta(days=self.config.lookback_days)

        logger.info(f"[SUBSCRIPTION_DETECTOR] Starting detection for user {user_id}")

        candidates = self.prefilter_candidates(user_id, since)
        if not candidates:
            logger.info(f"[SUBSCRIPTION_DETECTOR] No recurring candidates for user {user_id}")
            return []

        self._check_deadline(deadline, user_id)
        rows = self.transactions.find_by_merchants(user_id, candidates, since)
        groups = self.group_by_merchant(rows)

        logger.info(
            f"[SUBSCRIPTION_DETECTOR] Analyzing {len(rows)} transactions "
            f"in {len(groups)} merchant groups"
        )

        analyzed = self.analyze_groups(groups, deadline=deadline, user_id=user_id)
        results = [r for r in analyzed if r is not None and r.is_subscription]

        for result in results:
            self.transactions.mark_detection(
                result.transaction_ids,
                is_subscription=result.is_subscription,
                confidence=result.confidence,
            )
        if results:
            self.transactions.commit()

        logger.info(
            f"[SUBSCRIPTION_DETECTOR] Found {len(results)} subscriptions for user {user_id}"
        )
        for r in results:
            logger.info(
                f"  - {r.merchant_name}: {r.frequency.value}, {r.average_amount} "
                f"{r.currency or ''}, {r.transaction_count} txns, confidence {r.confidence:.2f}"
            )

        return results

    def prefilter_candidates(self, user_id: str, since: datetime) -> List[str]:
        """
        Return raw merchant names worth loading in full.

        Aggregates are folded by normalized name first, so a merchant whose
        raw name drifts ("NETFLIX *1234", "NETFLIX *5678") is judged as one.
        """
        aggregates = self.transactions.aggregate_merchants(user_id, since)

        folded: Dict[str, List[MerchantAggregate]] = defaultdict(list)
        for aggregate in aggregates:
            folded[normalize_merchant_name(aggregate.merchant_name)].append(aggregate)

        min_span = self.config.prefilter_min_span()
        retained: List[str] = []
        for key, members in folded.items():
            count = sum(m.count for m in members)
            if count < self.config.min_transactions:
                continue
            span = max(m.last_date for m in members) - min(m.first_date for m in members)
            if span < min_span:
                continue
            retained.extend(m.merchant_name for m in members)

        logger.debug(
            f"[SUBSCRIPTION_DETECTOR] Prefilter kept {len(retained)} of "
            f"{len(aggregates)} merchants for user {user_id}"
        )
        return retained

    def group_by_merchant(self, transactions: Sequence[Transaction]) -> List[TransactionGroup]:
        """Group transactions by normalized merchant name, dropping small groups."""
        groups: Dict[str, List[Transaction]] = defaultdict(list)
        for txn in transactions:
            key = normalize_merchant_name(txn.merchant_name or txn.description)
            if key:
                groups[key].append(txn)

        return [
            TransactionGroup(merchant_name=key, transactions=members)
            for key, members in groups.items()
            if len(members) >= self.config.min_transactions
        ]

    def analyze_groups(
        self,
        groups: Sequence[TransactionGroup],
        deadline: Optional[float] = None,
        user_id: Optional[str] = None,
    ) -> List[Optional[DetectionResult]]:
        """Run analyze_transaction_group over all groups with bounded parallelism."""
        if not groups:
            return []

        workers = min(self.config.analysis_max_workers, len(groups))
        if workers <= 1:
            results = []
            for group in groups:
                self._check_deadline(deadline, user_id)
                results.append(self.analyze_transaction_group(group))
            return results

        timeout = None
        if deadline is not None:
            timeout = max(0.0, deadline - time.monotonic())

        executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="subscription-analysis")
        try:
            return list(executor.map(self.analyze_transaction_group, groups, timeout=timeout))
        except FuturesTimeoutError as exc:
            raise DetectionTimeoutError(
                f"Subscription analysis exceeded its deadline for user {user_id}"
            ) from exc
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

    # ------------------------------------------------------------------
    # Single transaction path
    # ------------------------------------------------------------------

    def detect_single_transaction(
        self,
        transaction_id: Union[str, UUID],
    ) -> Optional[DetectionResult]:
        """
        Check whether one transaction belongs to a recurring series.

        Peers are the most recent transactions with the exact same raw
        merchant name, not the normalized key.
        """
        transaction = self.transactions.get_transaction(transaction_id)
        if transaction is None:
            raise TransactionNotFoundError(transaction_id)

        if not transaction.merchant_name:
            return None

        peers = self.transactions.find_peers(
            user_id=transaction.user_id,
            merchant_name=transaction.merchant_name,
            exclude_id=transaction.id,
            limit=self.config.single_transaction_peer_limit,
        )
        if len(peers) < self.config.min_transactions - 1:
            return None

        group = TransactionGroup(
            merchant_name=transaction.merchant_name,
            transactions=[transaction, *peers],
        )
        return self.analyze_transaction_group(group)

    # ------------------------------------------------------------------
    # Analysis (pure)
    # ------------------------------------------------------------------

    def analyze_transaction_group(self, group: TransactionGroup) -> Optional[DetectionResult]:
        """Classify one merchant group; None when no cadence is recognised."""
        if len(group.transactions) < self.config.min_transactions:
            return None

        ordered = sorted(group.transactions, key=lambda t: t.booked_at)
        intervals = [
            self.days_between(ordered[i - 1].booked_at, ordered[i].booked_at)
            for i in range(1, len(ordered))
        ]

        frequency_match = self.detect_frequency(intervals)
        if frequency_match is None:
            return None

        amounts = [Decimal(str(t.amount)) for t in ordered]
        amount_consistency = self.calculate_amount_consistency([float(a) for a in amounts])
        confidence = self.calculate_confidence(
            frequency_match.confidence,
            amount_consistency,
            len(ordered),
        )

        latest = ordered[-1].booked_at
        average_amount = (sum(amounts) / len(amounts)).quantize(
            Decimal("0.01"), rounding=ROUND_HALF_UP
        )
        currencies = Counter(t.currency for t in ordered if t.currency)

        return DetectionResult(
            merchant_name=group.merchant_name,
            is_subscription=confidence >= self.config.min_confidence,
            confidence=confidence,
            frequency=frequency_match.frequency,
            average_amount=average_amount,
            next_billing_date=self.predict_next_billing(latest, frequency_match.frequency),
            last_transaction_date=latest,
            currency=currencies.most_common(1)[0][0] if currencies else None,
            transaction_count=len(ordered),
            transaction_ids=[t.id for t in ordered],
        )

    def detect_frequency(self, intervals: Sequence[int]) -> Optional[FrequencyMatch]:
        """
        Map day intervals to the first cadence that most of them fit.

        consistency = 1 - stddev/mean over the matching intervals. It is not
        clamped, so widely scattered matches can pull confidence below zero.
        """
        if not intervals:
            return None

        for window in self.config.cadence_windows:
            matches = [interval for interval in intervals if window.contains(interval)]
            match_ratio = len(matches) / len(intervals)
            if match_ratio < self.config.frequency_match_ratio:
                continue

            avg_interval = sum(matches) / len(matches)
            variance = sum((m - avg_interval) ** 2 for m in matches) / len(matches)
            consistency = 1 - math.sqrt(variance) / avg_interval

            return FrequencyMatch(
                frequency=window.frequency,
                confidence=match_ratio * consistency,
                match_ratio=match_ratio,
                average_interval=avg_interval,
            )

        return None

    def calculate_amount_consistency(self, amounts: Sequence[float]) -> float:
        """
        Score amount stability between 0 and 1.

        Small jitter from currency conversion or tax (within the tolerance band
        for most charges) scores a flat amount_consistent_score; otherwise the
        score falls off with the coefficient of variation.
        """
        if not amounts:
            return 0.0
        if len(amounts) == 1:
            return 1.0

        mean = sum(amounts) / len(amounts)
        if mean == 0:
            return 0.0

        tolerance = abs(mean) * self.config.amount_tolerance
        within = sum(1 for amount in amounts if abs(amount - mean) <= tolerance)
        if within / len(amounts) >= self.config.amount_tolerance_ratio:
            return self.config.amount_consistent_score

        variance = sum((amount - mean) ** 2 for amount in amounts) / len(amounts)
        cv = math.sqrt(variance) / abs(mean)
        return max(0.0, 1 - cv * 2)

    def calculate_confidence(
        self,
        frequency_confidence: float,
        amount_consistency: float,
        transaction_count: int,
    ) -> float:
        count_score = min(transaction_count / self.config.count_saturation, 1.0)
        return (
            frequency_confidence * self.config.frequency_weight
            + amount_consistency * self.config.amount_weight
            + count_score * self.config.count_weight
        )

    def predict_next_billing(
        self,
        last_date: datetime,
        frequency: Optional[Frequency],
    ) -> Optional[datetime]:
        if frequency is None:
            return None
        step = NEXT_BILLING_STEPS.get(Frequency(frequency))
        if step is None:
            return None
        return last_date + step

    @staticmethod
    def days_between(earlier: datetime, later: datetime) -> int:
        """Whole days between two timestamps, rounded half up."""
        return math.floor((later - earlier).total_seconds() / SECONDS_PER_DAY + 0.5)

    @staticmethod
    def _check_deadline(deadline: Optional[float], user_id: Optional[str]) -> None:
        if deadline is not None and time.monotonic() > deadline:
            raise DetectionTimeoutError(
                f"Subscription detection exceeded its deadline for user {user_id}"
            )
