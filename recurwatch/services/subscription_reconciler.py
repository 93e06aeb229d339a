"""
Reconciles detection results with persisted subscriptions.

Each detected merchant is matched against the user's existing subscriptions
(exact name, then case-insensitive, then leading-token + normalized name).
Matches are updated and reactivated, misses are created. A deduplication pass
afterwards merges records that normalize to the same merchant.
"""
import logging
from dataclasses import asdict, dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional

from recurwatch.models import Subscription
from recurwatch.services.categorization_service import (
    CategorizationFailed,
    CategorizationOutcome,
    SubscriptionCategorizer,
    categorize_safely,
)
from recurwatch.services.detection_config import DetectionConfig, Frequency
from recurwatch.services.merchant_normalizer import leading_token, normalize_merchant_name
from recurwatch.services.stores import SubscriptionStore
from recurwatch.services.subscription_detector import DetectionResult

logger = logging.getLogger(__name__)


class MatchStrategy(str, Enum):
    """How an existing subscription was matched, strongest first."""
    EXACT = "exact"
    CASE_INSENSITIVE = "case_insensitive"
    FUZZY_TOKEN = "fuzzy_token"


@dataclass(frozen=True)
class SubscriptionMatch:
    subscription: Subscription
    strategy: MatchStrategy


@dataclass
class ReconciliationSummary:
    created: int = 0
    updated: int = 0
    skipped: int = 0
    errors: int = 0
    deduplicated: int = 0

    def as_dict(self) -> Dict[str, int]:
        return asdict(self)


def _confidence_decimal(value: float) -> Decimal:
    return Decimal(str(round(min(1.0, max(0.0, value)), 4)))


class SubscriptionReconciler:
    """
    Creates, updates, reactivates and deduplicates subscriptions from detection results.

    Writes are sequential; every merchant is its own unit of work so one
    failing merchant never blocks the rest of the batch.
    """

    def __init__(
        self,
        store: SubscriptionStore,
        categorizer: Optional[SubscriptionCategorizer] = None,
        config: Optional[DetectionConfig] = None,
    ):
        self.store = store
        self.categorizer = categorizer
        self.config = config or DetectionConfig()

    def reconcile(
        self,
        user_id: str,
        results: Iterable[DetectionResult],
        heartbeat: Optional[Callable[[], None]] = None,
    ) -> ReconciliationSummary:
        """
        Apply detection results for one user and return aggregate counters.

        heartbeat is called before each merchant (the run lock renews itself
        there); anything it raises aborts the run.
        """
        results = list(results)
        summary = ReconciliationSummary()

        logger.info(
            f"[SUBSCRIPTION_RECONCILER] Reconciling {len(results)} detection results for user {user_id}"
        )

        default_currency = self.store.get_default_currency(user_id) or self.config.default_currency

        for result in results:
            if heartbeat is not None:
                heartbeat()

            if not result.is_subscription or not result.frequency:
                summary.skipped += 1
                continue

            try:
                match = self.find_existing(user_id, result.merchant_name)
                if match is None:
                    subscription = self._create(user_id, result, default_currency)
                    self.store.commit()
                    summary.created += 1
                    logger.info(
                        f"[SUBSCRIPTION_RECONCILER] Created subscription: {result.merchant_name} "
                        f"({Frequency(result.frequency).value}, confidence: {result.confidence:.2f})"
                    )
                    self._categorize(subscription, user_id)
                else:
                    subscription = self._update(match.subscription, result)
                    self.store.commit()
                    summary.updated += 1
                    logger.info(
                        f"[SUBSCRIPTION_RECONCILER] Updated subscription: {subscription.name} "
                        f"via {match.strategy.value} match ({Frequency(result.frequency).value})"
                    )
                    if not subscription.ai_category and not subscription.category_override:
                        self._categorize(subscription, user_id)
            except Exception:  # noqa: BLE001
                summary.errors += 1
                self.store.rollback()
                logger.exception(
                    f"[SUBSCRIPTION_RECONCILER] Failed to create/update subscription for "
                    f"{result.merchant_name}"
                )

        try:
            summary.deduplicated = self.deduplicate(user_id)
        except Exception:  # noqa: BLE001
            self.store.rollback()
            logger.exception(f"[SUBSCRIPTION_RECONCILER] Deduplication failed for user {user_id}")

        logger.info(
            f"[SUBSCRIPTION_RECONCILER] Subscription processing complete: {summary.created} created, "
            f"{summary.updated} updated, {summary.skipped} skipped, {summary.errors} errors, "
            f"{summary.deduplicated} duplicates removed"
        )
        return summary

    def find_existing(self, user_id: str, merchant_name: str) -> Optional[SubscriptionMatch]:
        """Look up a subscription for a detected merchant, ignoring status."""
        exact = self.store.find_by_exact_name(user_id, merchant_name)
        if exact is not None:
            return SubscriptionMatch(exact, MatchStrategy.EXACT)

        insensitive = self.store.find_by_name_case_insensitive(user_id, merchant_name)
        if insensitive is not None:
            return SubscriptionMatch(insensitive, MatchStrategy.CASE_INSENSITIVE)

        token = leading_token(merchant_name)
        if token:
            target_key = normalize_merchant_name(merchant_name)
            for candidate in self.store.find_by_name_prefix(user_id, token):
                if normalize_merchant_name(candidate.name) == target_key:
                    return SubscriptionMatch(candidate, MatchStrategy.FUZZY_TOKEN)

        return None

    def deduplicate(self, user_id: str) -> int:
        """
        Merge active subscriptions that normalize to the same merchant.

        The survivor is the record with an AI category, then the highest
        detection confidence, then the most recent update. Returns the number
        of deleted records.
        """
        by_key: Dict[str, List[Subscription]] = {}
        for subscription in self.store.list_active(user_id):
            by_key.setdefault(normalize_merchant_name(subscription.name), []).append(subscription)

        removed = 0
        for key, subscriptions in by_key.items():
            if len(subscriptions) < 2:
                continue

            winner = max(subscriptions, key=self._dedup_rank)
            for loser in subscriptions:
                if loser is winner:
                    continue
                logger.info(
                    f"[SUBSCRIPTION_RECONCILER] Removing duplicate '{loser.name}' "
                    f"in favour of '{winner.name}' (key '{key}')"
                )
                self.store.delete(loser)
                removed += 1

        if removed:
            self.store.commit()
        return removed

    @staticmethod
    def _dedup_rank(subscription: Subscription):
        return (
            1 if subscription.ai_category else 0,
            Decimal(str(subscription.detection_confidence or 0)),
            subscription.updated_at or datetime.min,
        )

    def _create(self, user_id: str, result: DetectionResult, currency: str) -> Subscription:
        return self.store.create(
            user_id,
            name=result.merchant_name,
            description=f"Recurring payment to {result.merchant_name}",
            category="general",
            amount=result.average_amount,
            currency=currency,
            frequency=Frequency(result.frequency).value,
            next_billing=result.next_billing_date,
            last_billing=result.last_transaction_date,
            status="active",
            is_active=True,
            detection_confidence=_confidence_decimal(result.confidence),
            detected_at=datetime.utcnow(),
            provider={"name": result.merchant_name, "detected": True},
        )

    def _update(self, subscription: Subscription, result: DetectionResult) -> Subscription:
        fields = dict(
            amount=result.average_amount,
            next_billing=result.next_billing_date,
            detection_confidence=_confidence_decimal(result.confidence),
            status="active",  # Charges reappearing means the user resubscribed
            is_active=True,
        )
        if result.last_transaction_date is not None:
            fields["last_billing"] = result.last_transaction_date
        return self.store.update(subscription, **fields)

    def _categorize(self, subscription: Subscription, user_id: str) -> Optional[CategorizationOutcome]:
        if self.categorizer is None:
            return None
        outcome = categorize_safely(self.categorizer, subscription.id, user_id)
        if isinstance(outcome, CategorizationFailed):
            logger.warning(
                f"[SUBSCRIPTION_RECONCILER] Categorization failed for '{subscription.name}': "
                f"{outcome.error}"
            )
        return outcome
