"""
Tunables for subscription detection.

All thresholds live on an immutable DetectionConfig that is handed to the
detector and reconciler at construction. DetectionConfig.from_env() reads
overrides from SUBSCRIPTION_* environment variables.
"""
import os
from dataclasses import dataclass, field, replace
from datetime import timedelta
from enum import Enum
from typing import Optional, Tuple


class Frequency(str, Enum):
    """Billing cadences the detector can recognise."""
    WEEKLY = "weekly"
    BIWEEKLY = "biweekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    YEARLY = "yearly"


@dataclass(frozen=True)
class CadenceWindow:
    """Inclusive day-count tolerance for one cadence."""
    frequency: Frequency
    min_days: int
    max_days: int

    def contains(self, interval_days: int) -> bool:
        return self.min_days <= interval_days <= self.max_days


# Hard Celery time limit for one user run; the per-user lock TTL defaults to it
DETECTION_TASK_TIME_LIMIT_SECONDS = int(os.getenv("SUBSCRIPTION_TASK_TIME_LIMIT_SECONDS", "900"))


# Checked in this order; the first cadence reaching the match ratio wins.
DEFAULT_CADENCE_WINDOWS: Tuple[CadenceWindow, ...] = (
    CadenceWindow(Frequency.WEEKLY, 5, 10),
    CadenceWindow(Frequency.BIWEEKLY, 11, 17),
    CadenceWindow(Frequency.MONTHLY, 24, 38),  # Month length and billing-date drift
    CadenceWindow(Frequency.QUARTERLY, 75, 105),
    CadenceWindow(Frequency.YEARLY, 340, 390),
)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_optional_int(name: str) -> Optional[int]:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return None
    try:
        return int(raw)
    except ValueError:
        return None


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class DetectionConfig:
    # Group admission
    min_transactions: int = 2
    min_confidence: float = 0.5

    # Frequency analysis
    cadence_windows: Tuple[CadenceWindow, ...] = field(default=DEFAULT_CADENCE_WINDOWS)
    frequency_match_ratio: float = 0.6

    # Amount consistency
    amount_tolerance: float = 0.05  # +/-5% of the mean
    amount_tolerance_ratio: float = 0.8
    amount_consistent_score: float = 0.95

    # Confidence weights
    frequency_weight: float = 0.5
    amount_weight: float = 0.3
    count_weight: float = 0.2
    count_saturation: int = 12

    # Candidate selection
    lookback_days: int = 365
    prefilter_min_span_days: Optional[int] = None  # None derives the span from the cadence windows
    single_transaction_peer_limit: int = 12

    # Run limits
    analysis_max_workers: int = 4
    run_timeout_seconds: float = 300.0

    default_currency: str = "USD"

    @classmethod
    def from_env(cls) -> "DetectionConfig":
        """Build a config from SUBSCRIPTION_* environment variables."""
        defaults = cls()
        return replace(
            defaults,
            min_transactions=_env_int("SUBSCRIPTION_MIN_TRANSACTIONS", defaults.min_transactions),
            min_confidence=_env_float("SUBSCRIPTION_MIN_CONFIDENCE", defaults.min_confidence),
            lookback_days=_env_int("SUBSCRIPTION_LOOKBACK_DAYS", defaults.lookback_days),
            prefilter_min_span_days=_env_optional_int("SUBSCRIPTION_PREFILTER_MIN_SPAN_DAYS"),
            analysis_max_workers=max(
                1, _env_int("SUBSCRIPTION_ANALYSIS_MAX_WORKERS", defaults.analysis_max_workers)
            ),
            run_timeout_seconds=_env_float(
                "SUBSCRIPTION_RUN_TIMEOUT_SECONDS", defaults.run_timeout_seconds
            ),
            default_currency=(
                os.getenv("SUBSCRIPTION_DEFAULT_CURRENCY", defaults.default_currency).strip().upper()
                or defaults.default_currency
            ),
        )

    def prefilter_min_span(self) -> timedelta:
        """
        Shortest date span a merchant needs to survive the prefilter.

        Without an explicit prefilter_min_span_days this is the smallest span
        any classifiable group can have: the fewest intervals that reach
        frequency_match_ratio, each at least the shortest window's min_days
        (less half a day, since intervals are rounded to whole days).
        """
        if self.prefilter_min_span_days is not None:
            return timedelta(days=self.prefilter_min_span_days)
        if not self.cadence_windows:
            return timedelta(0)

        intervals = max(1, self.min_transactions - 1)
        required = next(
            (j for j in range(intervals + 1) if j / intervals >= self.frequency_match_ratio),
            intervals,
        )
        shortest = min(window.min_days for window in self.cadence_windows)
        return max(timedelta(0), timedelta(days=required * shortest) - timedelta(hours=12 * required))
