"""
Categorization collaborator for detected subscriptions.

The detection engine never classifies anything itself: after creating or
updating a subscription it asks a SubscriptionCategorizer for a category and
records whether that worked. categorize_safely() turns any failure into a
CategorizationFailed value so callers log it without changing control flow.
"""
import json
import logging
import os
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Union
from uuid import UUID

from sqlalchemy.orm import Session

from recurwatch.errors import SubscriptionNotFoundError
from recurwatch.models import Subscription
from recurwatch.services.stores import SqlSubscriptionStore

logger = logging.getLogger(__name__)


SUBSCRIPTION_CATEGORIES = [
    "Streaming",
    "Music",
    "Software",
    "Cloud Storage",
    "News & Magazines",
    "Fitness",
    "Gaming",
    "Utilities",
    "Telecom",
    "Insurance",
    "Food & Delivery",
    "Education",
    "Other",
]


@dataclass(frozen=True)
class CategorizationOk:
    subscription_id: UUID
    category: str
    confidence: float


@dataclass(frozen=True)
class CategorizationFailed:
    subscription_id: UUID
    error: str


CategorizationOutcome = Union[CategorizationOk, CategorizationFailed]


class SubscriptionCategorizer(ABC):
    """Assigns a category to a persisted subscription."""

    @abstractmethod
    def categorize_subscription(self, subscription_id: Union[str, UUID], user_id: str) -> dict:
        """Return {"category": str, "confidence": float}; raise on failure."""


def categorize_safely(
    categorizer: Optional[SubscriptionCategorizer],
    subscription_id: UUID,
    user_id: str,
) -> CategorizationOutcome:
    """Run the categorizer and fold any exception into CategorizationFailed."""
    if categorizer is None:
        return CategorizationFailed(subscription_id, "no categorizer configured")
    try:
        result = categorizer.categorize_subscription(subscription_id, user_id)
        return CategorizationOk(
            subscription_id=subscription_id,
            category=result["category"],
            confidence=float(result.get("confidence", 0.0)),
        )
    except Exception as e:  # noqa: BLE001
        return CategorizationFailed(subscription_id, f"{type(e).__name__}: {e}")


class OpenAISubscriptionCategorizer(SubscriptionCategorizer):
    """
    Categorizes subscriptions with an OpenAI chat completion.

    A manual category_override always wins, and an existing ai_category is
    reused unless force_recategorize is set.

    Environment Variables:
    - OPENAI_API_KEY: OpenAI API key
    - CATEGORIZATION_LLM_MODEL: model to use (default: gpt-4o-mini)
    - CATEGORIZATION_LLM_MAX_RETRIES: attempts per call (default: 3)
    - CATEGORIZATION_LLM_RETRY_DELAY: base delay between attempts in seconds (default: 1.0)
    """

    LLM_MODEL = os.getenv("CATEGORIZATION_LLM_MODEL", "gpt-4o-mini")
    LLM_TEMPERATURE = float(os.getenv("CATEGORIZATION_LLM_TEMPERATURE", "0.1"))
    LLM_MAX_TOKENS = int(os.getenv("CATEGORIZATION_LLM_MAX_TOKENS", "60"))
    LLM_MAX_RETRIES = int(os.getenv("CATEGORIZATION_LLM_MAX_RETRIES", "3"))
    LLM_RETRY_DELAY = float(os.getenv("CATEGORIZATION_LLM_RETRY_DELAY", "1.0"))

    def __init__(self, db: Session, client=None, force_recategorize: bool = False):
        self.db = db
        self._openai_client = client
        self.force_recategorize = force_recategorize

    def _get_openai_client(self):
        """Get or create the OpenAI client (cached). None when no API key is set."""
        if self._openai_client is None:
            from openai import OpenAI
            api_key = os.getenv("OPENAI_API_KEY")
            if not api_key:
                logger.warning("OPENAI_API_KEY not set, subscription categorization unavailable")
                return None
            self._openai_client = OpenAI(api_key=api_key)
        return self._openai_client

    def categorize_subscription(self, subscription_id: Union[str, UUID], user_id: str) -> dict:
        subscription = SqlSubscriptionStore(self.db).get(subscription_id, user_id)
        if subscription is None:
            raise SubscriptionNotFoundError(subscription_id)

        if subscription.category_override:
            return {"category": subscription.category_override, "confidence": 1.0}

        if not self.force_recategorize and subscription.ai_category:
            return {
                "category": subscription.ai_category,
                "confidence": float(subscription.ai_category_confidence or 0),
            }

        category, confidence = self._ask_llm(subscription)

        try:
            subscription.ai_category = category
            subscription.ai_category_confidence = Decimal(str(round(confidence, 4)))
            subscription.category = category
            self.db.add(subscription)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info(
            f"[SUBSCRIPTION_CATEGORIZER] '{subscription.name}' -> {category} "
            f"(confidence {confidence:.2f})"
        )
        return {"category": category, "confidence": confidence}

    def _build_prompt(self, subscription: Subscription) -> str:
        category_list = "\n".join(f"- {name}" for name in SUBSCRIPTION_CATEGORIES)
        return f"""Categorize this recurring subscription.

Subscription details:
- Name: {subscription.name}
- Description: {subscription.description or 'N/A'}
- Amount: {subscription.amount} {subscription.currency or ''}
- Billing frequency: {subscription.frequency}

Available categories:
{category_list}

Respond with a JSON object: {{"category": "<exact category name>", "confidence": <0..1>}}"""

    def _ask_llm(self, subscription: Subscription):
        client = self._get_openai_client()
        if client is None:
            raise RuntimeError("OpenAI client unavailable")

        prompt = self._build_prompt(subscription)
        last_error: Optional[Exception] = None

        for attempt in range(self.LLM_MAX_RETRIES):
            try:
                response = client.chat.completions.create(
                    model=self.LLM_MODEL,
                    messages=[
                        {
                            "role": "system",
                            "content": "You categorize consumer subscriptions. Reply with JSON only."
                        },
                        {"role": "user", "content": prompt},
                    ],
                    temperature=self.LLM_TEMPERATURE,
                    max_tokens=self.LLM_MAX_TOKENS,
                    response_format={"type": "json_object"},
                )
                payload = json.loads(response.choices[0].message.content)
                return self._parse_answer(payload)
            except Exception as e:  # noqa: BLE001
                last_error = e
                logger.warning(
                    f"[SUBSCRIPTION_CATEGORIZER] Attempt {attempt + 1}/{self.LLM_MAX_RETRIES} "
                    f"failed: {type(e).__name__}: {e}"
                )
                if attempt < self.LLM_MAX_RETRIES - 1:
                    time.sleep(self.LLM_RETRY_DELAY * (attempt + 1))

        raise RuntimeError(
            f"Categorization failed after {self.LLM_MAX_RETRIES} attempts"
        ) from last_error

    @staticmethod
    def _parse_answer(payload: dict):
        suggested = str(payload.get("category", "")).strip()
        category = next(
            (name for name in SUBSCRIPTION_CATEGORIES if name.lower() == suggested.lower()),
            "Other",
        )
        try:
            confidence = float(payload.get("confidence", 0.5))
        except (TypeError, ValueError):
            confidence = 0.5
        return category, min(1.0, max(0.0, confidence))
