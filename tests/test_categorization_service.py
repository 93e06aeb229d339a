"""
Tests for the OpenAI-backed subscription categorizer and categorize_safely.
"""
import os
import sys
import uuid
from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import MagicMock

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from recurwatch.errors import SubscriptionNotFoundError  # noqa: E402
from recurwatch.models import Subscription  # noqa: E402
from recurwatch.services.categorization_service import (  # noqa: E402
    CategorizationFailed,
    CategorizationOk,
    OpenAISubscriptionCategorizer,
    SubscriptionCategorizer,
    categorize_safely,
)
from tests.sqlite_session import add_subscription, add_user, make_session  # noqa: E402


def _completion(content: str):
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])


def _client(*contents):
    client = MagicMock()
    client.chat.completions.create.side_effect = [_completion(c) for c in contents]
    return client


def test_llm_category_is_persisted() -> None:
    db = make_session()
    try:
        add_user(db)
        subscription = add_subscription(db, "user-1", "netflix")
        client = _client('{"category": "streaming", "confidence": 0.87}')
        categorizer = OpenAISubscriptionCategorizer(db, client=client)

        answer = categorizer.categorize_subscription(str(subscription.id), "user-1")

        assert answer == {"category": "Streaming", "confidence": 0.87}
        stored = db.query(Subscription).one()
        assert stored.ai_category == "Streaming"
        assert stored.category == "Streaming"
        assert stored.ai_category_confidence == Decimal("0.8700")
        kwargs = client.chat.completions.create.call_args.kwargs
        assert kwargs["response_format"] == {"type": "json_object"}
        assert "netflix" in kwargs["messages"][1]["content"]
    finally:
        db.close()
    print("✓ llm category persisted")


def test_override_and_existing_category_skip_llm() -> None:
    db = make_session()
    try:
        add_user(db)
        overridden = add_subscription(db, "user-1", "gym")
        overridden.category_override = "Fitness"
        categorized = add_subscription(db, "user-1", "spotify", ai_category="Music")
        categorized.ai_category_confidence = Decimal("0.9")
        db.commit()

        client = MagicMock()
        categorizer = OpenAISubscriptionCategorizer(db, client=client)

        assert categorizer.categorize_subscription(overridden.id, "user-1") == {
            "category": "Fitness",
            "confidence": 1.0,
        }
        assert categorizer.categorize_subscription(categorized.id, "user-1") == {
            "category": "Music",
            "confidence": 0.9,
        }
        client.chat.completions.create.assert_not_called()
    finally:
        db.close()
    print("✓ override and cached category")


def test_unknown_category_and_bad_confidence_fall_back() -> None:
    assert OpenAISubscriptionCategorizer._parse_answer(
        {"category": "Pet Food", "confidence": "high"}
    ) == ("Other", 0.5)
    assert OpenAISubscriptionCategorizer._parse_answer(
        {"category": "GAMING", "confidence": 3}
    ) == ("Gaming", 1.0)
    print("✓ answer parsing")


def test_retries_then_succeeds() -> None:
    db = make_session()
    try:
        add_user(db)
        subscription = add_subscription(db, "user-1", "xbox game pass")
        client = _client("not json", '{"category": "Gaming", "confidence": 0.7}')
        categorizer = OpenAISubscriptionCategorizer(db, client=client)
        categorizer.LLM_RETRY_DELAY = 0

        answer = categorizer.categorize_subscription(subscription.id, "user-1")

        assert answer["category"] == "Gaming"
        assert client.chat.completions.create.call_count == 2
    finally:
        db.close()
    print("✓ retry")


def test_unknown_subscription_raises() -> None:
    db = make_session()
    try:
        add_user(db)
        categorizer = OpenAISubscriptionCategorizer(db, client=MagicMock())
        missing = uuid.uuid4()

        raised = None
        try:
            categorizer.categorize_subscription(missing, "user-1")
        except SubscriptionNotFoundError as e:
            raised = e
        assert raised is not None
        assert raised.subscription_id == missing

        other_user = add_subscription(db, "user-1", "netflix")
        try:
            categorizer.categorize_subscription(other_user.id, "someone-else")
            assert False, "expected SubscriptionNotFoundError"
        except SubscriptionNotFoundError:
            pass
    finally:
        db.close()
    print("✓ unknown subscription")


def test_categorize_safely_wraps_failures() -> None:
    class _Broken(SubscriptionCategorizer):
        def categorize_subscription(self, subscription_id, user_id):
            raise RuntimeError("model unavailable")

    class _Working(SubscriptionCategorizer):
        def categorize_subscription(self, subscription_id, user_id):
            return {"category": "Software", "confidence": 0.6}

    subscription_id = uuid.uuid4()

    failed = categorize_safely(_Broken(), subscription_id, "user-1")
    assert isinstance(failed, CategorizationFailed)
    assert failed.error == "RuntimeError: model unavailable"

    ok = categorize_safely(_Working(), subscription_id, "user-1")
    assert ok == CategorizationOk(subscription_id, "Software", 0.6)

    assert isinstance(categorize_safely(None, subscription_id, "user-1"), CategorizationFailed)
    print("✓ categorize_safely")


if __name__ == "__main__":
    test_llm_category_is_persisted()
    test_override_and_existing_category_skip_llm()
    test_unknown_category_and_bad_confidence_fall_back()
    test_retries_then_succeeds()
    test_unknown_subscription_raises()
    test_categorize_safely_wraps_failures()
    print("All categorization service tests passed.")
