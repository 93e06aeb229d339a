"""
Errors surfaced by the detection engine to its callers.
"""


class TransactionNotFoundError(LookupError):
    """A referenced transaction no longer exists."""

    def __init__(self, transaction_id):
        super().__init__(f"Transaction not found: {transaction_id}")
        self.transaction_id = transaction_id


class SubscriptionNotFoundError(LookupError):
    """A referenced subscription no longer exists or belongs to another user."""

    def __init__(self, subscription_id):
        super().__init__(f"Subscription not found: {subscription_id}")
        self.subscription_id = subscription_id


class DetectionTimeoutError(TimeoutError):
    """A detection run exceeded its deadline."""


class DetectionAlreadyRunningError(RuntimeError):
    """Another detection run holds the lock for this user."""

    def __init__(self, user_id: str):
        super().__init__(f"Subscription detection already running for user {user_id}")
        self.user_id = user_id
