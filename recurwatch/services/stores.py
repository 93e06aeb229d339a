"""
Persistence ports used by the detection engine, plus their SQLAlchemy implementations.

The detector only reads transactions and writes back detection flags; the
reconciler owns subscription writes. Both ports expose commit/rollback so the
caller controls the unit of work.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Iterable, List, Optional, Sequence, Union
from uuid import UUID

from sqlalchemy import func
from sqlalchemy.orm import Session

from recurwatch.models import Subscription, Transaction, User


@dataclass(frozen=True)
class MerchantAggregate:
    """Per-merchant aggregate row used by the candidate prefilter."""
    merchant_name: str
    count: int
    average_amount: Decimal
    first_date: datetime
    last_date: datetime


def to_uuid(value: Union[str, UUID, None]) -> Optional[UUID]:
    """Safely parse a UUID-like value."""
    if value is None or value == "":
        return None
    if isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except (ValueError, TypeError):
        return None


class TransactionSource(ABC):
    """Read access to a user's transactions plus detection write-back."""

    @abstractmethod
    def aggregate_merchants(self, user_id: str, since: datetime) -> List[MerchantAggregate]:
        """Count/avg/min/max per raw merchant for settled charges since a date."""

    @abstractmethod
    def find_by_merchants(
        self,
        user_id: str,
        merchant_names: Sequence[str],
        since: datetime,
    ) -> List[Transaction]:
        """Full rows of settled charges for the given raw merchant names."""

    @abstractmethod
    def get_transaction(self, transaction_id: Union[str, UUID]) -> Optional[Transaction]:
        """Single row lookup by id."""

    @abstractmethod
    def find_peers(
        self,
        user_id: str,
        merchant_name: str,
        exclude_id: UUID,
        limit: int,
    ) -> List[Transaction]:
        """Most recent settled transactions with the exact raw merchant name."""

    @abstractmethod
    def mark_detection(
        self,
        transaction_ids: Iterable[UUID],
        is_subscription: bool,
        confidence: float,
    ) -> int:
        """Bulk update is_subscription/confidence; returns the number of rows touched."""

    @abstractmethod
    def commit(self) -> None:
        pass

    @abstractmethod
    def rollback(self) -> None:
        pass


class SubscriptionStore(ABC):
    """Read/write access to a user's subscriptions."""

    @abstractmethod
    def get(self, subscription_id: Union[str, UUID], user_id: str) -> Optional[Subscription]:
        pass

    @abstractmethod
    def create(self, user_id: str, **fields) -> Subscription:
        pass

    @abstractmethod
    def update(self, subscription: Subscription, **fields) -> Subscription:
        pass

    @abstractmethod
    def delete(self, subscription: Subscription) -> None:
        pass

    @abstractmethod
    def find_by_exact_name(self, user_id: str, name: str) -> Optional[Subscription]:
        pass

    @abstractmethod
    def find_by_name_case_insensitive(self, user_id: str, name: str) -> Optional[Subscription]:
        pass

    @abstractmethod
    def find_by_name_prefix(self, user_id: str, prefix: str) -> List[Subscription]:
        pass

    @abstractmethod
    def list_active(self, user_id: str) -> List[Subscription]:
        pass

    @abstractmethod
    def get_default_currency(self, user_id: str) -> Optional[str]:
        pass

    @abstractmethod
    def commit(self) -> None:
        pass

    @abstractmethod
    def rollback(self) -> None:
        pass


def _merchant_key():
    # Raw grouping key: merchant name, falling back to the free-text description when null or empty
    return func.coalesce(func.nullif(Transaction.merchant_name, ""), Transaction.description)


class _SqlUnitOfWork:
    def __init__(self, db: Session):
        self.db = db

    def commit(self) -> None:
        self.db.commit()

    def rollback(self) -> None:
        self.db.rollback()


class SqlTransactionSource(_SqlUnitOfWork, TransactionSource):
    """TransactionSource backed by the transactions table."""

    def _settled_charges(self, user_id: str, since: datetime):
        return self.db.query(Transaction).filter(
            Transaction.user_id == user_id,
            Transaction.booked_at >= since,
            Transaction.pending == False,  # noqa: E712
            Transaction.amount > 0,  # Charges only, refunds are negative
        )

    def aggregate_merchants(self, user_id: str, since: datetime) -> List[MerchantAggregate]:
        merchant_key = _merchant_key()
        rows = (
            self.db.query(
                merchant_key.label("merchant"),
                func.count(Transaction.id),
                func.avg(Transaction.amount),
                func.min(Transaction.booked_at),
                func.max(Transaction.booked_at),
            )
            .filter(
                Transaction.user_id == user_id,
                Transaction.booked_at >= since,
                Transaction.pending == False,  # noqa: E712
                Transaction.amount > 0,
            )
            .group_by(merchant_key)
            .all()
        )

        return [
            MerchantAggregate(
                merchant_name=merchant,
                count=int(count),
                average_amount=Decimal(str(avg_amount or 0)),
                first_date=first_date,
                last_date=last_date,
            )
            for merchant, count, avg_amount, first_date, last_date in rows
            if merchant
        ]

    def find_by_merchants(
        self,
        user_id: str,
        merchant_names: Sequence[str],
        since: datetime,
    ) -> List[Transaction]:
        if not merchant_names:
            return []
        return (
            self._settled_charges(user_id, since)
            .filter(_merchant_key().in_(list(merchant_names)))
            .order_by(Transaction.booked_at.asc())
            .all()
        )

    def get_transaction(self, transaction_id: Union[str, UUID]) -> Optional[Transaction]:
        transaction_uuid = to_uuid(transaction_id)
        if not transaction_uuid:
            return None
        return self.db.query(Transaction).filter(Transaction.id == transaction_uuid).first()

    def find_peers(
        self,
        user_id: str,
        merchant_name: str,
        exclude_id: UUID,
        limit: int,
    ) -> List[Transaction]:
        return (
            self.db.query(Transaction)
            .filter(
                Transaction.user_id == user_id,
                Transaction.merchant_name == merchant_name,
                Transaction.id != exclude_id,
                Transaction.pending == False,  # noqa: E712
            )
            .order_by(Transaction.booked_at.desc())
            .limit(limit)
            .all()
        )

    def mark_detection(
        self,
        transaction_ids: Iterable[UUID],
        is_subscription: bool,
        confidence: float,
    ) -> int:
        ids = [to_uuid(txn_id) for txn_id in transaction_ids]
        ids = [txn_id for txn_id in ids if txn_id]
        if not ids:
            return 0
        return (
            self.db.query(Transaction)
            .filter(Transaction.id.in_(ids))
            .update(
                {
                    Transaction.is_subscription: is_subscription,
                    Transaction.confidence: Decimal(str(round(confidence, 4))),
                },
                synchronize_session=False,
            )
        )


class SqlSubscriptionStore(_SqlUnitOfWork, SubscriptionStore):
    """SubscriptionStore backed by the subscriptions table."""

    def _for_user(self, user_id: str):
        return self.db.query(Subscription).filter(Subscription.user_id == user_id)

    def get(self, subscription_id: Union[str, UUID], user_id: str) -> Optional[Subscription]:
        subscription_uuid = to_uuid(subscription_id)
        if not subscription_uuid:
            return None
        return self._for_user(user_id).filter(Subscription.id == subscription_uuid).first()

    def create(self, user_id: str, **fields) -> Subscription:
        subscription = Subscription(user_id=user_id, **fields)
        self.db.add(subscription)
        self.db.flush()
        return subscription

    def update(self, subscription: Subscription, **fields) -> Subscription:
        for key, value in fields.items():
            setattr(subscription, key, value)
        subscription.updated_at = datetime.utcnow()
        self.db.add(subscription)
        self.db.flush()
        return subscription

    def delete(self, subscription: Subscription) -> None:
        self.db.delete(subscription)
        self.db.flush()

    def find_by_exact_name(self, user_id: str, name: str) -> Optional[Subscription]:
        return (
            self._for_user(user_id)
            .filter(Subscription.name == name)
            .order_by(Subscription.updated_at.desc())
            .first()
        )

    def find_by_name_case_insensitive(self, user_id: str, name: str) -> Optional[Subscription]:
        return (
            self._for_user(user_id)
            .filter(func.lower(Subscription.name) == name.lower())
            .order_by(Subscription.updated_at.desc())
            .first()
        )

    def find_by_name_prefix(self, user_id: str, prefix: str) -> List[Subscription]:
        if not prefix:
            return []
        escaped = prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        return (
            self._for_user(user_id)
            .filter(Subscription.name.ilike(f"{escaped}%", escape="\\"))
            .order_by(Subscription.updated_at.desc())
            .all()
        )

    def list_active(self, user_id: str) -> List[Subscription]:
        return (
            self._for_user(user_id)
            .filter(Subscription.is_active == True)  # noqa: E712
            .all()
        )

    def get_default_currency(self, user_id: str) -> Optional[str]:
        currency = (
            self.db.query(User.functional_currency)
            .filter(User.id == user_id)
            .scalar()
        )
        return currency or None
