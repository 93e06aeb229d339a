"""
SQLAlchemy models for the subscription detection engine.
Transactions are owned by the ingestion side; subscriptions are owned by the user.
"""
import uuid
from datetime import datetime
from sqlalchemy import (
    Column,
    String,
    Boolean,
    DateTime,
    Numeric,
    Text,
    ForeignKey,
    Index,
    JSON,
    Uuid,
)
from sqlalchemy.orm import relationship

from recurwatch.database import Base


SUBSCRIPTION_STATUSES = ("active", "cancelled", "paused")


class User(Base):
    """
    Minimal user model for foreign key relationships.
    Full user management lives outside this service.
    """
    __tablename__ = "users"

    id = Column(String, primary_key=True)
    name = Column(Text, nullable=True)
    email = Column(Text, unique=True, nullable=False)
    functional_currency = Column(String(3), nullable=True)  # Default currency for detected subscriptions
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    transactions = relationship("Transaction", back_populates="user", cascade="all, delete-orphan")
    subscriptions = relationship("Subscription", back_populates="user", cascade="all, delete-orphan")


class Transaction(Base):
    """
    Bank transaction as delivered by the aggregator.
    Positive amounts are charges, negative amounts are refunds/credits.
    Detection writes back is_subscription and confidence.
    """
    __tablename__ = "transactions"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    merchant_name = Column(String(255), nullable=True)
    description = Column(Text, nullable=False, default="")
    amount = Column(Numeric(15, 2), nullable=False)
    currency = Column(String(3), default="USD")
    booked_at = Column(DateTime, nullable=False, index=True)
    pending = Column(Boolean, default=False, nullable=False)
    is_subscription = Column(Boolean, default=False, nullable=False)  # Written by detection
    confidence = Column(Numeric(5, 4), nullable=True)  # Written by detection, 0-1
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    user = relationship("User", back_populates="transactions")

    # Indexes and constraints
    __table_args__ = (
        Index("idx_transactions_user_booked_at", "user_id", "booked_at"),
        Index("idx_transactions_user_merchant", "user_id", "merchant_name"),
    )


class Subscription(Base):
    """
    Recurring subscription owned by a user.
    Created or reactivated by the reconciler, mutated by billing/cancellation flows elsewhere.
    """
    __tablename__ = "subscriptions"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    category = Column(String(100), nullable=True)
    ai_category = Column(String(100), nullable=True)  # Assigned by the categorization collaborator
    ai_category_confidence = Column(Numeric(5, 4), nullable=True)
    category_override = Column(String(100), nullable=True)  # Manual user choice, wins over AI
    amount = Column(Numeric(15, 2), nullable=False)
    currency = Column(String(3), default="USD")
    frequency = Column(String(20), nullable=False)  # weekly, biweekly, monthly, quarterly, yearly
    next_billing = Column(DateTime, nullable=True)
    last_billing = Column(DateTime, nullable=True)
    status = Column(String(20), default="active", nullable=False)  # active, cancelled, paused
    is_active = Column(Boolean, default=True, nullable=False)
    detection_confidence = Column(Numeric(5, 4), nullable=True)
    detected_at = Column(DateTime, nullable=True)
    provider = Column(JSON, nullable=True)  # {"name": ..., "detected": true}
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    user = relationship("User", back_populates="subscriptions")

    # Indexes and constraints
    __table_args__ = (
        Index("idx_subscriptions_user", "user_id"),
        Index("idx_subscriptions_user_name", "user_id", "name"),
        Index("idx_subscriptions_active", "is_active"),
    )
