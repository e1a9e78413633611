"""
Durable schema for subscriptions, balances, usage counters and the token ledger.

Enum-valued columns are stored as their string values so dialect upserts can
bind them directly.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def generate_uuid() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TimestampMixin:
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)


class Subscription(Base, TimestampMixin):
    """
    One row per user, written by the payment-processor sync.

    Rows are never deleted; a lapsed subscription is transitioned to
    tier=free / status=cancelled.
    """

    __tablename__ = "subscriptions"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    user_id = Column(String(255), nullable=False, unique=True)
    tier = Column(String(20), nullable=False, default="free")
    status = Column(String(20), nullable=False, default="active")
    billing_period = Column(String(20), nullable=True)

    current_period_start = Column(DateTime(timezone=True), nullable=True)
    current_period_end = Column(DateTime(timezone=True), nullable=True)
    trial_start = Column(DateTime(timezone=True), nullable=True)
    trial_end = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)

    processor_customer_id = Column(String(255), nullable=True)
    processor_subscription_id = Column(String(255), nullable=True)

    def __repr__(self) -> str:
        return f"<Subscription(user_id={self.user_id}, tier={self.tier}, status={self.status})>"


class TokenBalance(Base, TimestampMixin):
    """
    Per-user token balances plus the monthly "used" counters.

    This row is the per-user lock target for every write path.
    """

    __tablename__ = "token_balances"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    user_id = Column(String(255), nullable=False, unique=True)

    generation_tokens = Column(Integer, nullable=False, default=0)
    export_tokens = Column(Integer, nullable=False, default=0)
    streak_shields = Column(Integer, nullable=False, default=0)

    generation_tokens_monthly_used = Column(Integer, nullable=False, default=0)
    exports_monthly_used = Column(Integer, nullable=False, default=0)
    streak_shields_monthly_used = Column(Integer, nullable=False, default=0)
    monthly_reset_date = Column(Date, nullable=True)

    __table_args__ = (
        CheckConstraint("generation_tokens >= 0", name="ck_token_balances_generation_nonneg"),
        CheckConstraint("export_tokens >= 0", name="ck_token_balances_export_nonneg"),
        CheckConstraint("streak_shields >= 0", name="ck_token_balances_shields_nonneg"),
    )

    def __repr__(self) -> str:
        return (
            f"<TokenBalance(user_id={self.user_id}, generation={self.generation_tokens}, "
            f"export={self.export_tokens}, shields={self.streak_shields})>"
        )


class FeatureUsage(Base):
    """Daily usage counter per (user, feature). Only ever incremented."""

    __tablename__ = "feature_usage"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    user_id = Column(String(255), nullable=False)
    feature_type = Column(String(50), nullable=False)
    usage_date = Column(Date, nullable=False)
    usage_count = Column(Integer, nullable=False, default=0)

    __table_args__ = (
        UniqueConstraint("user_id", "feature_type", "usage_date", name="uq_feature_usage_user_feature_day"),
        Index("ix_feature_usage_user_date", "user_id", "usage_date"),
    )


class TokenTransaction(Base):
    """
    Append-only audit row for every balance mutation.

    (user_id, token_type, source_reference) is unique so a replayed credit
    cannot land twice. Rows without a reference (usage debits) are unconstrained.
    """

    __tablename__ = "token_transactions"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    user_id = Column(String(255), nullable=False)
    token_type = Column(String(50), nullable=False)
    amount = Column(Integer, nullable=False)
    balance_after = Column(Integer, nullable=False)
    source = Column(String(20), nullable=False)
    source_reference = Column(String(255), nullable=True)
    description = Column(String(500), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint(
            "user_id", "token_type", "source_reference", name="uq_token_transactions_reference"
        ),
        Index("ix_token_transactions_user_created", "user_id", "created_at"),
    )
