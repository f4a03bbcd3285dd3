"""
Billing models and database tables.

SQLAlchemy tables for subscriptions and payment transactions, plus the
pydantic models the ledger and reconciler hand back to callers.
"""

from datetime import datetime
from enum import Enum
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import CheckConstraint, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from invow.db import Base, TimestampMixin, UTCDateTime


class SubscriptionTier(str, Enum):
    """Subscription tiers."""

    FREE = "free"
    PREMIUM = "premium"


class PaymentStatus(str, Enum):
    """Payment transaction states. ``completed`` and ``failed`` are terminal."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not PaymentStatus.PENDING


# ==========================================
# Tables
# ==========================================


class UserSubscriptionTable(TimestampMixin, Base):
    """SQLAlchemy table for per-user subscriptions."""

    __tablename__ = "user_subscriptions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid4()))
    user_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)

    tier: Mapped[str] = mapped_column(
        String(20), nullable=False, default=SubscriptionTier.FREE.value
    )
    invoice_limit: Mapped[int] = mapped_column(Integer, nullable=False)
    current_month_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    subscription_start_date: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    subscription_end_date: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    month_year: Mapped[str] = mapped_column(String(10), nullable=False)

    __table_args__ = (
        CheckConstraint("invoice_limit >= 0", name="ck_user_subscriptions_limit"),
        CheckConstraint("current_month_count >= 0", name="ck_user_subscriptions_count"),
        Index("ix_user_subscriptions_tier", "tier"),
    )


class PaymentTransactionTable(TimestampMixin, Base):
    """SQLAlchemy table for checkout payments."""

    __tablename__ = "payment_transactions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid4()))
    user_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)

    # Set once, after the gateway created the invoice
    gateway_invoice_id: Mapped[str | None] = mapped_column(
        String(255), nullable=True, unique=True
    )

    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    tier: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=PaymentStatus.PENDING.value
    )
    payment_method: Mapped[str | None] = mapped_column(String(100), nullable=True)

    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    verified_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    __table_args__ = (
        CheckConstraint("amount >= 0", name="ck_payment_transactions_amount"),
        Index("ix_payment_transactions_status", "status"),
    )


# ==========================================
# Domain models
# ==========================================


class Subscription(BaseModel):
    """A user's subscription record."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    tier: SubscriptionTier
    invoice_limit: int = Field(ge=0)
    current_month_count: int = Field(ge=0)
    subscription_start_date: datetime
    subscription_end_date: datetime | None = None
    month_year: str
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def remaining_invoices(self) -> int:
        return max(0, self.invoice_limit - self.current_month_count)


class PaymentTransaction(BaseModel):
    """A checkout payment record."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    gateway_invoice_id: str | None = None
    amount: int
    tier: SubscriptionTier
    status: PaymentStatus
    payment_method: str | None = None
    created_at: datetime | None = None
    completed_at: datetime | None = None
    verified_at: datetime | None = None
    updated_at: datetime | None = None


class SubscriptionSnapshot(BaseModel):
    """Subscription state returned after a reconciliation."""

    user_id: str
    tier: SubscriptionTier
    expires_at: datetime | None = Field(None, description="Subscription end date")
    invoice_limit: int
    current_month_count: int

    @classmethod
    def from_subscription(cls, sub: Subscription) -> "SubscriptionSnapshot":
        return cls(
            user_id=sub.user_id,
            tier=sub.tier,
            expires_at=sub.subscription_end_date,
            invoice_limit=sub.invoice_limit,
            current_month_count=sub.current_month_count,
        )


class SubscriptionStatusView(BaseModel):
    """Quota overview for a user."""

    user_id: str
    tier: SubscriptionTier
    invoice_limit: int
    current_month_count: int
    remaining_invoices: int
    month_year: str
    reset_date: datetime = Field(description="When the quota next resets or the paid period ends")
    expires_at: datetime | None = None


class Customer(BaseModel):
    """Checkout customer details forwarded to the gateway."""

    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1)
    email: str = Field(min_length=3)
    mobile: str = Field("", description="Phone number, optional for some gateways")


class CheckoutSession(BaseModel):
    """Result of starting a checkout."""

    payment_id: str
    gateway_invoice_id: str
    payment_url: str
    amount: int
    currency: str
    tier: SubscriptionTier


__all__ = [
    "SubscriptionTier",
    "PaymentStatus",
    "UserSubscriptionTable",
    "PaymentTransactionTable",
    "Subscription",
    "PaymentTransaction",
    "SubscriptionSnapshot",
    "SubscriptionStatusView",
    "Customer",
    "CheckoutSession",
]
