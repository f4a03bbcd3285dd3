"""
Admin queries over subscriptions and payments.

Read-only listings and aggregate metrics for back-office tooling.
"""

from datetime import datetime, timedelta
from enum import Enum
from typing import Any

import structlog
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import and_, func, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql.elements import ColumnElement

from invow.billing.config import BillingConfig, get_billing_config
from invow.billing.exceptions import StorageError
from invow.billing.ledger import Clock, utc_now
from invow.billing.models import (
    PaymentStatus,
    PaymentTransaction,
    PaymentTransactionTable,
    SubscriptionTier,
    UserSubscriptionTable,
)

logger = structlog.get_logger(__name__)


class SubscriptionState(str, Enum):
    """Subscription status derived from the end date."""

    ACTIVE = "active"
    EXPIRING_SOON = "expiring_soon"
    EXPIRED = "expired"


def calculate_subscription_status(
    end_date: datetime | None, now: datetime, expiring_soon_days: int = 7
) -> SubscriptionState:
    """
    Classify a subscription by its end date.

    No end date means the subscription never expires (free tier).
    """
    if end_date is None:
        return SubscriptionState.ACTIVE
    if end_date <= now:
        return SubscriptionState.EXPIRED
    if end_date <= now + timedelta(days=expiring_soon_days):
        return SubscriptionState.EXPIRING_SOON
    return SubscriptionState.ACTIVE


def is_limit_exceeded(current_month_count: int, invoice_limit: int) -> bool:
    return current_month_count > invoice_limit


class SubscriptionFilters(BaseModel):
    """Filters for the subscription listing."""

    model_config = ConfigDict(str_strip_whitespace=True)

    tier: SubscriptionTier | None = Field(None, description="Only this tier")
    status: SubscriptionState | None = Field(None, description="Only this derived status")
    page: int = Field(1, ge=1, description="1-based page number")
    page_size: int = Field(10, ge=1, le=100, description="Items per page")


class SubscriptionListItem(BaseModel):
    id: str
    user_id: str
    tier: SubscriptionTier
    invoice_limit: int
    current_month_count: int
    start_date: datetime
    end_date: datetime | None = None
    status: SubscriptionState
    limit_exceeded: bool


class SubscriptionPage(BaseModel):
    subscriptions: list[SubscriptionListItem]
    total: int
    page: int
    page_size: int


class TransactionPage(BaseModel):
    transactions: list[PaymentTransaction]
    total: int
    page: int
    page_size: int


class SubscriptionMetrics(BaseModel):
    """Aggregate subscription and payment figures."""

    users_by_tier: dict[str, int]
    total_users: int
    active_paid: int
    expiring_soon: int
    expired_paid: int
    revenue: int
    currency: str
    completed_payments: int
    pending_payments: int
    failed_payments: int


class BillingAdminService:
    """Back-office queries for subscriptions and payment transactions."""

    def __init__(
        self,
        db: AsyncSession,
        config: BillingConfig | None = None,
        clock: Clock = utc_now,
    ):
        self.db = db
        self.config = config or get_billing_config()
        self.clock = clock

    def _status_clause(self, state: SubscriptionState, now: datetime) -> ColumnElement[bool]:
        end = UserSubscriptionTable.subscription_end_date
        soon = now + timedelta(days=self.config.expiring_soon_days)
        if state == SubscriptionState.EXPIRED:
            return end <= now
        if state == SubscriptionState.EXPIRING_SOON:
            return and_(end > now, end <= soon)
        return or_(end.is_(None), end > soon)

    async def list_subscriptions(
        self, filters: SubscriptionFilters | None = None
    ) -> SubscriptionPage:
        """
        List subscriptions, most recently started first.

        Args:
            filters: Tier, derived status and pagination

        Returns:
            One page of subscriptions plus the total matching count
        """
        filters = filters or SubscriptionFilters()  # type: ignore[call-arg]
        now = self.clock()

        criteria: list[ColumnElement[bool]] = []
        if filters.tier is not None:
            criteria.append(UserSubscriptionTable.tier == filters.tier.value)
        if filters.status is not None:
            criteria.append(self._status_clause(filters.status, now))

        try:
            total = await self.db.scalar(
                select(func.count()).select_from(UserSubscriptionTable).where(*criteria)
            )
            result = await self.db.execute(
                select(UserSubscriptionTable)
                .where(*criteria)
                .order_by(UserSubscriptionTable.subscription_start_date.desc())
                .offset((filters.page - 1) * filters.page_size)
                .limit(filters.page_size)
            )
            rows = result.scalars().all()
        except SQLAlchemyError as e:
            logger.error("Failed to list subscriptions", error=str(e))
            raise StorageError(
                "Failed to list subscriptions", operation="list_subscriptions"
            ) from e

        items = [
            SubscriptionListItem(
                id=row.id,
                user_id=row.user_id,
                tier=SubscriptionTier(row.tier),
                invoice_limit=row.invoice_limit,
                current_month_count=row.current_month_count,
                start_date=row.subscription_start_date,
                end_date=row.subscription_end_date,
                status=calculate_subscription_status(
                    row.subscription_end_date, now, self.config.expiring_soon_days
                ),
                limit_exceeded=is_limit_exceeded(row.current_month_count, row.invoice_limit),
            )
            for row in rows
        ]
        return SubscriptionPage(
            subscriptions=items, total=total or 0, page=filters.page, page_size=filters.page_size
        )

    async def list_transactions(
        self, status: PaymentStatus | None = None, page: int = 1, page_size: int = 20
    ) -> TransactionPage:
        """List payment transactions, newest first."""
        page = max(page, 1)
        criteria = [PaymentTransactionTable.status == status.value] if status else []

        try:
            total = await self.db.scalar(
                select(func.count()).select_from(PaymentTransactionTable).where(*criteria)
            )
            result = await self.db.execute(
                select(PaymentTransactionTable)
                .where(*criteria)
                .order_by(PaymentTransactionTable.created_at.desc())
                .offset((page - 1) * page_size)
                .limit(page_size)
            )
            rows = result.scalars().all()
        except SQLAlchemyError as e:
            logger.error("Failed to list transactions", error=str(e))
            raise StorageError("Failed to list transactions", operation="list_transactions") from e

        return TransactionPage(
            transactions=[PaymentTransaction.model_validate(row) for row in rows],
            total=total or 0,
            page=page,
            page_size=page_size,
        )

    async def get_subscription_metrics(self) -> SubscriptionMetrics:
        now = self.clock()
        soon = now + timedelta(days=self.config.expiring_soon_days)
        end = UserSubscriptionTable.subscription_end_date
        paid = UserSubscriptionTable.tier != SubscriptionTier.FREE.value

        try:
            tier_rows = await self.db.execute(
                select(UserSubscriptionTable.tier, func.count()).group_by(
                    UserSubscriptionTable.tier
                )
            )
            users_by_tier: dict[str, int] = {tier.value: 0 for tier in SubscriptionTier}
            for tier, count in tier_rows.all():
                users_by_tier[tier] = count

            counts: dict[str, Any] = {}
            for name, clause in (
                ("active_paid", and_(paid, end > now)),
                ("expiring_soon", and_(end > now, end <= soon)),
                ("expired_paid", and_(paid, end <= now)),
            ):
                counts[name] = await self.db.scalar(
                    select(func.count()).select_from(UserSubscriptionTable).where(clause)
                )

            payment_rows = await self.db.execute(
                select(
                    PaymentTransactionTable.status,
                    func.count(),
                    func.coalesce(func.sum(PaymentTransactionTable.amount), 0),
                ).group_by(PaymentTransactionTable.status)
            )
            payments = {status: (count, amount) for status, count, amount in payment_rows.all()}
        except SQLAlchemyError as e:
            logger.error("Failed to compute subscription metrics", error=str(e))
            raise StorageError("Failed to compute metrics", operation="subscription_metrics") from e

        completed = payments.get(PaymentStatus.COMPLETED.value, (0, 0))
        return SubscriptionMetrics(
            users_by_tier=users_by_tier,
            total_users=sum(users_by_tier.values()),
            active_paid=counts["active_paid"] or 0,
            expiring_soon=counts["expiring_soon"] or 0,
            expired_paid=counts["expired_paid"] or 0,
            revenue=int(completed[1]),
            currency=self.config.currency,
            completed_payments=completed[0],
            pending_payments=payments.get(PaymentStatus.PENDING.value, (0, 0))[0],
            failed_payments=payments.get(PaymentStatus.FAILED.value, (0, 0))[0],
        )


__all__ = [
    "SubscriptionState",
    "SubscriptionFilters",
    "SubscriptionListItem",
    "SubscriptionPage",
    "TransactionPage",
    "SubscriptionMetrics",
    "BillingAdminService",
    "calculate_subscription_status",
    "is_limit_exceeded",
]
