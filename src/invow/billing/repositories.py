"""
Persistence for subscriptions and payment transactions.

The ledger and reconciler depend on the abstract repositories; the
SQLAlchemy implementations run every state change as a single UPDATE,
with counter changes expressed relative to the stored value and payment
transitions guarded by their expected current state.
"""

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any
from uuid import uuid4

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from invow.billing.exceptions import (
    PaymentNotFoundError,
    StorageError,
    SubscriptionNotFoundError,
)
from invow.billing.models import (
    PaymentStatus,
    PaymentTransaction,
    PaymentTransactionTable,
    Subscription,
    SubscriptionTier,
    UserSubscriptionTable,
)

logger = structlog.get_logger(__name__)


# ==========================================
# Interfaces
# ==========================================


class SubscriptionRepository(ABC):
    """Storage contract used by the subscription ledger."""

    @abstractmethod
    async def get_by_user_id(self, user_id: str) -> Subscription:
        """Raises SubscriptionNotFoundError when the user has no subscription."""

    @abstractmethod
    async def insert(
        self,
        user_id: str,
        tier: SubscriptionTier,
        invoice_limit: int,
        start_date: datetime,
        month_year: str,
    ) -> Subscription:
        """Create the row; if another writer got there first, return theirs."""

    @abstractmethod
    async def update(self, user_id: str, **values: Any) -> Subscription:
        """Overwrite the given columns and return the stored record."""

    @abstractmethod
    async def reset_cycle(self, user_id: str, stale_cycle: str, new_cycle: str) -> Subscription:
        """Zero the counter and move to ``new_cycle`` if still on ``stale_cycle``."""

    @abstractmethod
    async def increment_count(self, user_id: str) -> int:
        """Add one to the usage counter, returning the new value."""

    @abstractmethod
    async def increment_count_bounded(self, user_id: str) -> int | None:
        """Add one only while below the limit; None when the limit is reached."""


class PaymentRepository(ABC):
    """Storage contract used by the payment reconciler."""

    @abstractmethod
    async def create(self, user_id: str, tier: SubscriptionTier, amount: int) -> PaymentTransaction:
        ...

    @abstractmethod
    async def get_by_id(self, payment_id: str) -> PaymentTransaction:
        """Raises PaymentNotFoundError when absent."""

    @abstractmethod
    async def find_by_gateway_id(self, gateway_invoice_id: str) -> PaymentTransaction | None:
        ...

    @abstractmethod
    async def attach_gateway_id(self, payment_id: str, gateway_invoice_id: str) -> bool:
        """Set the gateway id only if none is set yet. Returns whether a row changed."""

    @abstractmethod
    async def mark_completed(
        self, payment_id: str, completed_at: datetime, payment_method: str | None = None
    ) -> bool:
        """Transition pending to completed. Returns whether this call won."""

    @abstractmethod
    async def mark_failed(self, payment_id: str, verified_at: datetime) -> bool:
        """Transition pending to failed. Returns whether this call won."""


# ==========================================
# SQLAlchemy implementations
# ==========================================


class _SQLAlchemyRepository:
    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    @asynccontextmanager
    async def _storage_errors(self, operation: str) -> AsyncIterator[None]:
        try:
            yield
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error("Storage operation failed", operation=operation, error=str(e))
            raise StorageError(f"Storage operation failed: {operation}", operation=operation) from e


class SQLAlchemySubscriptionRepository(_SQLAlchemyRepository, SubscriptionRepository):
    """Subscription repository backed by an AsyncSession."""

    async def _load(self, user_id: str) -> Subscription:
        stmt = (
            select(UserSubscriptionTable)
            .where(UserSubscriptionTable.user_id == user_id)
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(stmt)
        row = result.scalar_one_or_none()
        if row is None:
            raise SubscriptionNotFoundError(
                f"Subscription for user {user_id} not found", user_id=user_id
            )
        return Subscription.model_validate(row)

    async def get_by_user_id(self, user_id: str) -> Subscription:
        async with self._storage_errors("get_subscription"):
            return await self._load(user_id)

    async def insert(
        self,
        user_id: str,
        tier: SubscriptionTier,
        invoice_limit: int,
        start_date: datetime,
        month_year: str,
    ) -> Subscription:
        async with self._storage_errors("insert_subscription"):
            row = UserSubscriptionTable(
                user_id=user_id,
                tier=tier.value,
                invoice_limit=invoice_limit,
                current_month_count=0,
                subscription_start_date=start_date,
                subscription_end_date=None,
                month_year=month_year,
            )
            self.db.add(row)
            try:
                await self.db.commit()
            except IntegrityError:
                await self.db.rollback()
                logger.info(
                    "Subscription created concurrently, using existing row", user_id=user_id
                )
            return await self._load(user_id)

    async def update(self, user_id: str, **values: Any) -> Subscription:
        async with self._storage_errors("update_subscription"):
            stmt = (
                update(UserSubscriptionTable)
                .where(UserSubscriptionTable.user_id == user_id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            result = await self.db.execute(stmt)
            await self.db.commit()
            if result.rowcount == 0:
                raise SubscriptionNotFoundError(
                    f"Subscription for user {user_id} not found", user_id=user_id
                )
            return await self._load(user_id)

    async def reset_cycle(self, user_id: str, stale_cycle: str, new_cycle: str) -> Subscription:
        async with self._storage_errors("reset_cycle"):
            stmt = (
                update(UserSubscriptionTable)
                .where(
                    UserSubscriptionTable.user_id == user_id,
                    UserSubscriptionTable.month_year == stale_cycle,
                )
                .values(current_month_count=0, month_year=new_cycle)
                .execution_options(synchronize_session=False)
            )
            await self.db.execute(stmt)
            await self.db.commit()
            return await self._load(user_id)

    async def increment_count(self, user_id: str) -> int:
        async with self._storage_errors("increment_count"):
            stmt = (
                update(UserSubscriptionTable)
                .where(UserSubscriptionTable.user_id == user_id)
                .values(current_month_count=UserSubscriptionTable.current_month_count + 1)
                .execution_options(synchronize_session=False)
            )
            result = await self.db.execute(stmt)
            await self.db.commit()
            if result.rowcount == 0:
                raise SubscriptionNotFoundError(
                    f"Subscription for user {user_id} not found", user_id=user_id
                )
            return (await self._load(user_id)).current_month_count

    async def increment_count_bounded(self, user_id: str) -> int | None:
        async with self._storage_errors("increment_count_bounded"):
            stmt = (
                update(UserSubscriptionTable)
                .where(
                    UserSubscriptionTable.user_id == user_id,
                    UserSubscriptionTable.current_month_count
                    < UserSubscriptionTable.invoice_limit,
                )
                .values(current_month_count=UserSubscriptionTable.current_month_count + 1)
                .execution_options(synchronize_session=False)
            )
            result = await self.db.execute(stmt)
            await self.db.commit()
            if result.rowcount == 0:
                # Distinguish "at the limit" from "no such user"
                await self._load(user_id)
                return None
            return (await self._load(user_id)).current_month_count


class SQLAlchemyPaymentRepository(_SQLAlchemyRepository, PaymentRepository):
    """Payment repository backed by an AsyncSession."""

    async def _select_one(self, *criteria: Any) -> PaymentTransaction | None:
        stmt = (
            select(PaymentTransactionTable)
            .where(*criteria)
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(stmt)
        row = result.scalar_one_or_none()
        return PaymentTransaction.model_validate(row) if row is not None else None

    async def create(self, user_id: str, tier: SubscriptionTier, amount: int) -> PaymentTransaction:
        async with self._storage_errors("create_payment"):
            payment_id = str(uuid4())
            row = PaymentTransactionTable(
                id=payment_id,
                user_id=user_id,
                tier=tier.value,
                amount=amount,
                status=PaymentStatus.PENDING.value,
            )
            self.db.add(row)
            await self.db.commit()
            payment = await self._select_one(PaymentTransactionTable.id == payment_id)
            if payment is None:
                raise PaymentNotFoundError("Payment vanished after insert", payment_id=payment_id)
            return payment

    async def get_by_id(self, payment_id: str) -> PaymentTransaction:
        async with self._storage_errors("get_payment"):
            payment = await self._select_one(PaymentTransactionTable.id == payment_id)
        if payment is None:
            raise PaymentNotFoundError(f"Payment {payment_id} not found", payment_id=payment_id)
        return payment

    async def find_by_gateway_id(self, gateway_invoice_id: str) -> PaymentTransaction | None:
        async with self._storage_errors("find_payment_by_gateway_id"):
            return await self._select_one(
                PaymentTransactionTable.gateway_invoice_id == gateway_invoice_id
            )

    async def _conditional_update(self, operation: str, *criteria: Any, **values: Any) -> bool:
        async with self._storage_errors(operation):
            stmt = (
                update(PaymentTransactionTable)
                .where(*criteria)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            result = await self.db.execute(stmt)
            await self.db.commit()
            return bool(result.rowcount)

    async def attach_gateway_id(self, payment_id: str, gateway_invoice_id: str) -> bool:
        return await self._conditional_update(
            "attach_gateway_id",
            PaymentTransactionTable.id == payment_id,
            PaymentTransactionTable.gateway_invoice_id.is_(None),
            gateway_invoice_id=gateway_invoice_id,
        )

    async def mark_completed(
        self, payment_id: str, completed_at: datetime, payment_method: str | None = None
    ) -> bool:
        values: dict[str, Any] = {
            "status": PaymentStatus.COMPLETED.value,
            "completed_at": completed_at,
            "verified_at": completed_at,
        }
        if payment_method:
            values["payment_method"] = payment_method
        return await self._conditional_update(
            "mark_payment_completed",
            PaymentTransactionTable.id == payment_id,
            PaymentTransactionTable.status == PaymentStatus.PENDING.value,
            **values,
        )

    async def mark_failed(self, payment_id: str, verified_at: datetime) -> bool:
        return await self._conditional_update(
            "mark_payment_failed",
            PaymentTransactionTable.id == payment_id,
            PaymentTransactionTable.status == PaymentStatus.PENDING.value,
            status=PaymentStatus.FAILED.value,
            verified_at=verified_at,
        )


__all__ = [
    "SubscriptionRepository",
    "PaymentRepository",
    "SQLAlchemySubscriptionRepository",
    "SQLAlchemyPaymentRepository",
]
