"""
Subscription ledger.

Owns the tier, invoice quota, usage counter and billing cycle of each user.
Cycle rollover is applied lazily: every quota-sensitive operation first
re-derives the current cycle and zeroes the counter when it has moved on.
"""

from collections.abc import Callable
from datetime import UTC, datetime, timedelta

import structlog

from invow.billing.config import BillingConfig, get_billing_config
from invow.billing.cycles import current_cycle, next_reset_date
from invow.billing.exceptions import (
    InvalidExtensionError,
    InvalidTierError,
    InvoiceLimitExceededError,
    SubscriptionNotFoundError,
)
from invow.billing.models import Subscription, SubscriptionStatusView, SubscriptionTier
from invow.billing.repositories import SubscriptionRepository

logger = structlog.get_logger(__name__)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(UTC)


class SubscriptionLedger:
    """
    Tier, quota and usage bookkeeping for user subscriptions.

    Handles:
    - Lazy creation of free-tier subscriptions
    - Billing cycle read-repair
    - Invoice quota checks and counting
    - Upgrade credit accumulation, downgrade, extension and counter resets
    """

    def __init__(
        self,
        repository: SubscriptionRepository,
        config: BillingConfig | None = None,
        clock: Clock = utc_now,
    ):
        self.repository = repository
        self.config = config or get_billing_config()
        self.clock = clock

    @property
    def period(self) -> timedelta:
        return timedelta(days=self.config.subscription_period_days)

    # ==================== Lookup ====================

    async def get_or_create(self, user_id: str) -> Subscription:
        """Fetch the user's subscription, creating a free-tier one on first access."""
        try:
            return await self.repository.get_by_user_id(user_id)
        except SubscriptionNotFoundError:
            pass

        now = self.clock()
        sub = await self.repository.insert(
            user_id=user_id,
            tier=SubscriptionTier.FREE,
            invoice_limit=self.config.free_invoice_limit,
            start_date=now,
            month_year=current_cycle(now, now),
        )
        logger.info("Created free subscription", user_id=user_id, month_year=sub.month_year)
        return sub

    async def ensure_current_cycle(self, sub: Subscription) -> Subscription:
        """Zero the usage counter if the stored cycle is stale."""
        cycle = current_cycle(sub.subscription_start_date, self.clock())
        if sub.month_year == cycle:
            return sub

        logger.info(
            "Billing cycle rolled over",
            user_id=sub.user_id,
            previous_cycle=sub.month_year,
            new_cycle=cycle,
            previous_count=sub.current_month_count,
        )
        return await self.repository.reset_cycle(sub.user_id, sub.month_year, cycle)

    async def get_current(self, user_id: str) -> Subscription:
        """Fetch or create the subscription with its billing cycle brought up to date."""
        return await self.ensure_current_cycle(await self.get_or_create(user_id))

    # ==================== Quota ====================

    async def can_generate_invoice(self, user_id: str) -> bool:
        sub = await self.get_current(user_id)
        return sub.current_month_count < sub.invoice_limit

    async def increment_invoice_count(self, user_id: str) -> int:
        """
        Count one generated invoice.

        Does not enforce the limit; call ``can_generate_invoice`` first, or use
        ``consume_invoice_quota`` for a check and increment in one statement.

        Returns:
            The new usage count
        """
        await self.get_current(user_id)
        count = await self.repository.increment_count(user_id)
        logger.debug("Invoice counted", user_id=user_id, current_month_count=count)
        return count

    async def consume_invoice_quota(self, user_id: str) -> int:
        """
        Count one generated invoice if the quota allows it.

        Raises:
            InvoiceLimitExceededError: The cycle's quota is used up
        """
        sub = await self.get_current(user_id)
        count = await self.repository.increment_count_bounded(user_id)
        if count is None:
            logger.info(
                "Invoice limit reached",
                user_id=user_id,
                invoice_limit=sub.invoice_limit,
                tier=sub.tier.value,
            )
            raise InvoiceLimitExceededError(
                f"Invoice limit of {sub.invoice_limit} reached for this billing cycle",
                user_id=user_id,
                current_count=sub.invoice_limit,
                limit=sub.invoice_limit,
            )
        return count

    async def get_remaining_invoices(self, user_id: str) -> int:
        sub = await self.get_current(user_id)
        return sub.remaining_invoices

    async def get_status(self, user_id: str) -> SubscriptionStatusView:
        sub = await self.get_current(user_id)
        now = self.clock()

        if sub.tier != SubscriptionTier.FREE and sub.subscription_end_date is not None:
            reset_date = sub.subscription_end_date
        else:
            reset_date = next_reset_date(sub.subscription_start_date, now)

        return SubscriptionStatusView(
            user_id=sub.user_id,
            tier=sub.tier,
            invoice_limit=sub.invoice_limit,
            current_month_count=sub.current_month_count,
            remaining_invoices=sub.remaining_invoices,
            month_year=sub.month_year,
            reset_date=reset_date,
            expires_at=sub.subscription_end_date,
        )

    # ==================== Tier changes ====================

    async def upgrade(self, user_id: str, tier: str | SubscriptionTier) -> Subscription:
        """
        Apply a purchased tier to the user's subscription.

        While a paid period is active, unused invoices carry over and the
        period is extended; otherwise a fresh period starts now.

        Args:
            user_id: Subscriber
            tier: Purchased tier; must be a paid tier

        Returns:
            The updated subscription

        Raises:
            InvalidTierError: Unknown or non-purchasable tier
        """
        tier_config = self.config.get_tier(tier)
        if tier_config is None or not tier_config.purchasable:
            raise InvalidTierError(f"Cannot upgrade to tier '{tier}'", tier=str(tier))

        sub = await self.get_current(user_id)
        now = self.clock()
        remaining = sub.remaining_invoices
        end = sub.subscription_end_date

        if end is not None and end > now:
            start = sub.subscription_start_date
            new_limit = remaining + tier_config.invoice_limit
            new_end = end + self.period
            carried = remaining
        else:
            start = now
            new_limit = tier_config.invoice_limit
            new_end = now + self.period
            carried = 0

        updated = await self.repository.update(
            user_id,
            tier=tier_config.tier.value,
            invoice_limit=new_limit,
            current_month_count=0,
            subscription_start_date=start,
            subscription_end_date=new_end,
            month_year=current_cycle(start, now),
        )
        logger.info(
            "Subscription upgraded",
            user_id=user_id,
            tier=tier_config.tier.value,
            invoice_limit=new_limit,
            carried_over=carried,
            expires_at=new_end.isoformat(),
        )
        return updated

    async def downgrade(self, user_id: str) -> Subscription:
        """Return the user to the free tier. The usage counter is kept."""
        await self.get_current(user_id)
        updated = await self.repository.update(
            user_id,
            tier=SubscriptionTier.FREE.value,
            invoice_limit=self.config.free_invoice_limit,
            subscription_end_date=None,
        )
        logger.info("Subscription downgraded", user_id=user_id)
        return updated

    async def extend(self, user_id: str, days: int) -> Subscription:
        """Push the end date out by ``days``, counting from now if already expired."""
        if days <= 0:
            raise InvalidExtensionError(f"Extension days must be positive, got {days}", days=days)

        sub = await self.get_current(user_id)
        now = self.clock()
        base = max(sub.subscription_end_date or now, now)
        new_end = base + timedelta(days=days)

        updated = await self.repository.update(user_id, subscription_end_date=new_end)
        logger.info(
            "Subscription extended", user_id=user_id, days=days, expires_at=new_end.isoformat()
        )
        return updated

    async def reset_invoice_counter(self, user_id: str) -> Subscription:
        await self.get_current(user_id)
        updated = await self.repository.update(user_id, current_month_count=0)
        logger.info("Invoice counter reset", user_id=user_id)
        return updated


__all__ = ["Clock", "SubscriptionLedger", "utc_now"]
