"""
Payment reconciliation.

Moves payment transactions through pending -> completed | failed exactly
once and applies the purchased tier to the subscription ledger. Every
transition is a conditional write on the expected current state, so
duplicate webhooks and concurrent redirects cannot upgrade twice.
"""

from datetime import timedelta

import structlog

from invow.billing.config import BillingConfig, TierConfig
from invow.billing.exceptions import (
    BillingError,
    InvalidTierError,
    PaymentFailedError,
    PaymentNotFoundError,
    PaymentPendingError,
    PaymentStateError,
    SubscriptionInconsistencyError,
)
from invow.billing.ledger import Clock, SubscriptionLedger
from invow.billing.models import (
    CheckoutSession,
    Customer,
    PaymentStatus,
    PaymentTransaction,
    SubscriptionSnapshot,
    SubscriptionTier,
)
from invow.billing.payments.cache import TransactionLookupCache, get_transaction_cache
from invow.billing.payments.gateway import GatewayTransactionStatus, PaymentGatewayClient
from invow.billing.repositories import PaymentRepository

logger = structlog.get_logger(__name__)


class PaymentReconciler:
    """
    Payment state machine and checkout orchestration.

    Handles:
    - Pending payment creation and one-time gateway id attachment
    - Idempotent success and failure reconciliation
    - Checkout creation at the gateway
    - Redirect verification against the gateway's transaction list
    """

    def __init__(
        self,
        ledger: SubscriptionLedger,
        payments: PaymentRepository,
        gateway: PaymentGatewayClient | None = None,
        cache: TransactionLookupCache | None = None,
        config: BillingConfig | None = None,
        clock: Clock | None = None,
    ):
        self.ledger = ledger
        self.payments = payments
        self.config = config or ledger.config
        self.gateway = gateway if gateway is not None else PaymentGatewayClient(self.config.gateway)
        self.cache = cache if cache is not None else get_transaction_cache()
        self.clock = clock if clock is not None else ledger.clock

    # ==================== Payment records ====================

    async def close(self) -> None:
        """Close the gateway client."""
        await self.gateway.close()

    def _purchasable_tier(self, tier: str | SubscriptionTier) -> TierConfig:
        tier_config = self.config.get_tier(tier)
        if tier_config is None or not tier_config.purchasable:
            raise InvalidTierError(f"Tier '{tier}' cannot be purchased", tier=str(tier))
        return tier_config

    async def create_pending(
        self, user_id: str, tier: str | SubscriptionTier
    ) -> PaymentTransaction:
        tier_config = self._purchasable_tier(tier)

        payment = await self.payments.create(user_id, tier_config.tier, tier_config.price)
        logger.info(
            "Pending payment created",
            payment_id=payment.id,
            user_id=user_id,
            tier=tier_config.tier.value,
            amount=payment.amount,
        )
        return payment

    async def attach_gateway_id(
        self, payment_id: str, gateway_invoice_id: str
    ) -> PaymentTransaction:
        """
        Record the gateway's id on a payment. The id can be set only once.

        Raises:
            PaymentNotFoundError: Unknown payment
            PaymentStateError: A different gateway id is already attached
        """
        if await self.payments.attach_gateway_id(payment_id, gateway_invoice_id):
            return await self.payments.get_by_id(payment_id)

        payment = await self.payments.get_by_id(payment_id)
        if payment.gateway_invoice_id == gateway_invoice_id:
            return payment

        logger.warning(
            "Gateway id already attached",
            payment_id=payment_id,
            existing_gateway_invoice_id=payment.gateway_invoice_id,
            gateway_invoice_id=gateway_invoice_id,
        )
        raise PaymentStateError(
            "Payment already has a different gateway invoice id",
            payment_id=payment_id,
            current_state="attached",
            requested_state="attached",
        )

    async def _find(self, gateway_invoice_id: str, alternate_id: str | None) -> PaymentTransaction:
        payment = await self.payments.find_by_gateway_id(gateway_invoice_id)
        if payment is None and alternate_id and alternate_id != gateway_invoice_id:
            payment = await self.payments.find_by_gateway_id(alternate_id)
        if payment is None:
            logger.warning(
                "No payment for gateway invoice",
                gateway_invoice_id=gateway_invoice_id,
                alternate_id=alternate_id,
            )
            raise PaymentNotFoundError(
                f"No payment found for gateway invoice {gateway_invoice_id}",
                gateway_invoice_id=gateway_invoice_id,
            )
        return payment

    async def _snapshot(self, user_id: str) -> SubscriptionSnapshot:
        return SubscriptionSnapshot.from_subscription(await self.ledger.get_current(user_id))

    # ==================== Reconciliation ====================

    async def reconcile_success(
        self,
        gateway_invoice_id: str,
        alternate_id: str | None = None,
        payment_method: str | None = None,
    ) -> SubscriptionSnapshot:
        """
        Complete a payment and upgrade the buyer's subscription.

        Safe to call repeatedly for the same invoice: only the call that moves
        the payment out of ``pending`` performs the upgrade, every other call
        returns the current subscription snapshot.

        Args:
            gateway_invoice_id: Id reported by the gateway
            alternate_id: Secondary gateway id tried when the first has no match
            payment_method: Method reported by the gateway, e.g. "QRIS"

        Returns:
            Subscription snapshot after the upgrade

        Raises:
            PaymentNotFoundError: No payment matches either id
            PaymentStateError: The payment already failed
            SubscriptionInconsistencyError: Payment completed but the upgrade failed
        """
        payment = await self._find(gateway_invoice_id, alternate_id)

        if payment.status == PaymentStatus.COMPLETED:
            logger.info("Payment already completed", payment_id=payment.id, user_id=payment.user_id)
            return await self._snapshot(payment.user_id)
        if payment.status == PaymentStatus.FAILED:
            raise PaymentStateError(
                "A failed payment cannot be completed",
                payment_id=payment.id,
                current_state=PaymentStatus.FAILED.value,
                requested_state=PaymentStatus.COMPLETED.value,
            )

        won = await self.payments.mark_completed(payment.id, self.clock(), payment_method)
        if not won:
            current = await self.payments.get_by_id(payment.id)
            if current.status == PaymentStatus.FAILED:
                raise PaymentStateError(
                    "A failed payment cannot be completed",
                    payment_id=payment.id,
                    current_state=PaymentStatus.FAILED.value,
                    requested_state=PaymentStatus.COMPLETED.value,
                )
            logger.info("Payment completed concurrently", payment_id=payment.id)
            return await self._snapshot(payment.user_id)

        if payment.gateway_invoice_id:
            self.cache.invalidate(payment.gateway_invoice_id)

        try:
            sub = await self.ledger.upgrade(payment.user_id, payment.tier)
        except BillingError as e:
            logger.error(
                "Payment completed but subscription upgrade failed",
                payment_id=payment.id,
                user_id=payment.user_id,
                tier=payment.tier.value,
                error=str(e),
                exc_info=True,
            )
            raise SubscriptionInconsistencyError(
                "Payment was recorded but the subscription could not be upgraded",
                user_id=payment.user_id,
                payment_id=payment.id,
                tier=payment.tier.value,
            ) from e

        logger.info(
            "Payment reconciled",
            payment_id=payment.id,
            user_id=payment.user_id,
            tier=payment.tier.value,
            payment_method=payment_method,
        )
        return SubscriptionSnapshot.from_subscription(sub)

    async def reconcile_failure(
        self, gateway_invoice_id: str, alternate_id: str | None = None
    ) -> PaymentTransaction:
        """Mark a pending payment failed. Settled payments are returned unchanged."""
        payment = await self._find(gateway_invoice_id, alternate_id)

        if payment.status.is_terminal:
            logger.info(
                "Ignoring failure for settled payment",
                payment_id=payment.id,
                status=payment.status.value,
            )
            return payment

        if not await self.payments.mark_failed(payment.id, self.clock()):
            logger.info("Payment settled concurrently", payment_id=payment.id)
        else:
            logger.warning("Payment failed", payment_id=payment.id, user_id=payment.user_id)

        if payment.gateway_invoice_id:
            self.cache.invalidate(payment.gateway_invoice_id)
        return await self.payments.get_by_id(payment.id)

    # ==================== Checkout ====================

    async def create_invoice(
        self, user_id: str, tier: str | SubscriptionTier, customer: Customer
    ) -> CheckoutSession:
        """
        Start a checkout: record a pending payment and create the gateway invoice.

        If the gateway call fails the pending payment stays without a gateway
        id and the error propagates.
        """
        tier_config = self._purchasable_tier(tier)
        payment = await self.create_pending(user_id, tier_config.tier)

        days = self.config.subscription_period_days
        description = f"{tier_config.display_name} Tier Subscription - {days} Days"
        try:
            invoice = await self.gateway.create_invoice(
                customer=customer,
                amount=payment.amount,
                description=description,
                expires_at=self.clock() + timedelta(days=days),
            )
        except BillingError as e:
            logger.error(
                "Gateway invoice creation failed",
                payment_id=payment.id,
                user_id=user_id,
                error=str(e),
            )
            raise

        payment = await self.attach_gateway_id(payment.id, invoice.transaction_id)
        return CheckoutSession(
            payment_id=payment.id,
            gateway_invoice_id=invoice.transaction_id,
            payment_url=invoice.payment_url,
            amount=payment.amount,
            currency=self.config.currency,
            tier=payment.tier,
        )

    async def verify_and_process_payment(
        self, user_id: str, payment_id: str
    ) -> SubscriptionSnapshot:
        """
        Verify a payment after the checkout redirect.

        Args:
            user_id: Authenticated user; must own the payment
            payment_id: Local payment id from the checkout session

        Raises:
            PaymentNotFoundError: Unknown payment or owned by someone else
            PaymentStateError: Checkout never reached the gateway
            PaymentPendingError: Gateway has not settled the payment yet
            PaymentFailedError: Gateway reports the payment as failed
        """
        payment = await self.payments.get_by_id(payment_id)
        if payment.user_id != user_id:
            logger.warning("Payment ownership mismatch", payment_id=payment_id, user_id=user_id)
            raise PaymentNotFoundError(f"Payment {payment_id} not found", payment_id=payment_id)

        if payment.status == PaymentStatus.COMPLETED:
            return await self._snapshot(user_id)
        if payment.status == PaymentStatus.FAILED:
            raise PaymentFailedError("Payment failed", payment_id=payment_id)
        if not payment.gateway_invoice_id:
            raise PaymentStateError(
                "Payment has no gateway invoice yet",
                payment_id=payment_id,
                current_state=PaymentStatus.PENDING.value,
                requested_state=PaymentStatus.COMPLETED.value,
            )

        transaction = await self.cache.get_transaction(
            payment.gateway_invoice_id, self.gateway.find_transaction
        )
        if transaction is None or transaction.status == GatewayTransactionStatus.PENDING:
            raise PaymentPendingError("Payment is still being processed", payment_id=payment_id)

        if transaction.status == GatewayTransactionStatus.FAILED:
            await self.reconcile_failure(payment.gateway_invoice_id)
            raise PaymentFailedError("Payment failed", payment_id=payment_id)

        return await self.reconcile_success(
            payment.gateway_invoice_id, payment_method=transaction.payment_method
        )


__all__ = ["PaymentReconciler"]
