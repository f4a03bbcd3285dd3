"""
Billing service facade.

Single entry point for callers outside the billing package (checkout
routes, webhook route, admin tooling). Every operation returns a
ServiceResult instead of raising: user-facing errors keep their message,
internal failures are logged with context and reported generically.
"""

from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from invow.billing.config import BillingConfig, get_billing_config
from invow.billing.exceptions import (
    BillingConfigurationError,
    BillingError,
    GatewayError,
    StorageError,
    SubscriptionInconsistencyError,
)
from invow.billing.ledger import Clock, SubscriptionLedger, utc_now
from invow.billing.models import (
    CheckoutSession,
    Customer,
    Subscription,
    SubscriptionSnapshot,
    SubscriptionStatusView,
    SubscriptionTier,
)
from invow.billing.payments.cache import TransactionLookupCache
from invow.billing.payments.gateway import PaymentGatewayClient
from invow.billing.payments.reconciler import PaymentReconciler
from invow.billing.payments.webhooks import WebhookOutcome, WebhookProcessor
from invow.billing.repositories import (
    SQLAlchemyPaymentRepository,
    SQLAlchemySubscriptionRepository,
)
from invow.billing.results import ServiceResult
from invow.logging import log_audit_event

logger = structlog.get_logger(__name__)

T = TypeVar("T")

GENERIC_ERROR = "Something went wrong. Please try again later."
_GENERIC_MESSAGES: dict[type[BillingError], str] = {
    SubscriptionInconsistencyError: (
        "Your payment was received but your subscription could not be updated. "
        "Support has been notified."
    ),
    BillingConfigurationError: "Payment service is not configured. Please contact support.",
    GatewayError: "Payment service is temporarily unavailable. Please try again later.",
    StorageError: "A temporary error occurred. Please try again.",
}


def _tier_value(tier: str | SubscriptionTier) -> str:
    return tier.value if isinstance(tier, SubscriptionTier) else str(tier)


def _generic_message(error: BillingError) -> str:
    for error_type, message in _GENERIC_MESSAGES.items():
        if isinstance(error, error_type):
            return message
    return GENERIC_ERROR


class BillingService:
    """Result-returning facade over the ledger, reconciler and webhook processor."""

    def __init__(
        self,
        ledger: SubscriptionLedger,
        reconciler: PaymentReconciler,
        webhooks: WebhookProcessor | None = None,
    ):
        self.ledger = ledger
        self.reconciler = reconciler
        self.webhooks = webhooks if webhooks is not None else WebhookProcessor(reconciler)

    @classmethod
    def from_session(
        cls,
        db: AsyncSession,
        config: BillingConfig | None = None,
        gateway: PaymentGatewayClient | None = None,
        cache: TransactionLookupCache | None = None,
        clock: Clock = utc_now,
    ) -> "BillingService":
        """Wire the service against SQLAlchemy repositories on ``db``."""
        config = config or get_billing_config()
        ledger = SubscriptionLedger(
            SQLAlchemySubscriptionRepository(db), config=config, clock=clock
        )
        reconciler = PaymentReconciler(
            ledger,
            SQLAlchemyPaymentRepository(db),
            gateway=gateway,
            cache=cache,
            config=config,
        )
        return cls(ledger, reconciler)

    async def close(self) -> None:
        """Release the gateway HTTP client."""
        await self.reconciler.close()

    async def __aenter__(self) -> "BillingService":
        return self

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        await self.close()

    async def _run(
        self, operation: str, call: Callable[[], Awaitable[T]], **context: Any
    ) -> ServiceResult[T]:
        try:
            return ServiceResult.ok(await call())
        except BillingError as e:
            if e.user_facing:
                logger.info(
                    "Billing operation rejected",
                    operation=operation,
                    error_code=e.error_code,
                    error=e.message,
                    **context,
                )
                return ServiceResult.fail(e.message, e.error_code, e.retryable)

            logger.error(
                "Billing operation failed",
                operation=operation,
                error_code=e.error_code,
                error=e.message,
                error_context=e.context,
                **context,
                exc_info=True,
            )
            return ServiceResult.fail(_generic_message(e), e.error_code, e.retryable)
        except Exception:
            logger.exception("Unexpected billing error", operation=operation, **context)
            return ServiceResult.fail(GENERIC_ERROR, "INTERNAL_ERROR")

    # ==================== Quota ====================

    async def get_subscription_status(self, user_id: str) -> ServiceResult[SubscriptionStatusView]:
        return await self._run(
            "get_subscription_status", lambda: self.ledger.get_status(user_id), user_id=user_id
        )

    async def can_generate_invoice(self, user_id: str) -> ServiceResult[bool]:
        return await self._run(
            "can_generate_invoice",
            lambda: self.ledger.can_generate_invoice(user_id),
            user_id=user_id,
        )

    async def increment_invoice_count(self, user_id: str) -> ServiceResult[int]:
        return await self._run(
            "increment_invoice_count",
            lambda: self.ledger.increment_invoice_count(user_id),
            user_id=user_id,
        )

    async def consume_invoice_quota(self, user_id: str) -> ServiceResult[int]:
        return await self._run(
            "consume_invoice_quota",
            lambda: self.ledger.consume_invoice_quota(user_id),
            user_id=user_id,
        )

    async def get_remaining_invoices(self, user_id: str) -> ServiceResult[int]:
        return await self._run(
            "get_remaining_invoices",
            lambda: self.ledger.get_remaining_invoices(user_id),
            user_id=user_id,
        )

    # ==================== Admin changes ====================

    async def _audited(
        self,
        action: str,
        user_id: str,
        actor: str | None,
        call: Callable[[], Awaitable[Subscription]],
        **details: Any,
    ) -> ServiceResult[Subscription]:
        result = await self._run(action, call, user_id=user_id, **details)
        if result.success:
            log_audit_event(
                f"subscription.{action}",
                actor=actor,
                user_id=user_id,
                resource_type="subscription",
                resource_id=result.data.id if result.data else None,
                **details,
            )
        return result

    async def upgrade(
        self, user_id: str, tier: str | SubscriptionTier, actor: str | None = None
    ) -> ServiceResult[Subscription]:
        return await self._audited(
            "upgrade",
            user_id,
            actor,
            lambda: self.ledger.upgrade(user_id, tier),
            tier=_tier_value(tier),
        )

    async def downgrade(
        self, user_id: str, actor: str | None = None
    ) -> ServiceResult[Subscription]:
        return await self._audited(
            "downgrade", user_id, actor, lambda: self.ledger.downgrade(user_id)
        )

    async def extend(
        self, user_id: str, days: int, actor: str | None = None
    ) -> ServiceResult[Subscription]:
        return await self._audited(
            "extend", user_id, actor, lambda: self.ledger.extend(user_id, days), days=days
        )

    async def reset_counter(
        self, user_id: str, actor: str | None = None
    ) -> ServiceResult[Subscription]:
        return await self._audited(
            "reset_counter", user_id, actor, lambda: self.ledger.reset_invoice_counter(user_id)
        )

    # ==================== Payments ====================

    async def create_invoice(
        self, user_id: str, tier: str | SubscriptionTier, customer: Customer
    ) -> ServiceResult[CheckoutSession]:
        return await self._run(
            "create_invoice",
            lambda: self.reconciler.create_invoice(user_id, tier, customer),
            user_id=user_id,
            tier=_tier_value(tier),
        )

    async def verify_and_process_payment(
        self, user_id: str, payment_id: str
    ) -> ServiceResult[SubscriptionSnapshot]:
        return await self._run(
            "verify_and_process_payment",
            lambda: self.reconciler.verify_and_process_payment(user_id, payment_id),
            user_id=user_id,
            payment_id=payment_id,
        )

    async def reconcile_payment(
        self,
        gateway_invoice_id: str,
        payment_method: str | None = None,
        actor: str | None = None,
    ) -> ServiceResult[SubscriptionSnapshot]:
        """Manually complete a payment the gateway reported as paid."""
        result = await self._run(
            "reconcile_payment",
            lambda: self.reconciler.reconcile_success(
                gateway_invoice_id, payment_method=payment_method
            ),
            gateway_invoice_id=gateway_invoice_id,
        )
        if result.success and result.data is not None:
            log_audit_event(
                "payment.manual_reconciliation",
                actor=actor,
                user_id=result.data.user_id,
                resource_type="payment",
                resource_id=gateway_invoice_id,
            )
        return result

    async def process_webhook(
        self, raw_body: bytes | str, signature: str | None
    ) -> ServiceResult[WebhookOutcome]:
        return await self._run(
            "process_webhook", lambda: self.webhooks.process(raw_body, signature)
        )


__all__ = ["BillingService", "GENERIC_ERROR"]
