"""
Billing system module.

Provides billing capabilities including:
- Subscription tiers and invoice quotas
- Billing cycles anchored on the subscription start day
- Upgrade credit accumulation, downgrade and extension
- Payment checkout, webhook and redirect reconciliation
- Admin listings and metrics
"""

from invow.billing.exceptions import (
    BillingConfigurationError,
    BillingError,
    GatewayError,
    InvalidExtensionError,
    InvalidTierError,
    InvoiceLimitExceededError,
    PaymentError,
    PaymentFailedError,
    PaymentNotFoundError,
    PaymentPendingError,
    PaymentStateError,
    StorageError,
    SubscriptionError,
    SubscriptionInconsistencyError,
    SubscriptionNotFoundError,
    WebhookError,
)

__all__ = [
    "BillingConfigurationError",
    "BillingError",
    "GatewayError",
    "InvalidExtensionError",
    "InvalidTierError",
    "InvoiceLimitExceededError",
    "PaymentError",
    "PaymentFailedError",
    "PaymentNotFoundError",
    "PaymentPendingError",
    "PaymentStateError",
    "StorageError",
    "SubscriptionError",
    "SubscriptionInconsistencyError",
    "SubscriptionNotFoundError",
    "WebhookError",
]
