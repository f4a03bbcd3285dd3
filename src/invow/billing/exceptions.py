"""
Billing system exceptions.

Custom exceptions for billing operations with clear error messages.
Every error carries a status code, context, a recovery hint and a
``user_facing`` flag that tells the service facade whether the message may
be shown to end users or must be replaced with a generic one.
"""

from typing import Any


class BillingError(Exception):
    """
    Base billing system error with enhanced context.

    Attributes:
        message: Human-readable error message
        error_code: Machine-readable error code
        status_code: HTTP-style status code for this error type
        context: Additional context data about the error
        recovery_hint: Suggested action to resolve the error
        user_facing: Whether ``message`` is safe to show to end users
        retryable: Whether the caller may retry the same request later
    """

    user_facing: bool = True
    retryable: bool = False

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        status_code: int = 400,
        context: dict[str, Any] | None = None,
        recovery_hint: str | None = None,
    ):
        self.message = message
        self.error_code = error_code or "BILLING_ERROR"
        self.status_code = status_code
        self.context = context or {}
        self.recovery_hint = recovery_hint
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for API responses."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "status_code": self.status_code,
            "context": self.context,
            "recovery_hint": self.recovery_hint,
            "retryable": self.retryable,
        }


# ==========================================
# Subscriptions
# ==========================================


class SubscriptionError(BillingError):
    """Subscription-related errors."""

    def __init__(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        recovery_hint: str | None = None,
    ):
        super().__init__(
            message,
            "SUBSCRIPTION_ERROR",
            status_code=400,
            context=context,
            recovery_hint=recovery_hint,
        )


class SubscriptionNotFoundError(SubscriptionError):
    """Subscription not found error."""

    def __init__(self, message: str, user_id: str | None = None) -> None:
        context = {}
        if user_id:
            context["user_id"] = user_id

        super().__init__(
            message,
            context=context,
            recovery_hint="Verify the user ID; a subscription is created on first access",
        )
        self.error_code = "SUBSCRIPTION_NOT_FOUND"
        self.status_code = 404


class InvalidTierError(SubscriptionError):
    """Requested tier is unknown or cannot be purchased."""

    def __init__(self, message: str, tier: str | None = None) -> None:
        super().__init__(
            message,
            context={"tier": tier} if tier else {},
            recovery_hint="Choose one of the purchasable tiers",
        )
        self.error_code = "INVALID_TIER"


class InvalidExtensionError(SubscriptionError):
    """Subscription extension with a non-positive number of days."""

    def __init__(self, message: str, days: int) -> None:
        super().__init__(
            message,
            context={"days": days},
            recovery_hint="Extend by a positive number of days",
        )
        self.error_code = "INVALID_EXTENSION"


class InvoiceLimitExceededError(SubscriptionError):
    """Invoice quota for the current cycle is used up."""

    def __init__(self, message: str, user_id: str, current_count: int, limit: int) -> None:
        super().__init__(
            message,
            context={"user_id": user_id, "current_count": current_count, "limit": limit},
            recovery_hint="Upgrade your plan or wait for the next billing cycle",
        )
        self.error_code = "INVOICE_LIMIT_EXCEEDED"
        self.status_code = 403


class SubscriptionInconsistencyError(SubscriptionError):
    """Payment completed but the subscription could not be upgraded."""

    user_facing = False

    def __init__(
        self,
        message: str,
        user_id: str | None = None,
        payment_id: str | None = None,
        tier: str | None = None,
    ):
        context = {}
        if user_id:
            context["user_id"] = user_id
        if payment_id:
            context["payment_id"] = payment_id
        if tier:
            context["tier"] = tier

        super().__init__(
            message,
            context=context,
            recovery_hint="Reconcile manually: the payment is recorded as completed",
        )
        self.error_code = "SUBSCRIPTION_INCONSISTENT"
        self.status_code = 500


# ==========================================
# Payments
# ==========================================


class PaymentError(BillingError):
    """Payment processing errors."""

    def __init__(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        recovery_hint: str | None = None,
    ):
        super().__init__(
            message, "PAYMENT_ERROR", status_code=402, context=context, recovery_hint=recovery_hint
        )


class PaymentNotFoundError(PaymentError):
    """No payment record matches the given identifiers.

    Retryable: a webhook can arrive before the pending record is committed.
    """

    retryable = True

    def __init__(
        self,
        message: str,
        payment_id: str | None = None,
        gateway_invoice_id: str | None = None,
    ):
        context = {}
        if payment_id:
            context["payment_id"] = payment_id
        if gateway_invoice_id:
            context["gateway_invoice_id"] = gateway_invoice_id

        super().__init__(
            message,
            context=context,
            recovery_hint="Verify the payment identifier or retry shortly",
        )
        self.error_code = "PAYMENT_NOT_FOUND"
        self.status_code = 404


class PaymentStateError(PaymentError):
    """Invalid payment state transition error."""

    def __init__(
        self, message: str, payment_id: str, current_state: str, requested_state: str
    ) -> None:
        super().__init__(
            message,
            context={
                "payment_id": payment_id,
                "current_state": current_state,
                "requested_state": requested_state,
            },
            recovery_hint=f"Cannot transition from {current_state} to {requested_state}",
        )
        self.error_code = "INVALID_PAYMENT_STATE"
        self.status_code = 409


class PaymentPendingError(PaymentError):
    """The gateway has not settled the payment yet."""

    retryable = True

    def __init__(self, message: str, payment_id: str | None = None) -> None:
        super().__init__(
            message,
            context={"payment_id": payment_id} if payment_id else {},
            recovery_hint="Wait for the payment to complete and check again",
        )
        self.error_code = "PAYMENT_PENDING"
        self.status_code = 202


class PaymentFailedError(PaymentError):
    """The gateway reported the payment as failed."""

    def __init__(self, message: str, payment_id: str | None = None) -> None:
        super().__init__(
            message,
            context={"payment_id": payment_id} if payment_id else {},
            recovery_hint="Start a new checkout with a different payment method",
        )
        self.error_code = "PAYMENT_FAILED"


# ==========================================
# Webhooks
# ==========================================


class WebhookError(BillingError):
    """Webhook processing errors."""

    def __init__(self, message: str, event: str | None = None, provider: str | None = None) -> None:
        context = {}
        if event:
            context["event"] = event
        if provider:
            context["provider"] = provider

        super().__init__(
            message,
            "WEBHOOK_ERROR",
            status_code=400,
            context=context,
            recovery_hint="Check webhook configuration and retry the webhook delivery",
        )


class WebhookSignatureError(WebhookError):
    """Webhook signature missing or invalid."""

    def __init__(self, message: str, provider: str | None = None) -> None:
        super().__init__(message, provider=provider)
        self.error_code = "WEBHOOK_SIGNATURE_INVALID"
        self.status_code = 401


class WebhookPayloadError(WebhookError):
    """Webhook body is not a usable payment event."""

    def __init__(self, message: str, event: str | None = None) -> None:
        super().__init__(message, event=event)
        self.error_code = "WEBHOOK_PAYLOAD_INVALID"


# ==========================================
# Infrastructure
# ==========================================


class StorageError(BillingError):
    """Persistence layer failure."""

    user_facing = False
    retryable = True

    def __init__(self, message: str, operation: str | None = None) -> None:
        super().__init__(
            message,
            "STORAGE_ERROR",
            status_code=503,
            context={"operation": operation} if operation else {},
            recovery_hint="Retry the request; check database connectivity if it persists",
        )


class GatewayError(BillingError):
    """Payment gateway communication errors."""

    user_facing = False

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        context: dict[str, Any] | None = None,
    ):
        context = dict(context or {})
        if status_code is not None:
            context["gateway_status"] = status_code
        super().__init__(
            message,
            "GATEWAY_ERROR",
            status_code=502,
            context=context,
            recovery_hint="Retry later; check the payment gateway status",
        )
        self.gateway_status = status_code


class GatewayUnavailableError(GatewayError):
    """Network failure or 5xx response from the gateway."""

    retryable = True

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message, status_code=status_code)
        self.error_code = "GATEWAY_UNAVAILABLE"
        self.status_code = 503


class GatewayRequestError(GatewayError):
    """Gateway rejected the request (4xx)."""

    def __init__(
        self, message: str, status_code: int | None = None, body: str | None = None
    ) -> None:
        super().__init__(
            message, status_code=status_code, context={"body": body[:500]} if body else None
        )
        self.error_code = "GATEWAY_REQUEST_REJECTED"


class GatewayRateLimitError(GatewayRequestError):
    """Gateway throttled the request (429)."""

    retryable = True

    def __init__(self, message: str, retry_after: float | None = None) -> None:
        super().__init__(message, status_code=429)
        if retry_after is not None:
            self.context["retry_after"] = retry_after
        self.retry_after = retry_after
        self.error_code = "GATEWAY_RATE_LIMITED"
        self.status_code = 429


class BillingConfigurationError(BillingError):
    """Billing configuration errors."""

    user_facing = False

    def __init__(
        self, message: str, config_key: str | None = None, recovery_hint: str | None = None
    ):
        context = {}
        if config_key:
            context["config_key"] = config_key

        super().__init__(
            message,
            "BILLING_CONFIG_ERROR",
            status_code=500,
            context=context,
            recovery_hint=recovery_hint or "Check billing configuration settings",
        )
