"""
Tests for the billing service facade.

Covers:
- ServiceResult envelope
- User-facing errors keep their message
- Internal errors are reported generically
- Audit events for admin changes and manual reconciliation
- End-to-end quota and webhook flows through the facade
"""

import json
from unittest.mock import AsyncMock, patch

import pytest

from invow.billing.exceptions import (
    BillingConfigurationError,
    StorageError,
    SubscriptionInconsistencyError,
)
from invow.billing.models import Customer, SubscriptionSnapshot, SubscriptionTier
from invow.billing.payments.cache import TransactionLookupCache
from invow.billing.payments.gateway import GatewayInvoice
from invow.billing.payments.webhooks import WebhookAction, compute_signature
from invow.billing.results import ServiceResult
from invow.billing.service import GENERIC_ERROR, BillingService

pytestmark = pytest.mark.integration


@pytest.fixture
def service(ledger, reconciler):
    return BillingService(ledger, reconciler)


class TestServiceResult:
    """Test the result envelope."""

    def test_ok(self):
        result = ServiceResult.ok(5)

        assert result.success is True
        assert result.to_dict() == {
            "success": True,
            "data": 5,
            "error": None,
            "error_code": None,
            "retryable": False,
        }

    def test_fail(self):
        result = ServiceResult.fail("nope", "CODE", retryable=True)

        assert result.success is False
        assert result.data is None
        assert result.to_dict()["retryable"] is True

    def test_model_data_is_serialised(self):
        snapshot = SubscriptionSnapshot(
            user_id="u", tier=SubscriptionTier.PREMIUM, invoice_limit=200, current_month_count=0
        )

        assert ServiceResult.ok(snapshot).to_dict()["data"]["tier"] == "premium"


class TestErrorHandling:
    """Test how errors become results."""

    async def test_user_facing_error_keeps_message(self, service):
        result = await service.upgrade("user-1", "gold")

        assert result.success is False
        assert "gold" in result.error
        assert result.error_code == "INVALID_TIER"

    async def test_limit_exceeded(self, service, subscription_repo):
        await service.can_generate_invoice("user-1")
        await subscription_repo.update("user-1", current_month_count=10)

        result = await service.consume_invoice_quota("user-1")

        assert result.error_code == "INVOICE_LIMIT_EXCEEDED"
        assert "10" in result.error

    @pytest.mark.parametrize(
        ("error", "expected"),
        [
            (StorageError("disk I/O error", operation="x"), "A temporary error occurred"),
            (BillingConfigurationError("GATEWAY__API_KEY unset"), "not configured"),
            (SubscriptionInconsistencyError("upgrade failed"), "Support has been notified"),
        ],
    )
    async def test_internal_error_is_generic(self, service, monkeypatch, error, expected):
        monkeypatch.setattr(service.ledger, "get_status", AsyncMock(side_effect=error))

        result = await service.get_subscription_status("user-1")

        assert result.success is False
        assert expected in result.error
        assert error.message not in result.error
        assert result.error_code == error.error_code

    async def test_storage_error_is_retryable(self, service, monkeypatch):
        monkeypatch.setattr(
            service.ledger, "get_status", AsyncMock(side_effect=StorageError("locked"))
        )

        result = await service.get_subscription_status("user-1")

        assert result.retryable is True

    async def test_unexpected_exception(self, service, monkeypatch):
        monkeypatch.setattr(
            service.ledger, "can_generate_invoice", AsyncMock(side_effect=RuntimeError("boom"))
        )

        result = await service.can_generate_invoice("user-1")

        assert result.error == GENERIC_ERROR
        assert result.error_code == "INTERNAL_ERROR"


class TestQuotaFlow:
    """Test quota operations through the facade."""

    async def test_status_and_counting(self, service):
        assert (await service.can_generate_invoice("user-1")).data is True
        assert (await service.increment_invoice_count("user-1")).data == 1
        assert (await service.consume_invoice_quota("user-1")).data == 2

        status = await service.get_subscription_status("user-1")
        remaining = await service.get_remaining_invoices("user-1")

        assert status.data.current_month_count == 2
        assert status.data.tier == SubscriptionTier.FREE
        assert remaining.data == 8


class TestAudit:
    """Test audit logging of admin changes."""

    async def test_upgrade_is_audited(self, service):
        with patch("invow.billing.service.log_audit_event") as audit:
            result = await service.upgrade("user-1", "premium", actor="admin@invow")

        assert result.success is True
        audit.assert_called_once_with(
            "subscription.upgrade",
            actor="admin@invow",
            user_id="user-1",
            resource_type="subscription",
            resource_id=result.data.id,
            tier="premium",
        )

    async def test_extend_is_audited_with_days(self, service):
        with patch("invow.billing.service.log_audit_event") as audit:
            await service.extend("user-1", 14, actor="cli")

        assert audit.call_args.args == ("subscription.extend",)
        assert audit.call_args.kwargs["days"] == 14

    async def test_rejected_change_is_not_audited(self, service):
        with patch("invow.billing.service.log_audit_event") as audit:
            result = await service.extend("user-1", 0, actor="cli")

        assert result.error_code == "INVALID_EXTENSION"
        audit.assert_not_called()

    async def test_downgrade_and_reset(self, service):
        await service.upgrade("user-1", "premium")
        await service.increment_invoice_count("user-1")

        reset = await service.reset_counter("user-1", actor="cli")
        downgraded = await service.downgrade("user-1", actor="cli")

        assert reset.data.current_month_count == 0
        assert downgraded.data.tier == SubscriptionTier.FREE

    async def test_manual_reconciliation_is_audited(self, service, make_pending_payment):
        await make_pending_payment(gateway_invoice_id="txn-1")

        with patch("invow.billing.service.log_audit_event") as audit:
            result = await service.reconcile_payment("txn-1", payment_method="QRIS", actor="cli")

        assert result.data.tier == SubscriptionTier.PREMIUM
        audit.assert_called_once_with(
            "payment.manual_reconciliation",
            actor="cli",
            user_id="user-1",
            resource_type="payment",
            resource_id="txn-1",
        )


class TestPaymentFlow:
    """Test checkout and webhook operations through the facade."""

    async def test_webhook_completes_checkout(self, service, mock_gateway, billing_config):
        mock_gateway.create_invoice.return_value = GatewayInvoice(
            transaction_id="txn-7", payment_url="https://pay.test/7"
        )
        checkout = await service.create_invoice(
            "user-1", "premium", Customer(name="Sari", email="sari@example.com")
        )
        body = json.dumps(
            {"event": "payment.received", "data": {"transactionId": "txn-7", "status": "SUCCESS"}}
        ).encode()
        signature = compute_signature(body, billing_config.gateway.webhook_secret)

        result = await service.process_webhook(body, signature)

        assert checkout.data.gateway_invoice_id == "txn-7"
        assert result.data.action == WebhookAction.COMPLETED
        status = await service.get_subscription_status("user-1")
        assert status.data.tier == SubscriptionTier.PREMIUM

    async def test_webhook_bad_signature(self, service):
        result = await service.process_webhook(b"{}", "bad")

        assert result.success is False
        assert result.error == "Invalid webhook signature"
        assert result.error_code == "WEBHOOK_SIGNATURE_INVALID"

    async def test_pending_verification_is_retryable(
        self, service, mock_gateway, make_pending_payment
    ):
        payment = await make_pending_payment()
        mock_gateway.find_transaction.return_value = None

        result = await service.verify_and_process_payment("user-1", payment.id)

        assert result.error_code == "PAYMENT_PENDING"
        assert result.retryable is True

    async def test_context_manager_closes_gateway(self, ledger, reconciler, mock_gateway):
        async with BillingService(ledger, reconciler) as service:
            await service.get_subscription_status("user-1")

        mock_gateway.close.assert_awaited_once()

    async def test_from_session_keeps_injected_cache(self, async_session, billing_config):
        cache = TransactionLookupCache(enabled=False)

        service = BillingService.from_session(async_session, config=billing_config, cache=cache)

        assert service.reconciler.cache is cache
        await service.close()

    async def test_from_session_wires_repositories(self, async_session, billing_config, clock):
        service = BillingService.from_session(async_session, config=billing_config, clock=clock)

        result = await service.get_subscription_status("user-9")

        assert result.data.month_year == "2024-01-20"
        assert service.webhooks.secret == billing_config.gateway.webhook_secret
