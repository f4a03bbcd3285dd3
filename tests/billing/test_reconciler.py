"""
Tests for the payment reconciler.

Covers:
- Pending payment creation and gateway id attachment
- Idempotent success and failure reconciliation
- Alternate gateway id fallback
- Upgrade failures after completion
- Checkout creation
- Redirect verification against the gateway
"""

from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import select

from invow.billing.exceptions import (
    GatewayUnavailableError,
    InvalidTierError,
    PaymentFailedError,
    PaymentNotFoundError,
    PaymentPendingError,
    PaymentStateError,
    StorageError,
    SubscriptionInconsistencyError,
)
from invow.billing.models import (
    Customer,
    PaymentStatus,
    PaymentTransactionTable,
    SubscriptionTier,
)
from invow.billing.payments.cache import TransactionLookupCache
from invow.billing.payments.gateway import (
    GatewayInvoice,
    GatewayTransaction,
    GatewayTransactionStatus,
)
from invow.billing.payments.reconciler import PaymentReconciler

pytestmark = pytest.mark.integration


def _transaction(
    status: GatewayTransactionStatus, txn_id: str = "txn-1", method: str | None = None
):
    return GatewayTransaction(id=txn_id, status=status, payment_method=method)


class TestPendingPayments:
    """Test payment creation and gateway id attachment."""

    async def test_create_pending_uses_tier_price(self, reconciler):
        payment = await reconciler.create_pending("user-1", "premium")

        assert payment.status == PaymentStatus.PENDING
        assert payment.tier == SubscriptionTier.PREMIUM
        assert payment.amount == 15000

    @pytest.mark.parametrize("tier", ["free", "platinum"])
    async def test_create_pending_rejects_unpurchasable_tier(self, reconciler, tier):
        with pytest.raises(InvalidTierError):
            await reconciler.create_pending("user-1", tier)

    async def test_attach_same_id_twice_is_noop(self, reconciler, make_pending_payment):
        payment = await make_pending_payment(gateway_invoice_id="txn-1")

        again = await reconciler.attach_gateway_id(payment.id, "txn-1")

        assert again.gateway_invoice_id == "txn-1"

    async def test_attach_different_id_rejected(self, reconciler, make_pending_payment):
        payment = await make_pending_payment(gateway_invoice_id="txn-1")

        with pytest.raises(PaymentStateError):
            await reconciler.attach_gateway_id(payment.id, "txn-2")


class TestReconcileSuccess:
    """Test success reconciliation."""

    async def test_completes_payment_and_upgrades(
        self, reconciler, payment_repo, make_pending_payment, clock
    ):
        payment = await make_pending_payment()

        snapshot = await reconciler.reconcile_success("txn-1", payment_method="QRIS")

        stored = await payment_repo.get_by_id(payment.id)
        assert stored.status == PaymentStatus.COMPLETED
        assert stored.completed_at == clock.now
        assert stored.payment_method == "QRIS"
        assert snapshot.tier == SubscriptionTier.PREMIUM
        assert snapshot.invoice_limit == 200
        assert snapshot.expires_at == clock.now + timedelta(days=30)

    async def test_duplicate_delivery_upgrades_once(self, reconciler, make_pending_payment):
        """Replaying the same success leaves the subscription unchanged."""
        await make_pending_payment()

        first = await reconciler.reconcile_success("txn-1")
        second = await reconciler.reconcile_success("txn-1")

        assert second == first
        assert second.invoice_limit == 200

    async def test_alternate_id_fallback(self, reconciler, make_pending_payment):
        await make_pending_payment(gateway_invoice_id="inv-1")

        snapshot = await reconciler.reconcile_success("unknown-id", alternate_id="inv-1")

        assert snapshot.tier == SubscriptionTier.PREMIUM

    async def test_unknown_payment_is_retryable(self, reconciler):
        with pytest.raises(PaymentNotFoundError) as exc_info:
            await reconciler.reconcile_success("nope", alternate_id="also-nope")

        assert exc_info.value.retryable is True

    async def test_failed_payment_cannot_complete(self, reconciler, make_pending_payment, ledger):
        await make_pending_payment()
        await reconciler.reconcile_failure("txn-1")

        with pytest.raises(PaymentStateError):
            await reconciler.reconcile_success("txn-1")

        assert (await ledger.get_or_create("user-1")).tier == SubscriptionTier.FREE

    async def test_lost_race_skips_upgrade(
        self, reconciler, payment_repo, make_pending_payment, ledger, monkeypatch
    ):
        """When another writer completes first, this call does not upgrade."""
        await make_pending_payment()
        monkeypatch.setattr(payment_repo, "mark_completed", AsyncMock(return_value=False))

        snapshot = await reconciler.reconcile_success("txn-1")

        assert snapshot.tier == SubscriptionTier.FREE
        assert (await ledger.get_or_create("user-1")).tier == SubscriptionTier.FREE

    async def test_upgrade_failure_raises_inconsistency(
        self, reconciler, payment_repo, make_pending_payment, ledger, monkeypatch
    ):
        payment = await make_pending_payment()
        monkeypatch.setattr(
            ledger, "upgrade", AsyncMock(side_effect=StorageError("boom", operation="update"))
        )

        with pytest.raises(SubscriptionInconsistencyError) as exc_info:
            await reconciler.reconcile_success("txn-1")

        assert exc_info.value.user_facing is False
        assert exc_info.value.context["payment_id"] == payment.id
        assert (await payment_repo.get_by_id(payment.id)).status == PaymentStatus.COMPLETED

    async def test_duplicate_snapshot_reflects_current_cycle(
        self, reconciler, make_pending_payment, subscription_repo, clock
    ):
        await make_pending_payment()
        await reconciler.reconcile_success("txn-1")
        await subscription_repo.update("user-1", current_month_count=150)
        clock.advance(days=32)

        snapshot = await reconciler.reconcile_success("txn-1")

        assert snapshot.current_month_count == 0

    async def test_invalidates_cached_lookup(self, reconciler, make_pending_payment, lookup_cache):
        await make_pending_payment()
        loader = AsyncMock(return_value=_transaction(GatewayTransactionStatus.FAILED))
        await lookup_cache.get_transaction("txn-1", loader)
        assert len(lookup_cache) == 1

        await reconciler.reconcile_success("txn-1")

        assert len(lookup_cache) == 0


class TestReconcileFailure:
    """Test failure reconciliation."""

    async def test_marks_pending_payment_failed(self, reconciler, make_pending_payment, clock):
        await make_pending_payment()

        payment = await reconciler.reconcile_failure("txn-1")

        assert payment.status == PaymentStatus.FAILED
        assert payment.verified_at == clock.now

    async def test_completed_payment_stays_completed(self, reconciler, make_pending_payment):
        await make_pending_payment()
        await reconciler.reconcile_success("txn-1")

        payment = await reconciler.reconcile_failure("txn-1")

        assert payment.status == PaymentStatus.COMPLETED

    async def test_unknown_payment(self, reconciler):
        with pytest.raises(PaymentNotFoundError):
            await reconciler.reconcile_failure("nope")


class TestCreateInvoice:
    """Test checkout creation."""

    async def test_creates_gateway_invoice(self, reconciler, mock_gateway, payment_repo, clock):
        mock_gateway.create_invoice.return_value = GatewayInvoice(
            transaction_id="txn-9", payment_url="https://pay.test/txn-9", invoice_id="inv-9"
        )
        customer = Customer(name="Budi", email="budi@example.com", mobile="0812")

        session = await reconciler.create_invoice("user-1", "premium", customer)

        assert session.gateway_invoice_id == "txn-9"
        assert session.payment_url == "https://pay.test/txn-9"
        assert session.amount == 15000
        assert session.currency == "IDR"
        assert session.tier == SubscriptionTier.PREMIUM
        mock_gateway.create_invoice.assert_awaited_once_with(
            customer=customer,
            amount=15000,
            description="Premium Tier Subscription - 30 Days",
            expires_at=clock.now + timedelta(days=30),
        )
        stored = await payment_repo.get_by_id(session.payment_id)
        assert stored.gateway_invoice_id == "txn-9"

    async def test_gateway_failure_leaves_pending_payment(
        self, reconciler, mock_gateway, async_session
    ):
        mock_gateway.create_invoice.side_effect = GatewayUnavailableError("down", status_code=503)
        customer = Customer(name="Budi", email="budi@example.com")

        with pytest.raises(GatewayUnavailableError):
            await reconciler.create_invoice("user-1", "premium", customer)

        rows = (await async_session.execute(select(PaymentTransactionTable))).scalars().all()
        assert len(rows) == 1
        assert rows[0].status == PaymentStatus.PENDING.value
        assert rows[0].gateway_invoice_id is None

    @pytest.mark.parametrize("tier", ["free", "platinum"])
    async def test_unpurchasable_tier_not_sold(self, reconciler, mock_gateway, async_session, tier):
        customer = Customer(name="Budi", email="budi@example.com")

        with pytest.raises(InvalidTierError):
            await reconciler.create_invoice("user-1", tier, customer)

        mock_gateway.create_invoice.assert_not_awaited()
        rows = (await async_session.execute(select(PaymentTransactionTable))).scalars().all()
        assert rows == []


class TestVerifyAndProcessPayment:
    """Test redirect verification."""

    async def test_paid_transaction_completes_payment(
        self, reconciler, mock_gateway, make_pending_payment, payment_repo
    ):
        payment = await make_pending_payment()
        mock_gateway.find_transaction.return_value = _transaction(
            GatewayTransactionStatus.PAID, method="VA"
        )

        snapshot = await reconciler.verify_and_process_payment("user-1", payment.id)

        assert snapshot.tier == SubscriptionTier.PREMIUM
        stored = await payment_repo.get_by_id(payment.id)
        assert stored.status == PaymentStatus.COMPLETED
        assert stored.payment_method == "VA"
        mock_gateway.find_transaction.assert_awaited_once_with("txn-1")

    async def test_failed_transaction(
        self, reconciler, mock_gateway, make_pending_payment, payment_repo
    ):
        payment = await make_pending_payment()
        mock_gateway.find_transaction.return_value = _transaction(GatewayTransactionStatus.FAILED)

        with pytest.raises(PaymentFailedError):
            await reconciler.verify_and_process_payment("user-1", payment.id)

        assert (await payment_repo.get_by_id(payment.id)).status == PaymentStatus.FAILED

    @pytest.mark.parametrize(
        "transaction", [None, _transaction(GatewayTransactionStatus.PENDING)]
    )
    async def test_unsettled_transaction_is_pending(
        self, reconciler, mock_gateway, make_pending_payment, transaction
    ):
        payment = await make_pending_payment()
        mock_gateway.find_transaction.return_value = transaction

        with pytest.raises(PaymentPendingError) as exc_info:
            await reconciler.verify_and_process_payment("user-1", payment.id)

        assert exc_info.value.retryable is True

    async def test_other_users_payment_not_found(self, reconciler, make_pending_payment):
        payment = await make_pending_payment(user_id="user-1")

        with pytest.raises(PaymentNotFoundError):
            await reconciler.verify_and_process_payment("user-2", payment.id)

    async def test_payment_without_gateway_id(self, reconciler, make_pending_payment, mock_gateway):
        payment = await make_pending_payment(gateway_invoice_id=None)

        with pytest.raises(PaymentStateError):
            await reconciler.verify_and_process_payment("user-1", payment.id)

        mock_gateway.find_transaction.assert_not_awaited()

    async def test_completed_payment_skips_gateway(
        self, reconciler, make_pending_payment, mock_gateway
    ):
        payment = await make_pending_payment()
        await reconciler.reconcile_success("txn-1")

        snapshot = await reconciler.verify_and_process_payment("user-1", payment.id)

        assert snapshot.tier == SubscriptionTier.PREMIUM
        mock_gateway.find_transaction.assert_not_awaited()

    async def test_failed_payment_raises_without_gateway(
        self, reconciler, make_pending_payment, mock_gateway
    ):
        payment = await make_pending_payment()
        await reconciler.reconcile_failure("txn-1")

        with pytest.raises(PaymentFailedError):
            await reconciler.verify_and_process_payment("user-1", payment.id)

        mock_gateway.find_transaction.assert_not_awaited()


class TestCollaborators:
    """Test injected collaborators and their lifecycle."""

    async def test_empty_injected_cache_is_kept(self, reconciler, lookup_cache):
        assert len(lookup_cache) == 0
        assert reconciler.cache is lookup_cache

    async def test_disabled_cache_is_kept(
        self, ledger, payment_repo, mock_gateway, make_pending_payment, billing_config
    ):
        cache = TransactionLookupCache(enabled=False)
        reconciler = PaymentReconciler(
            ledger, payment_repo, gateway=mock_gateway, cache=cache, config=billing_config
        )
        payment = await make_pending_payment()
        mock_gateway.find_transaction.return_value = _transaction(GatewayTransactionStatus.PENDING)

        for _ in range(2):
            with pytest.raises(PaymentPendingError):
                await reconciler.verify_and_process_payment("user-1", payment.id)

        assert reconciler.cache is cache
        assert mock_gateway.find_transaction.await_count == 2
        assert len(cache) == 0

    async def test_close_closes_gateway(self, reconciler, mock_gateway):
        await reconciler.close()

        mock_gateway.close.assert_awaited_once()
