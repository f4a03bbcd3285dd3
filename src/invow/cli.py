#!/usr/bin/env python
"""
CLI management commands for Invow billing.
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

import click
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from invow import get_version
from invow.billing.admin import (
    BillingAdminService,
    SubscriptionFilters,
    SubscriptionMetrics,
    SubscriptionPage,
    SubscriptionState,
)
from invow.billing.models import Subscription, SubscriptionTier
from invow.billing.repositories import SQLAlchemyPaymentRepository
from invow.billing.results import ServiceResult
from invow.billing.service import BillingService
from invow.db import build_async_engine, create_all_tables_async

T = TypeVar("T")

CLI_ACTOR = "cli"


@dataclass
class CLIDependencies:
    """Bundle of injectable dependencies used by CLI commands."""

    engine_factory: Callable[[], AsyncEngine]
    init_db: Callable[[AsyncEngine], Awaitable[None]]
    service_factory: Callable[[AsyncSession], BillingService]


def _get_cli_dependencies() -> CLIDependencies:
    """Return the default dependency bundle for CLI commands."""
    return CLIDependencies(
        engine_factory=build_async_engine,
        init_db=create_all_tables_async,
        service_factory=BillingService.from_session,
    )


def _run_with_session(work: Callable[[AsyncSession], Awaitable[T]]) -> T:
    """Run ``work`` on a fresh engine and session, disposing both afterwards."""
    deps = _get_cli_dependencies()

    async def _inner() -> T:
        engine = deps.engine_factory()
        try:
            session_maker = async_sessionmaker(engine, expire_on_commit=False)
            async with session_maker() as session:
                return await work(session)
        finally:
            await engine.dispose()

    return asyncio.run(_inner())


def _unwrap(result: ServiceResult[T]) -> T:
    if not result.success or result.data is None:
        raise click.ClickException(result.error or "Operation failed")
    return result.data


def _echo_subscription(sub: Subscription) -> None:
    click.echo(f"User:           {sub.user_id}")
    click.echo(f"Tier:           {sub.tier.value}")
    click.echo(f"Invoices:       {sub.current_month_count}/{sub.invoice_limit}")
    click.echo(f"Cycle:          {sub.month_year}")
    click.echo(f"Started:        {sub.subscription_start_date.isoformat()}")
    expires = sub.subscription_end_date.isoformat() if sub.subscription_end_date else "never"
    click.echo(f"Expires:        {expires}")


@click.group()
@click.version_option(version=get_version(), prog_name="invow-billing")
def cli() -> None:
    """Invow billing CLI."""
    pass


@cli.command()
def init_database() -> None:
    """Create the billing tables."""
    deps = _get_cli_dependencies()
    click.echo("Initializing database...")

    async def _init() -> None:
        engine = deps.engine_factory()
        try:
            await deps.init_db(engine)
        finally:
            await engine.dispose()

    asyncio.run(_init())
    click.echo("Database initialized successfully!")


@cli.command()
@click.argument("user_id")
def subscription_status(user_id: str) -> None:
    """Show a user's tier, quota usage and reset date."""
    deps = _get_cli_dependencies()

    async def _status(session: AsyncSession) -> Any:
        async with deps.service_factory(session) as service:
            return await service.get_subscription_status(user_id)

    status = _unwrap(_run_with_session(_status))
    click.echo(f"User:           {status.user_id}")
    click.echo(f"Tier:           {status.tier.value}")
    click.echo(f"Invoices:       {status.current_month_count}/{status.invoice_limit}")
    click.echo(f"Remaining:      {status.remaining_invoices}")
    click.echo(f"Cycle:          {status.month_year}")
    click.echo(f"Resets:         {status.reset_date.isoformat()}")


@cli.command()
@click.argument("user_id")
@click.option(
    "--tier",
    type=click.Choice([t.value for t in SubscriptionTier if t != SubscriptionTier.FREE]),
    default=SubscriptionTier.PREMIUM.value,
    show_default=True,
    help="Tier to grant",
)
def upgrade(user_id: str, tier: str) -> None:
    """Grant a paid tier without a payment."""
    deps = _get_cli_dependencies()

    async def _upgrade(session: AsyncSession) -> Any:
        async with deps.service_factory(session) as service:
            return await service.upgrade(user_id, tier, actor=CLI_ACTOR)

    _echo_subscription(_unwrap(_run_with_session(_upgrade)))
    click.echo(f"Upgraded {user_id} to {tier}.")


@cli.command()
@click.argument("user_id")
def downgrade(user_id: str) -> None:
    """Move a user back to the free tier."""
    deps = _get_cli_dependencies()

    async def _downgrade(session: AsyncSession) -> Any:
        async with deps.service_factory(session) as service:
            return await service.downgrade(user_id, actor=CLI_ACTOR)

    _echo_subscription(_unwrap(_run_with_session(_downgrade)))
    click.echo(f"Downgraded {user_id} to free.")


@cli.command()
@click.argument("user_id")
@click.option("--days", type=int, required=True, help="Days to add to the end date")
def extend(user_id: str, days: int) -> None:
    """Extend a user's subscription end date."""
    deps = _get_cli_dependencies()

    async def _extend(session: AsyncSession) -> Any:
        async with deps.service_factory(session) as service:
            return await service.extend(user_id, days, actor=CLI_ACTOR)

    _echo_subscription(_unwrap(_run_with_session(_extend)))
    click.echo(f"Extended {user_id} by {days} days.")


@cli.command()
@click.argument("user_id")
def reset_counter(user_id: str) -> None:
    """Reset a user's invoice counter for the current cycle."""
    deps = _get_cli_dependencies()

    async def _reset(session: AsyncSession) -> Any:
        async with deps.service_factory(session) as service:
            return await service.reset_counter(user_id, actor=CLI_ACTOR)

    _echo_subscription(_unwrap(_run_with_session(_reset)))
    click.echo(f"Invoice counter reset for {user_id}.")


@cli.command()
@click.argument("gateway_invoice_id")
@click.option("--gateway/--no-gateway", default=False, help="Also query the payment gateway")
def payment_status(gateway_invoice_id: str, gateway: bool) -> None:
    """Show the local payment record for a gateway invoice."""
    deps = _get_cli_dependencies()

    async def _lookup(session: AsyncSession) -> tuple[Any, Any]:
        payment = await SQLAlchemyPaymentRepository(session).find_by_gateway_id(gateway_invoice_id)
        transaction = None
        if gateway:
            async with deps.service_factory(session) as service:
                transaction = await service.reconciler.gateway.find_transaction(gateway_invoice_id)
        return payment, transaction

    payment, transaction = _run_with_session(_lookup)
    if payment is None:
        raise click.ClickException(f"No payment found for gateway invoice {gateway_invoice_id}")

    click.echo(f"Payment:        {payment.id}")
    click.echo(f"User:           {payment.user_id}")
    click.echo(f"Tier:           {payment.tier.value}")
    click.echo(f"Amount:         {payment.amount}")
    click.echo(f"Status:         {payment.status.value}")
    if payment.completed_at:
        click.echo(f"Completed:      {payment.completed_at.isoformat()}")
    if gateway:
        click.echo(f"Gateway status: {transaction.status.value if transaction else 'not found'}")


@cli.command()
@click.argument("gateway_invoice_id")
@click.option("--payment-method", default=None, help="Payment method reported by the gateway")
@click.confirmation_option(prompt="Mark this payment as paid and upgrade the subscription?")
def process_payment(gateway_invoice_id: str, payment_method: str | None) -> None:
    """Manually reconcile a payment the gateway reports as paid."""
    deps = _get_cli_dependencies()

    async def _process(session: AsyncSession) -> Any:
        async with deps.service_factory(session) as service:
            return await service.reconcile_payment(
                gateway_invoice_id, payment_method=payment_method, actor=CLI_ACTOR
            )

    snapshot = _unwrap(_run_with_session(_process))
    expires = snapshot.expires_at.isoformat() if snapshot.expires_at else "never"
    click.echo(f"Payment {gateway_invoice_id} reconciled.")
    click.echo(f"Tier:           {snapshot.tier.value}")
    click.echo(f"Invoices:       {snapshot.current_month_count}/{snapshot.invoice_limit}")
    click.echo(f"Expires:        {expires}")


@cli.command()
@click.option("--tier", type=click.Choice([t.value for t in SubscriptionTier]), default=None)
@click.option(
    "--status", type=click.Choice([s.value for s in SubscriptionState]), default=None
)
@click.option("--page", type=click.IntRange(min=1), default=1, show_default=True)
@click.option("--page-size", type=click.IntRange(1, 100), default=20, show_default=True)
def list_subscriptions(tier: str | None, status: str | None, page: int, page_size: int) -> None:
    """List subscriptions, newest start date first."""
    filters = SubscriptionFilters(tier=tier, status=status, page=page, page_size=page_size)

    async def _list(session: AsyncSession) -> SubscriptionPage:
        return await BillingAdminService(session).list_subscriptions(filters)

    result = _run_with_session(_list)
    click.echo(f"{result.total} subscriptions (page {result.page})")
    for item in result.subscriptions:
        flag = " LIMIT EXCEEDED" if item.limit_exceeded else ""
        click.echo(
            f"{item.user_id:<24} {item.tier.value:<8} {item.status.value:<14} "
            f"{item.current_month_count}/{item.invoice_limit}{flag}"
        )


@cli.command()
def subscription_metrics() -> None:
    """Show subscription and revenue totals."""

    async def _metrics(session: AsyncSession) -> SubscriptionMetrics:
        return await BillingAdminService(session).get_subscription_metrics()

    metrics = _run_with_session(_metrics)
    for tier, count in metrics.users_by_tier.items():
        click.echo(f"{tier.capitalize() + ' users:':<16}{count}")
    click.echo(f"Active paid:    {metrics.active_paid}")
    click.echo(f"Expiring soon:  {metrics.expiring_soon}")
    click.echo(f"Expired paid:   {metrics.expired_paid}")
    click.echo(f"Revenue:        {metrics.revenue} {metrics.currency}")
    click.echo(
        f"Payments:       {metrics.completed_payments} completed, "
        f"{metrics.pending_payments} pending, {metrics.failed_payments} failed"
    )


if __name__ == "__main__":
    cli()
