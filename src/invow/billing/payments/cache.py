"""
Gateway transaction lookup cache.

Short-lived, process-local cache in front of gateway transaction lookups.
Concurrent lookups for the same invoice share a single gateway call.
Advisory only: payment state is always decided by the database.
"""

import asyncio
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any

import structlog
from cachetools import TTLCache  # noqa: PGH003

from invow.billing.config import get_billing_config
from invow.billing.payments.gateway import GatewayTransaction, GatewayTransactionStatus

logger = structlog.get_logger(__name__)

Loader = Callable[[str], Awaitable[GatewayTransaction | None]]


class TransactionCacheMetrics:
    """Metrics collector for lookup cache operations."""

    def __init__(self) -> None:
        self.hits = 0
        self.misses = 0
        self.shared = 0
        self.invalidations = 0
        self.last_reset = datetime.now(UTC)

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "shared": self.shared,
            "invalidations": self.invalidations,
            "hit_rate": self.hit_rate,
            "last_reset": self.last_reset.isoformat(),
        }


class TransactionLookupCache:
    """TTL cache plus in-flight request sharing for gateway lookups."""

    def __init__(self, ttl_seconds: int = 30, max_entries: int = 1000, enabled: bool = True):
        self.enabled = enabled
        self._cache: TTLCache[str, GatewayTransaction] = TTLCache(
            maxsize=max_entries, ttl=ttl_seconds
        )
        self._inflight: dict[str, asyncio.Task[GatewayTransaction | None]] = {}
        self.metrics = TransactionCacheMetrics()

    async def get_transaction(self, invoice_id: str, loader: Loader) -> GatewayTransaction | None:
        """
        Return the gateway transaction for ``invoice_id``.

        Only settled transactions (paid or failed) are cached; pending ones
        and misses are looked up again on the next call.
        """
        if not self.enabled:
            return await loader(invoice_id)

        cached = self._cache.get(invoice_id)
        if cached is not None:
            self.metrics.hits += 1
            return cached

        task = self._inflight.get(invoice_id)
        if task is not None:
            self.metrics.shared += 1
            return await asyncio.shield(task)

        self.metrics.misses += 1
        task = asyncio.ensure_future(loader(invoice_id))
        self._inflight[invoice_id] = task
        try:
            transaction = await task
        finally:
            self._inflight.pop(invoice_id, None)

        if transaction is not None and transaction.status != GatewayTransactionStatus.PENDING:
            self._cache[invoice_id] = transaction
        return transaction

    def invalidate(self, invoice_id: str | None = None) -> None:
        """Drop one entry, or everything when no id is given."""
        if invoice_id is None:
            self._cache.clear()
        else:
            self._cache.pop(invoice_id, None)
        self.metrics.invalidations += 1
        logger.debug("Transaction cache invalidated", invoice_id=invoice_id)

    def __len__(self) -> int:
        return len(self._cache)


# Global cache instance
_transaction_cache: TransactionLookupCache | None = None


def get_transaction_cache() -> TransactionLookupCache:
    """Get the process-wide lookup cache, built from billing configuration."""
    global _transaction_cache
    if _transaction_cache is None:
        gateway = get_billing_config().gateway
        _transaction_cache = TransactionLookupCache(
            ttl_seconds=gateway.cache_ttl_seconds,
            max_entries=gateway.cache_max_entries,
            enabled=gateway.cache_enabled,
        )
    return _transaction_cache


__all__ = [
    "Loader",
    "TransactionCacheMetrics",
    "TransactionLookupCache",
    "get_transaction_cache",
]
