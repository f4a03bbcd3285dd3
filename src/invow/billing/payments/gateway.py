"""
Payment gateway client.

Thin async client for the hosted checkout gateway (Mayar): creates
invoices for tier purchases and lists transactions so redirects can be
verified against the gateway's own record.
"""

from datetime import datetime
from enum import Enum
from typing import Any

import httpx
import structlog
from pydantic import BaseModel, Field
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from invow.billing.config import GatewayConfig, get_billing_config
from invow.billing.exceptions import (
    BillingConfigurationError,
    GatewayError,
    GatewayRateLimitError,
    GatewayRequestError,
    GatewayUnavailableError,
)
from invow.billing.models import Customer

logger = structlog.get_logger(__name__)


class GatewayTransactionStatus(str, Enum):
    """Gateway transaction status, normalised."""

    PAID = "paid"
    FAILED = "failed"
    PENDING = "pending"


_PAID_STATUSES = {"success", "paid", "completed", "settled", "settlement"}
_FAILED_STATUSES = {"failed", "expired", "cancelled", "canceled", "denied"}


def normalize_status(raw: Any) -> GatewayTransactionStatus:
    value = str(raw or "").strip().lower()
    if value in _PAID_STATUSES:
        return GatewayTransactionStatus.PAID
    if value in _FAILED_STATUSES:
        return GatewayTransactionStatus.FAILED
    return GatewayTransactionStatus.PENDING


class GatewayInvoice(BaseModel):
    """Invoice created at the gateway."""

    transaction_id: str = Field(description="Id the gateway sends back in webhooks")
    payment_url: str = Field(description="Hosted checkout link")
    invoice_id: str | None = Field(None, description="Alternate id of the invoice itself")


class GatewayTransaction(BaseModel):
    """Transaction as listed by the gateway."""

    id: str
    status: GatewayTransactionStatus
    raw_status: str | None = None
    alternate_ids: list[str] = Field(default_factory=list)
    amount: int | None = None
    payment_method: str | None = None

    def matches(self, invoice_id: str) -> bool:
        return invoice_id == self.id or invoice_id in self.alternate_ids

    @classmethod
    def from_api(cls, item: dict[str, Any]) -> "GatewayTransaction":
        ids = [
            str(item[key])
            for key in ("paymentLinkTransactionId", "transactionId", "id", "paymentLinkId")
            if item.get(key)
        ]
        amount = item.get("amount") or item.get("credit")
        return cls(
            id=ids[0] if ids else "",
            status=normalize_status(item.get("status")),
            raw_status=str(item.get("status")) if item.get("status") is not None else None,
            alternate_ids=ids[1:],
            amount=int(amount) if isinstance(amount, (int, float)) else None,
            payment_method=item.get("paymentMethod") or item.get("paymentType"),
        )


class PaymentGatewayClient:
    """Async client for the payment gateway HTTP API."""

    def __init__(
        self,
        config: GatewayConfig | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """
        Initialize the gateway client.

        Args:
            config: Gateway settings; defaults to the global billing config
            transport: Custom httpx transport, e.g. a mock transport in tests
        """
        self.config = config or get_billing_config().gateway
        self.base_url = self.config.api_url.rstrip("/")
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def is_configured(self) -> bool:
        return bool(self.config.api_key)

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if not self.is_configured:
            raise BillingConfigurationError(
                "Payment gateway API key is not configured", config_key="gateway.api_key"
            )

        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers={
                    "Content-Type": "application/json",
                    "Accept": "application/json",
                    "Authorization": f"Bearer {self.config.api_key}",
                },
                timeout=httpx.Timeout(self.config.timeout_seconds),
                transport=self._transport,
            )

        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def _send(
        self,
        method: str,
        path: str,
        data: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        client = await self._get_client()

        try:
            response = await client.request(method=method, url=path, json=data, params=params)
        except httpx.TimeoutException as e:
            logger.warning("Gateway request timeout", path=path, error=str(e))
            raise GatewayUnavailableError(f"Gateway timeout: {path}") from e
        except httpx.RequestError as e:
            logger.warning("Gateway request error", path=path, error=str(e))
            raise GatewayUnavailableError(f"Gateway request failed: {e}") from e

        if response.status_code == 429:
            retry_after = response.headers.get("Retry-After")
            raise GatewayRateLimitError(
                "Gateway rate limit exceeded",
                retry_after=float(retry_after) if retry_after and retry_after.isdigit() else None,
            )

        if response.status_code >= 500:
            raise GatewayUnavailableError(
                f"Gateway error {response.status_code} on {path}", status_code=response.status_code
            )

        if response.status_code >= 400:
            raise GatewayRequestError(
                f"Gateway rejected {method} {path}",
                status_code=response.status_code,
                body=response.text,
            )

        try:
            payload = response.json()
        except ValueError as e:
            raise GatewayError(f"Gateway returned a non-JSON body for {path}") from e
        if not isinstance(payload, dict):
            raise GatewayError(f"Gateway returned an unexpected body for {path}")
        return payload

    async def _request(
        self,
        method: str,
        path: str,
        data: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """
        Make an HTTP request to the gateway, retrying transient failures.

        Network errors and 5xx responses are retried with exponential backoff;
        4xx responses (including 429) are raised immediately.

        Raises:
            GatewayUnavailableError: Still failing after the last attempt
            GatewayRequestError: Request rejected by the gateway
            BillingConfigurationError: No API key configured
        """
        retrying = AsyncRetrying(
            retry=retry_if_exception_type(GatewayUnavailableError),
            stop=stop_after_attempt(self.config.max_retries),
            wait=wait_exponential(
                multiplier=self.config.retry_base_delay,
                min=self.config.retry_base_delay,
                max=self.config.retry_max_delay,
            ),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.info(
                        "Retrying gateway request",
                        path=path,
                        attempt=attempt.retry_state.attempt_number,
                    )
                return await self._send(method, path, data=data, params=params)
        raise GatewayUnavailableError(f"Gateway request failed: {path}")  # pragma: no cover

    async def create_invoice(
        self,
        customer: Customer,
        amount: int,
        description: str,
        expires_at: datetime,
    ) -> GatewayInvoice:
        """
        Create a hosted-checkout invoice.

        Args:
            customer: Buyer details
            amount: Price in minor currency units
            description: Line item description, e.g. "Premium Tier Subscription - 30 Days"
            expires_at: When the checkout link stops accepting payments

        Returns:
            The created gateway invoice
        """
        body = {
            "name": customer.name,
            "email": customer.email,
            "mobile": customer.mobile,
            "redirectUrl": self.config.redirect_url,
            "description": description,
            "expiredAt": expires_at.isoformat(),
            "items": [{"quantity": 1, "rate": amount, "description": description}],
        }
        payload = await self._request("POST", "/invoice/create", data=body)

        data = payload.get("data") or {}
        transaction_id = data.get("transactionId")
        link = data.get("link")
        if not transaction_id or not link:
            raise GatewayError("Gateway response is missing transactionId or link")

        invoice = GatewayInvoice(
            transaction_id=str(transaction_id),
            payment_url=str(link),
            invoice_id=str(data["id"]) if data.get("id") else None,
        )
        logger.info("Gateway invoice created", gateway_invoice_id=invoice.transaction_id)
        return invoice

    async def list_transactions(
        self, page: int = 1, page_size: int | None = None
    ) -> list[GatewayTransaction]:
        """List recent gateway transactions, newest first as the gateway returns them."""
        params = {"page": page, "pageSize": page_size or self.config.transactions_page_size}
        payload = await self._request("GET", "/transactions", params=params)

        items = payload.get("data") or []
        if not isinstance(items, list):
            raise GatewayError("Gateway transaction listing is not a list")
        return [GatewayTransaction.from_api(item) for item in items if isinstance(item, dict)]

    async def find_transaction(self, invoice_id: str) -> GatewayTransaction | None:
        """Find a transaction whose id or alternate ids match ``invoice_id``."""
        for transaction in await self.list_transactions():
            if transaction.matches(invoice_id):
                return transaction
        return None


__all__ = [
    "GatewayTransactionStatus",
    "GatewayInvoice",
    "GatewayTransaction",
    "PaymentGatewayClient",
    "normalize_status",
]
