"""
Billing module configuration
"""

from pydantic import BaseModel, ConfigDict, Field

from invow.billing.models import SubscriptionTier


class TierConfig(BaseModel):
    """Quota and price of a single subscription tier"""

    model_config = ConfigDict(frozen=True)

    tier: SubscriptionTier = Field(..., description="Tier identifier")
    display_name: str = Field(..., description="Name shown on checkout pages")
    invoice_limit: int = Field(..., ge=0, description="Invoices granted per cycle or purchase")
    price: int = Field(0, ge=0, description="Price in minor currency units")

    @property
    def purchasable(self) -> bool:
        return self.price > 0


class GatewayConfig(BaseModel):
    """Payment gateway configuration"""

    model_config = ConfigDict()

    api_url: str = Field("https://api.mayar.id", description="Gateway API base URL")
    api_key: str | None = Field(None, description="Gateway API key")
    webhook_secret: str | None = Field(None, description="Webhook signing secret")
    redirect_url: str = Field(
        "http://localhost:3000/dashboard?payment=success",
        description="Post-checkout redirect",
    )
    timeout_seconds: float = Field(30.0, description="HTTP timeout")
    max_retries: int = Field(3, description="Attempts for retryable calls")
    retry_base_delay: float = Field(1.0, description="Initial backoff in seconds")
    retry_max_delay: float = Field(10.0, description="Backoff ceiling in seconds")
    transactions_page_size: int = Field(50, description="Page size for transaction listings")
    cache_enabled: bool = Field(True, description="Cache transaction lookups")
    cache_ttl_seconds: int = Field(30, description="Lookup cache TTL")
    cache_max_entries: int = Field(1000, description="Lookup cache size")


def _default_tiers() -> dict[SubscriptionTier, TierConfig]:
    return {
        SubscriptionTier.FREE: TierConfig(
            tier=SubscriptionTier.FREE, display_name="Free", invoice_limit=10, price=0
        ),
        SubscriptionTier.PREMIUM: TierConfig(
            tier=SubscriptionTier.PREMIUM, display_name="Premium", invoice_limit=200, price=15000
        ),
    }


class BillingConfig(BaseModel):
    """Main billing configuration"""

    model_config = ConfigDict()

    tiers: dict[SubscriptionTier, TierConfig] = Field(default_factory=_default_tiers)
    currency: str = Field("IDR", description="Billing currency")
    subscription_period_days: int = Field(30, gt=0, description="Purchased period length")
    expiring_soon_days: int = Field(7, ge=0, description="Expiring-soon window in days")
    gateway: GatewayConfig = Field(default_factory=GatewayConfig)  # type: ignore[arg-type]

    @property
    def free_tier(self) -> TierConfig:
        return self.tiers[SubscriptionTier.FREE]

    @property
    def free_invoice_limit(self) -> int:
        return self.free_tier.invoice_limit

    def get_tier(self, tier: str | SubscriptionTier) -> TierConfig | None:
        """Look up a tier by value; unknown tiers return None."""
        try:
            return self.tiers.get(SubscriptionTier(tier))
        except ValueError:
            return None

    @classmethod
    def from_env(cls) -> "BillingConfig":
        """Create configuration from settings"""
        from invow.settings import settings

        billing = settings.billing
        tiers = {
            SubscriptionTier.FREE: TierConfig(
                tier=SubscriptionTier.FREE,
                display_name="Free",
                invoice_limit=billing.free_invoice_limit,
                price=0,
            ),
            SubscriptionTier.PREMIUM: TierConfig(
                tier=SubscriptionTier.PREMIUM,
                display_name="Premium",
                invoice_limit=billing.premium_invoice_limit,
                price=billing.premium_price,
            ),
        }

        return cls(
            tiers=tiers,
            currency=billing.currency,
            subscription_period_days=billing.subscription_period_days,
            expiring_soon_days=billing.expiring_soon_days,
            gateway=GatewayConfig(**settings.gateway.model_dump()),
        )


# Global configuration instance
_billing_config: BillingConfig | None = None


def get_billing_config() -> BillingConfig:
    """Get the global billing configuration instance"""
    global _billing_config
    if _billing_config is None:
        _billing_config = BillingConfig.from_env()
    return _billing_config


def set_billing_config(config: BillingConfig | None) -> None:
    """Set the global billing configuration instance"""
    global _billing_config
    _billing_config = config
