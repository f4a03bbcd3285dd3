"""
Invow billing core.

Subscription tiers with monthly invoice quotas, billing cycles anchored on
the subscription start day, and idempotent reconciliation of gateway
payments into subscription upgrades.
"""

__version__ = "1.0.0"


def get_version() -> str:
    """Get package version."""
    return __version__
