"""Payment provider adapters and webhook processing.

Provides the Stripe and LemonSqueezy clients behind one capability
interface, plus the webhook handlers that keep user records in sync.
"""

import logging

from soloai.config.settings import AppConfig
from soloai.db.models import PaymentProvider
from soloai.payments.base import LiveSubscription, PaymentProviderAdapter
from soloai.payments.lemonsqueezy import LemonSqueezyAdapter
from soloai.payments.stripe_adapter import StripeAdapter

logger = logging.getLogger(__name__)


def build_adapters(config: AppConfig) -> dict[PaymentProvider, PaymentProviderAdapter]:
    """
    Construct the adapters for every configured provider.

    Called once at startup. Providers without credentials are left out and
    logged; requests that need them answer 503.
    """
    adapters: dict[PaymentProvider, PaymentProviderAdapter] = {}

    if config.stripe_configured:
        adapters[PaymentProvider.STRIPE] = StripeAdapter(
            config.stripe_secret.get_secret_value()
        )
    else:
        logger.warning("Stripe is not configured (STRIPE_SECRET missing)")

    if config.lemonsqueezy_configured:
        adapters[PaymentProvider.LEMONSQUEEZY] = LemonSqueezyAdapter(
            api_key=config.lemonsqueezy_api_key.get_secret_value(),
            store_id=config.lemonsqueezy_store_id,
            base_url=config.lemonsqueezy_api_base_url,
            timeout_seconds=config.provider_timeout_seconds,
        )
    else:
        logger.warning(
            "LemonSqueezy is not configured "
            "(LEMONSQUEEZY_API_KEY or LEMONSQUEEZY_STORE_ID missing)"
        )

    logger.info(
        f"Payment providers ready: {', '.join(p.value for p in adapters) or 'none'}"
    )
    return adapters


__all__ = [
    "LemonSqueezyAdapter",
    "LiveSubscription",
    "PaymentProviderAdapter",
    "StripeAdapter",
    "build_adapters",
]
