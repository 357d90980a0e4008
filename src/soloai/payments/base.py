"""Abstract payment provider interface and normalized provider rows."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from soloai.billing.types import BillingHistoryPage, PaymentMethodData, ProviderAccount
from soloai.db.models import PaymentProvider


@dataclass
class LiveSubscription:
    """Subscription state as reported by the provider."""

    subscription_id: str
    status: str | None  # provider's own status string
    current_period_end: datetime | None  # UTC
    cancel_at_period_end: bool
    trial_end: datetime | None = None  # UTC
    payment_method: PaymentMethodData | None = None
    next_billing_amount: int | None = None  # minor units
    currency: str | None = None


def from_timestamp(value) -> Optional[datetime]:
    """Convert a Unix timestamp to an aware UTC datetime; falsy -> None."""
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def from_iso(value) -> Optional[datetime]:
    """Parse an ISO-8601 string (``Z`` suffix allowed); falsy -> None."""
    if not value:
        return None
    parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class PaymentProviderAdapter(ABC):
    """Capability interface every payment provider implements."""

    provider: PaymentProvider

    @abstractmethod
    async def fetch_live_data(self, subscription_id: str) -> Optional[LiveSubscription]:
        """
        Fetch live subscription state for enrichment.

        Never raises: provider errors are logged and reported as None so
        callers can fall back to stored values.

        Args:
            subscription_id: Provider subscription identifier

        Returns:
            LiveSubscription, or None on any failure
        """
        pass

    @abstractmethod
    async def cancel_at_period_end(self, subscription_id: str) -> LiveSubscription:
        """
        Schedule the subscription to end at the current period end.

        The subscription stays usable until then. Safe to call twice.

        Raises:
            ProviderError: On provider failure
        """
        pass

    @abstractmethod
    async def reactivate(self, subscription_id: str) -> LiveSubscription:
        """
        Undo a scheduled cancellation.

        Raises:
            ProviderError: On provider failure
        """
        pass

    @abstractmethod
    async def get_portal_url(self, account: ProviderAccount, return_url: str) -> str:
        """
        Get a URL to the provider's customer portal.

        Args:
            account: The user's identifiers with this provider
            return_url: Where the portal sends the user back to

        Raises:
            ProviderError: On provider failure
        """
        pass

    @abstractmethod
    async def list_invoices(
        self,
        account: ProviderAccount,
        limit: int,
        starting_after: str | None = None,
    ) -> BillingHistoryPage:
        """
        List invoices, newest first, using the provider's own pagination.

        Args:
            account: The user's identifiers with this provider
            limit: Page size (already clamped by the caller)
            starting_after: Cursor from the previous page, if any

        Raises:
            ProviderError: On provider failure
        """
        pass
