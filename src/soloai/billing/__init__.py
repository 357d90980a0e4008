"""Billing types, errors and subscription reconciliation."""

from soloai.billing.errors import (
    BillingError,
    EligibilityError,
    OperationFailedError,
    ProviderError,
    ProviderUnavailableError,
    UnauthorizedError,
)
from soloai.billing.types import (
    BillingHistoryPage,
    BillingOverview,
    CancelResult,
    PortalSession,
    SubscriptionData,
    subscription_from_user,
)

__all__ = [
    "BillingError",
    "BillingHistoryPage",
    "BillingOverview",
    "CancelResult",
    "EligibilityError",
    "OperationFailedError",
    "PortalSession",
    "ProviderError",
    "ProviderUnavailableError",
    "SubscriptionData",
    "UnauthorizedError",
    "subscription_from_user",
]
