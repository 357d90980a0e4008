"""Billing types and helpers for subscription and payment management.

The JSON shapes produced by ``to_json`` use camelCase keys because they are
consumed by the browser frontend unchanged.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Literal, Optional, Union

from soloai.db.models import PaymentProvider, SubscriptionStatus, SubscriptionTier
from soloai.db.users import UserRecord

PaymentMethodType = Literal["card", "bank", "paypal", "unknown"]
InvoiceStatus = Literal["paid", "pending", "failed", "refunded"]


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass(frozen=True)
class StripeAccount:
    """Stripe identifiers stored on a user."""

    customer_id: str | None
    subscription_id: str | None
    provider: PaymentProvider = field(default=PaymentProvider.STRIPE, init=False)


@dataclass(frozen=True)
class LemonSqueezyAccount:
    """LemonSqueezy identifiers stored on a user."""

    customer_id: str | None
    subscription_id: str | None
    provider: PaymentProvider = field(default=PaymentProvider.LEMONSQUEEZY, init=False)


ProviderAccount = Union[StripeAccount, LemonSqueezyAccount]


def provider_account(user: UserRecord) -> Optional[ProviderAccount]:
    """
    Determine which provider owns the user's subscription.

    The provider is detected from the subscription ids; Stripe is checked
    first. Users without a subscription id have no provider.
    """
    if user.stripe_subscription_id:
        return StripeAccount(user.stripe_customer_id, user.stripe_subscription_id)
    if user.lemonsqueezy_subscription_id:
        return LemonSqueezyAccount(
            user.lemonsqueezy_customer_id, user.lemonsqueezy_subscription_id
        )
    return None


@dataclass(frozen=True)
class SubscriptionData:
    """Reconciled view of a subscription. Built per request, never stored."""

    tier: SubscriptionTier
    status: SubscriptionStatus
    provider: Optional[PaymentProvider]
    current_period_end: Optional[datetime]
    cancel_at_period_end: bool
    trial_end: Optional[datetime]

    def merge(self, **changes) -> "SubscriptionData":
        return replace(self, **changes)

    def to_json(self) -> dict:
        return {
            "tier": self.tier.value,
            "status": self.status.value,
            "provider": self.provider.value if self.provider else None,
            "currentPeriodEnd": _iso(self.current_period_end),
            "cancelAtPeriodEnd": self.cancel_at_period_end,
            "trialEnd": _iso(self.trial_end),
        }


@dataclass(frozen=True)
class PaymentMethodData:
    """Default payment method summary."""

    type: PaymentMethodType
    last4: str | None = None
    brand: str | None = None
    expiry_month: int | None = None
    expiry_year: int | None = None
    is_default: bool = True

    def to_json(self) -> dict:
        return {
            "type": self.type,
            "last4": self.last4,
            "brand": self.brand,
            "expiryMonth": self.expiry_month,
            "expiryYear": self.expiry_year,
            "isDefault": self.is_default,
        }


@dataclass(frozen=True)
class BillingHistoryItem:
    """One invoice in the billing history."""

    id: str
    date: datetime
    amount: int  # minor units (cents)
    currency: str
    status: InvoiceStatus
    description: str
    invoice_url: str | None = None
    invoice_pdf_url: str | None = None

    def to_json(self) -> dict:
        return {
            "id": self.id,
            "date": _iso(self.date),
            "amount": self.amount,
            "currency": self.currency,
            "status": self.status,
            "description": self.description,
            "invoiceUrl": self.invoice_url,
            "invoicePdfUrl": self.invoice_pdf_url,
        }


@dataclass(frozen=True)
class BillingHistoryPage:
    """A page of billing history.

    ``next_cursor`` is what the caller passes as ``starting_after`` to get
    the following page: an invoice id for Stripe, a page number for
    LemonSqueezy.
    """

    items: list[BillingHistoryItem]
    has_more: bool
    total_count: int
    next_cursor: str | None = None

    @classmethod
    def empty(cls) -> "BillingHistoryPage":
        return cls(items=[], has_more=False, total_count=0)

    def to_json(self) -> dict:
        return {
            "items": [item.to_json() for item in self.items],
            "hasMore": self.has_more,
            "totalCount": self.total_count,
            "nextCursor": self.next_cursor,
        }


@dataclass(frozen=True)
class BillingOverview:
    subscription: SubscriptionData
    payment_method: Optional[PaymentMethodData]
    next_billing_amount: Optional[int]
    currency: str

    def to_json(self) -> dict:
        return {
            "subscription": self.subscription.to_json(),
            "paymentMethod": self.payment_method.to_json() if self.payment_method else None,
            "nextBillingAmount": self.next_billing_amount,
            "currency": self.currency,
        }


@dataclass(frozen=True)
class CancelResult:
    subscription: SubscriptionData
    effective_date: Optional[datetime]
    message: str = "Subscription scheduled for cancellation"

    def to_json(self) -> dict:
        return {
            "success": True,
            "message": self.message,
            "subscription": self.subscription.to_json(),
            "effectiveDate": _iso(self.effective_date),
        }


@dataclass(frozen=True)
class PortalSession:
    url: str
    provider: PaymentProvider

    def to_json(self) -> dict:
        return {"url": self.url, "provider": self.provider.value}


def _coerce(enum_cls, value, default):
    try:
        return enum_cls(value) if value else default
    except ValueError:
        return default


def subscription_from_user(user: UserRecord) -> SubscriptionData:
    """
    Build subscription data from the stored user record.

    Tier defaults to free and status to active. A cancelled status means
    the subscription runs until its end date; a trial status makes the end
    date the trial end.
    """
    tier = _coerce(SubscriptionTier, user.subscription_tier, SubscriptionTier.FREE)
    status = _coerce(SubscriptionStatus, user.subscription_status, SubscriptionStatus.ACTIVE)
    account = provider_account(user)

    return SubscriptionData(
        tier=tier,
        status=status,
        provider=account.provider if account else None,
        current_period_end=user.subscription_end_date,
        cancel_at_period_end=status == SubscriptionStatus.CANCELLED,
        trial_end=user.subscription_end_date if status == SubscriptionStatus.TRIAL else None,
    )


def has_active_subscription(subscription: SubscriptionData) -> bool:
    return subscription.tier != SubscriptionTier.FREE and subscription.status in (
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.TRIAL,
    )


def can_cancel_subscription(subscription: SubscriptionData) -> bool:
    return has_active_subscription(subscription) and not subscription.cancel_at_period_end

