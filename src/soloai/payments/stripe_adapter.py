"""Stripe implementation of the payment provider interface."""

import asyncio
import logging
from typing import Optional

import stripe

from soloai.billing.errors import ProviderError, ProviderUnavailableError
from soloai.billing.types import (
    BillingHistoryItem,
    BillingHistoryPage,
    PaymentMethodData,
    ProviderAccount,
)
from soloai.db.models import PaymentProvider
from soloai.payments.base import LiveSubscription, PaymentProviderAdapter, from_timestamp

logger = logging.getLogger(__name__)

# Stripe invoice status -> billing history status
INVOICE_STATUS_MAP = {
    "paid": "paid",
    "open": "pending",
    "draft": "pending",
    "uncollectible": "failed",
    "void": "refunded",
}


def _first_item(subscription) -> Optional[dict]:
    items = (subscription.get("items") or {}).get("data") or []
    return items[0] if items else None


def _period_end(subscription):
    # Newer API versions report the period on the subscription item
    value = subscription.get("current_period_end")
    if not value:
        item = _first_item(subscription)
        value = item.get("current_period_end") if item else None
    return from_timestamp(value)


def _payment_method(subscription) -> Optional[PaymentMethodData]:
    pm = subscription.get("default_payment_method")
    if not pm or isinstance(pm, str):
        # Not expanded, or no default set
        return None
    if pm.get("type") == "card" and pm.get("card"):
        card = pm["card"]
        return PaymentMethodData(
            type="card",
            last4=card.get("last4"),
            brand=card.get("brand"),
            expiry_month=card.get("exp_month"),
            expiry_year=card.get("exp_year"),
        )
    if pm.get("type") in ("us_bank_account", "sepa_debit"):
        return PaymentMethodData(type="bank")
    if pm.get("type") == "paypal":
        return PaymentMethodData(type="paypal")
    return PaymentMethodData(type="unknown")


def to_live_subscription(subscription) -> LiveSubscription:
    """Normalize a Stripe Subscription object."""
    item = _first_item(subscription)
    price = (item or {}).get("price") or {}
    currency = price.get("currency")

    return LiveSubscription(
        subscription_id=subscription["id"],
        status=subscription.get("status"),
        current_period_end=_period_end(subscription),
        cancel_at_period_end=bool(subscription.get("cancel_at_period_end")),
        trial_end=from_timestamp(subscription.get("trial_end")),
        payment_method=_payment_method(subscription),
        next_billing_amount=price.get("unit_amount"),
        currency=currency.upper() if currency else None,
    )


def to_history_item(invoice) -> BillingHistoryItem:
    """Normalize a Stripe Invoice object."""
    invoice_id = invoice["id"]
    currency = invoice.get("currency")
    return BillingHistoryItem(
        id=invoice_id,
        date=from_timestamp(invoice.get("created")),
        amount=invoice.get("amount_paid") or invoice.get("total") or 0,
        currency=currency.upper() if currency else "USD",
        status=INVOICE_STATUS_MAP.get(invoice.get("status"), "pending"),
        description=invoice.get("description")
        or f"Invoice #{invoice.get('number') or invoice_id[-8:]}",
        invoice_url=invoice.get("hosted_invoice_url"),
        invoice_pdf_url=invoice.get("invoice_pdf"),
    )


def _provider_error(e: stripe.StripeError) -> ProviderError:
    return ProviderError(
        PaymentProvider.STRIPE.value,
        e.user_message or str(e),
        code=getattr(e, "code", None),
        http_status=getattr(e, "http_status", None),
    )


class StripeAdapter(PaymentProviderAdapter):
    """
    Stripe provider client.

    The SDK is synchronous, so every call runs in a worker thread. The API
    key is passed per request instead of being set on the ``stripe`` module.
    """

    provider = PaymentProvider.STRIPE

    def __init__(self, api_key: str):
        if not api_key:
            raise ProviderUnavailableError(PaymentProvider.STRIPE.value)
        self._api_key = api_key

    async def _call(self, fn, *args, **kwargs):
        return await asyncio.to_thread(fn, *args, api_key=self._api_key, **kwargs)

    async def fetch_live_data(self, subscription_id: str) -> Optional[LiveSubscription]:
        try:
            subscription = await self._call(
                stripe.Subscription.retrieve,
                subscription_id,
                expand=["default_payment_method"],
            )
        except stripe.StripeError as e:
            logger.warning(f"Error fetching Stripe subscription {subscription_id}: {e}")
            return None
        except Exception as e:
            logger.warning(
                f"Unexpected error fetching Stripe subscription {subscription_id}: {e}",
                exc_info=True,
            )
            return None

        logger.debug(f"Fetched Stripe data for subscription {subscription_id}")
        return to_live_subscription(subscription)

    async def _modify(self, subscription_id: str, cancel_at_period_end: bool) -> LiveSubscription:
        try:
            subscription = await self._call(
                stripe.Subscription.modify,
                subscription_id,
                cancel_at_period_end=cancel_at_period_end,
            )
        except stripe.StripeError as e:
            raise _provider_error(e) from e
        return to_live_subscription(subscription)

    async def cancel_at_period_end(self, subscription_id: str) -> LiveSubscription:
        live = await self._modify(subscription_id, cancel_at_period_end=True)
        logger.info(f"Scheduled cancellation of Stripe subscription {subscription_id}")
        return live

    async def reactivate(self, subscription_id: str) -> LiveSubscription:
        live = await self._modify(subscription_id, cancel_at_period_end=False)
        logger.info(f"Reactivated Stripe subscription {subscription_id}")
        return live

    async def get_portal_url(self, account: ProviderAccount, return_url: str) -> str:
        try:
            session = await self._call(
                stripe.billing_portal.Session.create,
                customer=account.customer_id,
                return_url=return_url,
            )
        except stripe.StripeError as e:
            raise _provider_error(e) from e

        logger.info(f"Created Stripe portal session for customer {account.customer_id}")
        return session["url"]

    async def list_invoices(
        self,
        account: ProviderAccount,
        limit: int,
        starting_after: str | None = None,
    ) -> BillingHistoryPage:
        params = {"customer": account.customer_id, "limit": limit}
        if starting_after:
            params["starting_after"] = starting_after

        try:
            invoices = await self._call(stripe.Invoice.list, **params)
        except stripe.StripeError as e:
            raise _provider_error(e) from e

        items = [to_history_item(invoice) for invoice in invoices["data"][:limit]]
        has_more = bool(invoices.get("has_more"))
        logger.debug(f"Fetched {len(items)} invoices for customer {account.customer_id}")

        # Stripe does not report a total; approximate it from what is known
        return BillingHistoryPage(
            items=items,
            has_more=has_more,
            total_count=len(items) + (1 if has_more else 0),
            next_cursor=items[-1].id if has_more and items else None,
        )
