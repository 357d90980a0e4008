"""LemonSqueezy implementation of the payment provider interface.

LemonSqueezy has no Python SDK; this talks to its JSON:API REST surface
(https://docs.lemonsqueezy.com/api) directly.
"""

import asyncio
import logging
from typing import Any, Optional

import aiohttp

from soloai.billing.errors import ProviderError, ProviderUnavailableError
from soloai.billing.types import (
    BillingHistoryItem,
    BillingHistoryPage,
    PaymentMethodData,
    ProviderAccount,
)
from soloai.db.models import PaymentProvider
from soloai.payments.base import LiveSubscription, PaymentProviderAdapter, from_iso

logger = logging.getLogger(__name__)

JSON_API = "application/vnd.api+json"

# Generic customer orders page, used when the subscription's portal link
# cannot be read
FALLBACK_PORTAL_URL = "https://app.lemonsqueezy.com/my-orders"

# LemonSqueezy invoice status -> billing history status
INVOICE_STATUS_MAP = {
    "paid": "paid",
    "pending": "pending",
    "void": "failed",
    "refunded": "refunded",
    "partial_refund": "refunded",
}

BILLING_REASONS = {
    "initial": "Subscription started",
    "renewal": "Subscription renewal",
    "updated": "Subscription updated",
}


def to_live_subscription(resource: dict) -> LiveSubscription:
    """Normalize a LemonSqueezy ``subscriptions`` resource."""
    attrs = resource.get("attributes") or {}
    cancelled = bool(attrs.get("cancelled"))

    # A cancelled subscription stops at ends_at; an active one renews at renews_at
    period_end = attrs.get("ends_at") if cancelled else attrs.get("renews_at")
    if not period_end:
        period_end = attrs.get("renews_at") or attrs.get("ends_at")

    payment_method = None
    if attrs.get("card_last_four"):
        payment_method = PaymentMethodData(
            type="card",
            last4=attrs.get("card_last_four"),
            brand=attrs.get("card_brand"),
        )

    return LiveSubscription(
        subscription_id=str(resource["id"]),
        status=attrs.get("status"),
        current_period_end=from_iso(period_end),
        cancel_at_period_end=cancelled,
        trial_end=from_iso(attrs.get("trial_ends_at")),
        payment_method=payment_method,
    )


def to_history_item(resource: dict) -> BillingHistoryItem:
    """Normalize a LemonSqueezy ``subscription-invoices`` resource."""
    attrs = resource.get("attributes") or {}
    urls = attrs.get("urls") or {}
    invoice_id = str(resource["id"])
    return BillingHistoryItem(
        id=invoice_id,
        date=from_iso(attrs.get("created_at")),
        amount=attrs.get("total") or 0,
        currency=(attrs.get("currency") or "USD").upper(),
        status=INVOICE_STATUS_MAP.get(attrs.get("status"), "pending"),
        description=BILLING_REASONS.get(attrs.get("billing_reason"), f"Invoice #{invoice_id}"),
        invoice_url=urls.get("invoice_url"),
        invoice_pdf_url=None,
    )


class LemonSqueezyAdapter(PaymentProviderAdapter):
    """LemonSqueezy provider client over aiohttp."""

    provider = PaymentProvider.LEMONSQUEEZY

    def __init__(
        self,
        api_key: str,
        store_id: str,
        base_url: str = "https://api.lemonsqueezy.com/v1",
        timeout_seconds: float = 10.0,
    ):
        if not api_key or not store_id:
            raise ProviderUnavailableError(PaymentProvider.LEMONSQUEEZY.value)
        self._api_key = api_key
        self.store_id = store_id
        self._base_url = base_url.rstrip("/")
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)

    def _headers(self) -> dict[str, str]:
        return {
            "Accept": JSON_API,
            "Content-Type": JSON_API,
            "Authorization": f"Bearer {self._api_key}",
        }

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[dict[str, Any]] = None,
        payload: Optional[dict] = None,
    ) -> dict:
        """
        Perform one API call and return the decoded JSON document.

        Raises:
            ProviderError: On network errors, timeouts and non-2xx responses.
                404 is reported with code ``resource_missing``.
        """
        url = f"{self._base_url}/{path.lstrip('/')}"
        try:
            async with aiohttp.ClientSession(
                timeout=self._timeout, headers=self._headers()
            ) as session:
                async with session.request(method, url, params=params, json=payload) as resp:
                    if resp.status == 204:
                        return {}
                    body = await resp.json(content_type=None)
                    status = resp.status
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise ProviderError(
                PaymentProvider.LEMONSQUEEZY.value,
                f"LemonSqueezy request failed: {e}",
                code="network_error",
            ) from e
        except ValueError as e:
            raise ProviderError(
                PaymentProvider.LEMONSQUEEZY.value,
                f"LemonSqueezy returned invalid JSON: {e}",
                code="invalid_response",
            ) from e

        if status >= 400:
            errors = (body or {}).get("errors") or [{}]
            detail = errors[0].get("detail") or errors[0].get("title") or f"HTTP {status}"
            raise ProviderError(
                PaymentProvider.LEMONSQUEEZY.value,
                detail,
                code="resource_missing" if status == 404 else f"http_{status}",
                http_status=status,
            )
        return body or {}

    async def _get_subscription(self, subscription_id: str) -> dict:
        document = await self._request("GET", f"subscriptions/{subscription_id}")
        return document.get("data") or {}

    async def fetch_live_data(self, subscription_id: str) -> Optional[LiveSubscription]:
        try:
            resource = await self._get_subscription(subscription_id)
            return to_live_subscription(resource)
        except ProviderError as e:
            logger.warning(f"Error fetching LemonSqueezy subscription {subscription_id}: {e}")
        except (KeyError, ValueError) as e:
            logger.warning(f"Malformed LemonSqueezy subscription {subscription_id}: {e}")
        return None

    async def cancel_at_period_end(self, subscription_id: str) -> LiveSubscription:
        # DELETE cancels at period end; the subscription stays usable until ends_at
        document = await self._request("DELETE", f"subscriptions/{subscription_id}")
        logger.info(f"Cancelled LemonSqueezy subscription {subscription_id}")
        return to_live_subscription(document.get("data") or {"id": subscription_id})

    async def reactivate(self, subscription_id: str) -> LiveSubscription:
        document = await self._request(
            "PATCH",
            f"subscriptions/{subscription_id}",
            payload={
                "data": {
                    "type": "subscriptions",
                    "id": str(subscription_id),
                    "attributes": {"cancelled": False},
                }
            },
        )
        logger.info(f"Resumed LemonSqueezy subscription {subscription_id}")
        return to_live_subscription(document.get("data") or {"id": subscription_id})

    async def get_portal_url(self, account: ProviderAccount, return_url: str) -> str:
        # LemonSqueezy portal links are signed per subscription and ignore return_url
        try:
            resource = await self._get_subscription(account.subscription_id)
        except ProviderError as e:
            logger.warning(
                f"Could not read portal URL for subscription {account.subscription_id}: {e}"
            )
            return FALLBACK_PORTAL_URL

        urls = (resource.get("attributes") or {}).get("urls") or {}
        portal_url = urls.get("customer_portal")
        if not portal_url:
            logger.info(
                f"No portal URL on subscription {account.subscription_id}, using fallback"
            )
            return FALLBACK_PORTAL_URL
        return portal_url

    async def list_invoices(
        self,
        account: ProviderAccount,
        limit: int,
        starting_after: str | None = None,
    ) -> BillingHistoryPage:
        try:
            page_number = max(int(starting_after), 1) if starting_after else 1
        except ValueError:
            page_number = 1

        document = await self._request(
            "GET",
            "subscription-invoices",
            params={
                "filter[store_id]": self.store_id,
                "filter[subscription_id]": account.subscription_id,
                "page[size]": limit,
                "page[number]": page_number,
            },
        )

        try:
            items = [to_history_item(resource) for resource in document.get("data") or []]
            page = (document.get("meta") or {}).get("page") or {}
            current = int(page.get("currentPage", page_number))
            last = int(page.get("lastPage", current))
            total = int(page.get("total", len(items)))
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise ProviderError(
                PaymentProvider.LEMONSQUEEZY.value, f"Malformed invoice list: {e!r}"
            ) from e
        has_more = current < last

        return BillingHistoryPage(
            items=items,
            has_more=has_more,
            total_count=total,
            next_cursor=str(current + 1) if has_more else None,
        )
