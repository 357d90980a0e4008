"""LemonSqueezy webhook handler and event processing."""

import hashlib
import hmac
import json
import logging
from typing import Awaitable, Callable, Optional

from aiohttp import web

from soloai.db.models import PaymentProvider, SubscriptionStatus, SubscriptionTier
from soloai.db.users import UserRecord, UserRepository
from soloai.payments.base import from_iso
from soloai.payments.webhooks import process_recorded_event

logger = logging.getLogger(__name__)

EventHandler = Callable[[dict, dict, UserRepository], Awaitable[Optional[str]]]

# LemonSqueezy subscription status -> stored status
STATUS_MAP = {
    "active": SubscriptionStatus.ACTIVE,
    "on_trial": SubscriptionStatus.TRIAL,
    "past_due": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.PAST_DUE,
    "cancelled": SubscriptionStatus.CANCELLED,
    "expired": SubscriptionStatus.CANCELLED,
    "paused": SubscriptionStatus.SUSPENDED,
}


def map_lemonsqueezy_status(status: Optional[str]) -> SubscriptionStatus:
    """Map a LemonSqueezy subscription status, defaulting to active."""
    return STATUS_MAP.get(status or "", SubscriptionStatus.ACTIVE)


def verify_signature(payload: bytes, signature: str, secret: str) -> bool:
    """
    Check an ``X-Signature`` header against the raw request body.

    The signature is the hex HMAC-SHA256 digest of the body keyed with the
    webhook signing secret.
    """
    expected = hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected.encode(), signature.encode("utf-8", "surrogateescape"))


def _event_id(event_name: str, data: dict) -> str:
    # Deliveries carry no event id; the resource id and its update time
    # identify one state change
    attrs = data.get("attributes") or {}
    return f"{event_name}:{data.get('id')}:{attrs.get('updated_at') or attrs.get('created_at')}"


def _tier(custom_data: dict, user: Optional[UserRecord] = None) -> SubscriptionTier:
    value = custom_data.get("tier")
    if value in (SubscriptionTier.PRO.value, SubscriptionTier.ENTERPRISE.value):
        return SubscriptionTier(value)
    if user and user.subscription_tier in (SubscriptionTier.PRO.value, SubscriptionTier.ENTERPRISE.value):
        return SubscriptionTier(user.subscription_tier)
    return SubscriptionTier.PRO


def _end_date(attrs: dict):
    if attrs.get("cancelled") or attrs.get("status") in ("cancelled", "expired"):
        return from_iso(attrs.get("ends_at") or attrs.get("renews_at"))
    return from_iso(attrs.get("renews_at") or attrs.get("ends_at"))


async def _find_user(
    users: UserRepository,
    custom_data: dict,
    subscription_id: Optional[str],
    customer_id: Optional[str],
) -> Optional[UserRecord]:
    """Locate the user by custom user_id, then subscription id, then customer id."""
    user_id = custom_data.get("user_id") or custom_data.get("userId")
    if user_id:
        user = await users.get_by_id(str(user_id))
        if user:
            return user
    if subscription_id:
        user = await users.find_by_lemonsqueezy_subscription(subscription_id)
        if user:
            return user
    if customer_id:
        return await users.find_by_lemonsqueezy_customer(customer_id)
    return None


async def handle_lemonsqueezy_webhook(
    payload: bytes,
    signature: Optional[str],
    users: UserRepository,
    webhook_secret: str,
) -> web.Response:
    """
    Verify and process a LemonSqueezy webhook delivery.

    Args:
        payload: Raw request body
        signature: X-Signature header value
        users: User repository
        webhook_secret: Webhook signing secret

    Returns:
        aiohttp.web.Response (200 handled, 400 bad request, 401 bad signature,
        500 retry)
    """
    if not signature:
        logger.error("Missing X-Signature header")
        return web.json_response({"error": "Missing signature", "code": "MISSING_SIGNATURE"}, status=400)

    if not webhook_secret:
        logger.error("LemonSqueezy webhook secret not configured")
        return web.json_response(
            {"error": "Webhook not configured", "code": "LEMONSQUEEZY_UNAVAILABLE"}, status=503
        )

    if not verify_signature(payload, signature, webhook_secret):
        logger.error("Invalid LemonSqueezy webhook signature")
        return web.json_response({"error": "Invalid signature", "code": "INVALID_SIGNATURE"}, status=401)

    try:
        event = json.loads(payload)
        meta = event["meta"]
        event_name = meta["event_name"]
        data = event["data"]
    except (ValueError, KeyError, TypeError):
        logger.error("Invalid LemonSqueezy webhook payload")
        return web.json_response({"error": "Invalid payload", "code": "INVALID_PAYLOAD"}, status=400)

    custom_data = meta.get("custom_data") or {}
    event_id = _event_id(event_name, data)
    logger.info(f"Received LemonSqueezy webhook: {event_name} ({event_id})")

    handler = LEMONSQUEEZY_HANDLERS.get(event_name)
    return await process_recorded_event(
        users,
        PaymentProvider.LEMONSQUEEZY,
        event_id,
        event_name,
        event,
        (lambda: handler(data, custom_data, users)) if handler else None,
    )


async def _handle_subscription_created(data: dict, custom_data: dict, users: UserRepository) -> Optional[str]:
    attrs = data.get("attributes") or {}
    subscription_id = str(data["id"])
    customer_id = str(attrs["customer_id"]) if attrs.get("customer_id") else None

    user = await _find_user(users, custom_data, None, customer_id)
    if user is None:
        logger.warning(f"subscription_created {subscription_id}: no user found - skipping")
        return None

    await users.update_subscription(
        user.id,
        lemonsqueezy_subscription_id=subscription_id,
        lemonsqueezy_customer_id=customer_id,
        subscription_tier=_tier(custom_data),
        subscription_status=map_lemonsqueezy_status(attrs.get("status")),
        subscription_end_date=_end_date(attrs),
    )
    logger.info(f"LemonSqueezy subscription {subscription_id} created for user {user.id}")
    return user.id


async def _handle_subscription_updated(data: dict, custom_data: dict, users: UserRepository) -> Optional[str]:
    attrs = data.get("attributes") or {}
    subscription_id = str(data["id"])
    customer_id = str(attrs["customer_id"]) if attrs.get("customer_id") else None

    user = await _find_user(users, custom_data, subscription_id, customer_id)
    if user is None:
        logger.warning(f"subscription_updated {subscription_id}: no user found - skipping")
        return None

    status = map_lemonsqueezy_status(attrs.get("status"))
    if attrs.get("cancelled") and status in (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIAL):
        status = SubscriptionStatus.CANCELLED

    fields = {
        "lemonsqueezy_subscription_id": subscription_id,
        "subscription_tier": _tier(custom_data, user),
        "subscription_status": status,
        "subscription_end_date": _end_date(attrs),
    }
    if customer_id:
        fields["lemonsqueezy_customer_id"] = customer_id
    await users.update_subscription(user.id, **fields)
    return user.id


def _status_handler(status: SubscriptionStatus, tier: Optional[SubscriptionTier] = None) -> EventHandler:
    """Build a handler that sets a fixed status on the subscription's user."""

    async def handler(data: dict, custom_data: dict, users: UserRepository) -> Optional[str]:
        attrs = data.get("attributes") or {}
        subscription_id = str(data["id"])
        user = await _find_user(users, custom_data, subscription_id, None)
        if user is None:
            logger.warning(f"{status.value} update for {subscription_id}: no user found - skipping")
            return None

        fields = {"subscription_status": status}
        end_date = _end_date(attrs)
        if end_date:
            fields["subscription_end_date"] = end_date
        if tier is not None:
            fields["subscription_tier"] = tier
        await users.update_subscription(user.id, **fields)
        logger.info(f"LemonSqueezy subscription {subscription_id} for user {user.id} -> {status.value}")
        return user.id

    return handler


def _payment_handler(status: SubscriptionStatus) -> EventHandler:
    """Build a handler for subscription-invoice events."""

    async def handler(data: dict, custom_data: dict, users: UserRepository) -> Optional[str]:
        attrs = data.get("attributes") or {}
        subscription_id = attrs.get("subscription_id")
        user = await _find_user(
            users, custom_data, str(subscription_id) if subscription_id else None, None
        )
        if user is None:
            logger.warning(f"payment event for subscription {subscription_id}: no user found")
            return None

        if status != SubscriptionStatus.ACTIVE or user.subscription_status == SubscriptionStatus.PAST_DUE.value:
            await users.update_subscription(user.id, subscription_status=status)
        return user.id

    return handler


LEMONSQUEEZY_HANDLERS: dict[str, EventHandler] = {
    "subscription_created": _handle_subscription_created,
    "subscription_updated": _handle_subscription_updated,
    "subscription_cancelled": _status_handler(SubscriptionStatus.CANCELLED),
    "subscription_resumed": _status_handler(SubscriptionStatus.ACTIVE),
    "subscription_expired": _status_handler(SubscriptionStatus.CANCELLED, SubscriptionTier.FREE),
    "subscription_paused": _status_handler(SubscriptionStatus.SUSPENDED),
    "subscription_unpaused": _status_handler(SubscriptionStatus.ACTIVE),
    "subscription_payment_success": _payment_handler(SubscriptionStatus.ACTIVE),
    "subscription_payment_failed": _payment_handler(SubscriptionStatus.PAST_DUE),
    "subscription_payment_recovered": _payment_handler(SubscriptionStatus.ACTIVE),
}
