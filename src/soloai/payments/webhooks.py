"""Stripe webhook handler and event processing."""

import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

import stripe
from aiohttp import web

from soloai.db.models import (
    PaymentProvider,
    SubscriptionStatus,
    SubscriptionTier,
    WebhookProcessingStatus,
)
from soloai.db.users import UserRecord, UserRepository
from soloai.payments.base import from_timestamp

logger = logging.getLogger(__name__)

EventHandler = Callable[[dict, UserRepository], Awaitable[Optional[str]]]


def map_stripe_status(stripe_status: Optional[str]) -> SubscriptionStatus:
    """Map a Stripe subscription status to the stored status."""
    if stripe_status == "active":
        return SubscriptionStatus.ACTIVE
    if stripe_status == "trialing":
        return SubscriptionStatus.TRIAL
    if stripe_status in ("past_due", "unpaid", "incomplete"):
        return SubscriptionStatus.PAST_DUE
    if stripe_status in ("canceled", "incomplete_expired"):
        return SubscriptionStatus.CANCELLED
    if stripe_status == "paused":
        return SubscriptionStatus.SUSPENDED
    logger.warning(f"Unknown Stripe status: {stripe_status}")
    return SubscriptionStatus.ACTIVE


def _tier(metadata: Optional[dict], user: Optional[UserRecord] = None) -> SubscriptionTier:
    value = (metadata or {}).get("tier")
    if value in (SubscriptionTier.PRO.value, SubscriptionTier.ENTERPRISE.value):
        return SubscriptionTier(value)
    if user and user.subscription_tier in (SubscriptionTier.PRO.value, SubscriptionTier.ENTERPRISE.value):
        return SubscriptionTier(user.subscription_tier)
    return SubscriptionTier.PRO


def _object_id(value) -> Optional[str]:
    """Stripe references are either an id string or an expanded object."""
    if value is None or isinstance(value, str):
        return value
    return value.get("id")


def _invoice_subscription_id(invoice: dict) -> Optional[str]:
    subscription_id = _object_id(invoice.get("subscription"))
    if subscription_id:
        return subscription_id
    # Newer API versions nest it under parent.subscription_details
    details = (invoice.get("parent") or {}).get("subscription_details") or {}
    return _object_id(details.get("subscription"))


def _subscription_period_end(subscription: dict) -> Optional[datetime]:
    value = subscription.get("current_period_end")
    if not value:
        items = (subscription.get("items") or {}).get("data") or []
        value = items[0].get("current_period_end") if items else None
    return from_timestamp(value)


async def process_recorded_event(
    users: UserRepository,
    provider: PaymentProvider,
    event_id: str,
    event_type: str,
    payload: dict,
    handler: Optional[Callable[[], Awaitable[Optional[str]]]],
) -> web.Response:
    """
    Run a webhook handler at most once per event.

    The event is recorded before processing and marked with the outcome
    after. Already-processed events are acknowledged without running the
    handler; failures answer 500 so the provider retries.
    """
    if not await users.record_webhook_event(provider.value, event_id, event_type, payload):
        logger.info(f"{provider.value} event {event_id} already processed, skipping")
        return web.json_response(
            {"received": True, "eventType": event_type, "message": "Already processed"}
        )

    if handler is None:
        logger.info(f"Unhandled {provider.value} event type: {event_type}")
        await users.mark_webhook_event(provider.value, event_id, WebhookProcessingStatus.SUCCESS)
        return web.json_response({"received": True, "eventType": event_type})

    try:
        user_id = await handler()
    except Exception as e:
        logger.exception(f"Error processing {provider.value} webhook {event_type}: {e}")
        await users.mark_webhook_event(
            provider.value, event_id, WebhookProcessingStatus.FAILED, str(e)
        )
        return web.json_response(
            {"error": "Processing failed", "code": "PROCESSING_ERROR"}, status=500
        )

    await users.mark_webhook_event(provider.value, event_id, WebhookProcessingStatus.SUCCESS)
    return web.json_response({"received": True, "eventType": event_type, "userId": user_id})


async def handle_stripe_webhook(
    payload: bytes,
    sig_header: Optional[str],
    users: UserRepository,
    webhook_secret: str,
) -> web.Response:
    """
    Verify and process a Stripe webhook delivery.

    Args:
        payload: Raw request body
        sig_header: Stripe-Signature header value
        users: User repository
        webhook_secret: Endpoint signing secret

    Returns:
        aiohttp.web.Response (200 handled, 400 bad request, 500 retry)
    """
    if not sig_header:
        logger.error("Missing Stripe-Signature header")
        return web.json_response({"error": "Missing signature", "code": "MISSING_SIGNATURE"}, status=400)

    if not webhook_secret:
        logger.error("Stripe webhook secret not configured")
        return web.json_response(
            {"error": "Webhook not configured", "code": "STRIPE_UNAVAILABLE"}, status=503
        )

    try:
        event = stripe.Webhook.construct_event(payload, sig_header, webhook_secret)
    except ValueError:
        logger.error("Invalid webhook payload")
        return web.json_response({"error": "Invalid payload", "code": "INVALID_PAYLOAD"}, status=400)
    except stripe.SignatureVerificationError:
        logger.error("Invalid webhook signature")
        return web.json_response({"error": "Invalid signature", "code": "INVALID_SIGNATURE"}, status=400)

    event_type = event["type"]
    event_id = event.get("id") or f"{event_type}:{event['data']['object'].get('id')}"
    logger.info(f"Received Stripe webhook: {event_type} ({event_id})")

    handler = STRIPE_HANDLERS.get(event_type)
    obj = event["data"]["object"]
    return await process_recorded_event(
        users,
        PaymentProvider.STRIPE,
        event_id,
        event_type,
        event,
        (lambda: handler(obj, users)) if handler else None,
    )


async def _handle_checkout_completed(session: dict, users: UserRepository) -> Optional[str]:
    """Link the Stripe customer and subscription to the user who checked out."""
    metadata = session.get("metadata") or {}
    user_id = metadata.get("userId") or session.get("client_reference_id")
    if not user_id:
        logger.warning("checkout.session.completed missing userId - skipping")
        return None

    await users.update_subscription(
        user_id,
        stripe_customer_id=_object_id(session.get("customer")),
        stripe_subscription_id=_object_id(session.get("subscription")),
        subscription_tier=_tier(metadata),
        subscription_status=SubscriptionStatus.ACTIVE,
    )
    logger.info(f"Checkout completed for user {user_id}")
    return user_id


async def _handle_subscription_changed(subscription: dict, users: UserRepository) -> Optional[str]:
    """Sync status, tier and period end from a created/updated subscription."""
    metadata = subscription.get("metadata") or {}
    user = None
    if metadata.get("userId"):
        user = await users.get_by_id(metadata["userId"])
    if user is None:
        user = await users.find_by_stripe_subscription(subscription["id"])
    if user is None and subscription.get("customer"):
        user = await users.find_by_stripe_customer(_object_id(subscription["customer"]))
    if user is None:
        logger.warning(f"subscription {subscription['id']}: no user found - skipping")
        return None

    status = map_stripe_status(subscription.get("status"))
    if subscription.get("cancel_at_period_end") and status in (
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.TRIAL,
    ):
        status = SubscriptionStatus.CANCELLED

    await users.update_subscription(
        user.id,
        stripe_subscription_id=subscription["id"],
        subscription_tier=_tier(metadata, user),
        subscription_status=status,
        subscription_end_date=_subscription_period_end(subscription),
    )
    return user.id


async def _handle_subscription_deleted(subscription: dict, users: UserRepository) -> Optional[str]:
    """Revert the user to the free tier."""
    user = await users.find_by_stripe_subscription(subscription["id"])
    if user is None:
        logger.warning(f"subscription.deleted: no user for {subscription['id']} - skipping")
        return None

    await users.update_subscription(
        user.id,
        subscription_tier=SubscriptionTier.FREE,
        subscription_status=SubscriptionStatus.CANCELLED,
        stripe_subscription_id=None,
        subscription_end_date=datetime.now(timezone.utc),
    )
    logger.info(f"Subscription deleted for user {user.id}")
    return user.id


async def _handle_payment_succeeded(invoice: dict, users: UserRepository) -> Optional[str]:
    subscription_id = _invoice_subscription_id(invoice)
    if not subscription_id:
        logger.info("payment_succeeded without subscription (one-time payment)")
        return None

    user = await users.find_by_stripe_subscription(subscription_id)
    if user is None:
        logger.warning(f"payment_succeeded: no user for {subscription_id}")
        return None

    if user.subscription_status not in (SubscriptionStatus.ACTIVE.value, SubscriptionStatus.CANCELLED.value):
        await users.update_subscription(user.id, subscription_status=SubscriptionStatus.ACTIVE)
    return user.id


async def _handle_payment_failed(invoice: dict, users: UserRepository) -> Optional[str]:
    subscription_id = _invoice_subscription_id(invoice)
    if not subscription_id:
        return None

    user = await users.find_by_stripe_subscription(subscription_id)
    if user is None:
        logger.warning(f"payment_failed: no user for {subscription_id}")
        return None

    await users.update_subscription(user.id, subscription_status=SubscriptionStatus.PAST_DUE)
    logger.info(f"Payment failed for user {user.id}")
    return user.id


STRIPE_HANDLERS: dict[str, EventHandler] = {
    "checkout.session.completed": _handle_checkout_completed,
    "customer.subscription.created": _handle_subscription_changed,
    "customer.subscription.updated": _handle_subscription_changed,
    "customer.subscription.deleted": _handle_subscription_deleted,
    "invoice.payment_succeeded": _handle_payment_succeeded,
    "invoice.paid": _handle_payment_succeeded,
    "invoice.payment_failed": _handle_payment_failed,
}
