"""Billing API endpoints."""

import logging
from typing import Optional

from aiohttp import web

from soloai.api.auth import require_user
from soloai.billing.errors import BillingError
from soloai.billing.reconciler import SubscriptionReconciler
from soloai.config.settings import AppConfig

logger = logging.getLogger(__name__)

reconciler_key = web.AppKey("reconciler", SubscriptionReconciler)
config_key = web.AppKey("config", AppConfig)

routes = web.RouteTableDef()


def error_response(error: BillingError) -> web.Response:
    return web.json_response(error.to_json(), status=error.status)


def parse_limit(value: Optional[str]) -> Optional[int]:
    """Parse the ``limit`` query parameter; anything non-numeric means default."""
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        return None


@routes.get("/api/billing/subscription")
async def get_subscription(request: web.Request) -> web.Response:
    """GET /api/billing/subscription: subscription overview with live provider data."""
    try:
        user = require_user(request)
        overview = await request.app[reconciler_key].get_overview(user)
    except BillingError as e:
        return error_response(e)
    except Exception as e:
        logger.exception(f"Error fetching subscription data: {e}")
        return web.json_response(
            {"error": "Failed to fetch subscription data", "code": "FETCH_ERROR"}, status=500
        )
    return web.json_response(overview.to_json())


@routes.get("/api/billing/history")
async def get_history(request: web.Request) -> web.Response:
    """GET /api/billing/history?limit=&starting_after=

    ``offset`` is accepted and ignored; paging follows ``nextCursor``.
    """
    try:
        user = require_user(request)
        page = await request.app[reconciler_key].billing_history(
            user,
            limit=parse_limit(request.query.get("limit")),
            starting_after=request.query.get("starting_after") or None,
        )
    except BillingError as e:
        return error_response(e)
    except Exception as e:
        logger.exception(f"Error fetching billing history: {e}")
        return web.json_response(
            {"error": "Failed to fetch billing history", "code": "FETCH_ERROR"}, status=500
        )
    return web.json_response(page.to_json())


@routes.post("/api/billing/cancel")
async def post_cancel(request: web.Request) -> web.Response:
    """POST /api/billing/cancel: cancel at the end of the current period."""
    try:
        user = require_user(request)
        result = await request.app[reconciler_key].cancel(user)
    except BillingError as e:
        return error_response(e)
    except Exception as e:
        logger.exception(f"Error cancelling subscription: {e}")
        return web.json_response(
            {"error": "Failed to cancel subscription", "code": "CANCEL_ERROR", "details": str(e)},
            status=500,
        )
    return web.json_response(result.to_json())


@routes.post("/api/billing/portal")
async def post_portal(request: web.Request) -> web.Response:
    """POST /api/billing/portal: portal URL for a client-side redirect."""
    config = request.app[config_key]
    return_url = f"{config.public_base_url.rstrip('/')}/account"
    try:
        user = require_user(request)
        portal = await request.app[reconciler_key].portal_url(user, return_url)
    except BillingError as e:
        return error_response(e)
    except Exception as e:
        logger.exception(f"Error creating portal session: {e}")
        return web.json_response(
            {"error": "Failed to generate portal URL", "code": "PORTAL_ERROR"}, status=500
        )
    return web.json_response(portal.to_json())
