"""HTTP server for the billing API and payment webhooks."""

import asyncio
import logging
import signal
from typing import Optional

from aiohttp import web

from soloai.api.auth import cookie_name_key, session_middleware, users_key
from soloai.api.billing_routes import config_key, reconciler_key, routes
from soloai.billing.reconciler import SubscriptionReconciler
from soloai.config.settings import AppConfig, get_config
from soloai.db.pool import close_pool, get_pool
from soloai.db.users import UserRepository
from soloai.payments import build_adapters
from soloai.payments.lemonsqueezy_webhooks import handle_lemonsqueezy_webhook
from soloai.payments.webhooks import handle_stripe_webhook

logger = logging.getLogger(__name__)


async def stripe_webhook_endpoint(request: web.Request) -> web.Response:
    """Handle POST /api/stripe/webhook."""
    payload = await request.read()
    return await handle_stripe_webhook(
        payload,
        request.headers.get("Stripe-Signature"),
        request.app[users_key],
        request.app[config_key].stripe_webhook_secret.get_secret_value(),
    )


async def lemonsqueezy_webhook_endpoint(request: web.Request) -> web.Response:
    """Handle POST /api/lemonsqueezy/webhook."""
    payload = await request.read()
    return await handle_lemonsqueezy_webhook(
        payload,
        request.headers.get("X-Signature"),
        request.app[users_key],
        request.app[config_key].lemonsqueezy_webhook_secret.get_secret_value(),
    )


def create_app(
    reconciler: SubscriptionReconciler,
    users: UserRepository,
    config: AppConfig,
) -> web.Application:
    """Create the aiohttp application with billing and webhook routes.

    Args:
        reconciler: Subscription reconciler serving the billing routes
        users: User repository for session lookup and webhooks
        config: Application configuration

    Returns:
        Configured aiohttp Application
    """
    app = web.Application(middlewares=[session_middleware])
    app[reconciler_key] = reconciler
    app[users_key] = users
    app[config_key] = config
    app[cookie_name_key] = config.session_cookie_name

    app.router.add_routes(routes)
    app.router.add_post("/api/stripe/webhook", stripe_webhook_endpoint)
    app.router.add_post("/api/lemonsqueezy/webhook", lemonsqueezy_webhook_endpoint)
    return app


async def run_server(shutdown_event: Optional[asyncio.Event] = None) -> None:
    """Run the server until shutdown.

    Args:
        shutdown_event: Optional event to signal shutdown
    """
    config = get_config()
    pool = await get_pool()
    users = UserRepository(pool)
    reconciler = SubscriptionReconciler(users, build_adapters(config), config)
    app = create_app(reconciler, users, config)

    runner = web.AppRunner(app)
    await runner.setup()

    site = web.TCPSite(runner, config.server_host, config.server_port)
    await site.start()

    logger.info(f"Billing server listening on {config.server_host}:{config.server_port}")

    if shutdown_event:
        await shutdown_event.wait()
    else:
        await asyncio.Event().wait()

    logger.info("Shutting down billing server...")
    await runner.cleanup()
    await close_pool()


def main() -> None:
    """Run the billing server as a standalone process.

    Blocks until SIGTERM/SIGINT received.
    """
    config = get_config()
    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    shutdown_event = asyncio.Event()

    def signal_handler(sig, frame):
        logger.info(f"Received signal {sig}")
        loop.call_soon_threadsafe(shutdown_event.set)

    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)

    try:
        loop.run_until_complete(run_server(shutdown_event=shutdown_event))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    finally:
        loop.close()
        logger.info("Billing server stopped")


if __name__ == "__main__":
    main()
