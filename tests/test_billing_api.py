"""Tests for the billing HTTP routes and session authentication."""

from unittest.mock import AsyncMock, patch

import pytest
from aiohttp.test_utils import TestClient, TestServer

from soloai.api.auth import parse_session_token
from soloai.api.server import create_app
from soloai.billing.errors import ProviderError
from soloai.billing.reconciler import SubscriptionReconciler
from soloai.billing.types import BillingHistoryPage
from soloai.db.models import PaymentProvider
from soloai.payments.base import LiveSubscription
from soloai.payments.lemonsqueezy import LemonSqueezyAdapter

SESSION_COOKIE = {"Cookie": "better-auth.session_token=tok_abc.c2lnbmF0dXJl"}


@pytest.fixture
def make_client(users, config):
    """Build a TestClient around the app for a given adapter set."""

    def _make(adapters) -> TestClient:
        reconciler = SubscriptionReconciler(users, adapters, config)
        return TestClient(TestServer(create_app(reconciler, users, config)))

    return _make


def test_parse_session_token():
    assert parse_session_token("tok_abc.c2lnbmF0dXJl") == "tok_abc"
    assert parse_session_token("tok_abc.sig%3D%3D") == "tok_abc"
    assert parse_session_token("tok_abc") == "tok_abc"
    assert parse_session_token("") is None
    assert parse_session_token(None) is None


class TestAuthentication:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "method, path",
        [
            ("GET", "/api/billing/subscription"),
            ("GET", "/api/billing/history"),
            ("POST", "/api/billing/cancel"),
            ("POST", "/api/billing/portal"),
        ],
    )
    async def test_no_session_is_401(self, make_client, adapters, users, method, path):
        async with make_client(adapters) as client:
            resp = await client.request(method, path)
            body = await resp.json()

        assert resp.status == 401
        assert body == {"error": "Unauthorized", "code": "UNAUTHORIZED"}
        users.get_by_session_token.assert_not_called()

    @pytest.mark.asyncio
    async def test_expired_session_is_401(self, make_client, adapters, users):
        users.get_by_session_token.return_value = None

        async with make_client(adapters) as client:
            resp = await client.get("/api/billing/subscription", headers=SESSION_COOKIE)

        assert resp.status == 401
        users.get_by_session_token.assert_awaited_once_with("tok_abc")

    @pytest.mark.asyncio
    async def test_session_lookup_failure_is_500(self, make_client, adapters, users, stripe_adapter):
        users.get_by_session_token.side_effect = ConnectionError("database down")

        async with make_client(adapters) as client:
            resp = await client.get("/api/billing/subscription", headers=SESSION_COOKIE)
            body = await resp.json()

        assert resp.status == 500
        assert body["code"] == "SESSION_ERROR"
        stripe_adapter.fetch_live_data.assert_not_called()

    @pytest.mark.asyncio
    async def test_secure_cookie_accepted(self, make_client, adapters, users, make_user):
        users.get_by_session_token.return_value = make_user()

        async with make_client(adapters) as client:
            resp = await client.get(
                "/api/billing/subscription",
                headers={"Cookie": "__Secure-better-auth.session_token=tok_abc.sig"},
            )

        assert resp.status == 200


class TestSubscriptionRoute:
    @pytest.mark.asyncio
    async def test_overview_json(self, make_client, adapters, users, make_user, stripe_adapter):
        users.get_by_session_token.return_value = make_user()
        stripe_adapter.fetch_live_data.return_value = LiveSubscription(
            subscription_id="sub_123",
            status="active",
            current_period_end=None,
            cancel_at_period_end=False,
            next_billing_amount=1900,
            currency="USD",
        )

        async with make_client(adapters) as client:
            resp = await client.get("/api/billing/subscription", headers=SESSION_COOKIE)
            body = await resp.json()

        assert resp.status == 200
        assert body["subscription"]["tier"] == "pro"
        assert body["subscription"]["provider"] == "stripe"
        assert body["subscription"]["currentPeriodEnd"] == "2025-02-01T00:00:00+00:00"
        assert body["subscription"]["cancelAtPeriodEnd"] is False
        assert body["nextBillingAmount"] == 1900
        assert body["currency"] == "USD"
        assert body["paymentMethod"] is None


class TestHistoryRoute:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("query, expected", [("limit=1000", 50), ("limit=abc", 10), ("", 10)])
    async def test_limit_handling(
        self, make_client, adapters, users, make_user, stripe_adapter, query, expected
    ):
        users.get_by_session_token.return_value = make_user()
        stripe_adapter.list_invoices.return_value = BillingHistoryPage.empty()

        async with make_client(adapters) as client:
            resp = await client.get(f"/api/billing/history?{query}", headers=SESSION_COOKIE)
            body = await resp.json()

        assert resp.status == 200
        assert body == {"items": [], "hasMore": False, "totalCount": 0, "nextCursor": None}
        _, limit, _ = stripe_adapter.list_invoices.await_args.args
        assert limit == expected

    @pytest.mark.asyncio
    async def test_cursor_forwarded(self, make_client, adapters, users, make_user, stripe_adapter):
        users.get_by_session_token.return_value = make_user()
        stripe_adapter.list_invoices.return_value = BillingHistoryPage.empty()

        async with make_client(adapters) as client:
            await client.get(
                "/api/billing/history?limit=5&starting_after=in_9", headers=SESSION_COOKIE
            )

        _, limit, starting_after = stripe_adapter.list_invoices.await_args.args
        assert (limit, starting_after) == (5, "in_9")


class TestCancelRoute:
    @pytest.mark.asyncio
    async def test_free_plan_rejected(self, make_client, adapters, users, make_user, stripe_adapter):
        users.get_by_session_token.return_value = make_user(subscription_tier="free")

        async with make_client(adapters) as client:
            resp = await client.post("/api/billing/cancel", headers=SESSION_COOKIE)
            body = await resp.json()

        assert resp.status == 400
        assert body["code"] == "CANCEL_NOT_ALLOWED"
        assert body["details"] == "You are on the free plan"
        stripe_adapter.cancel_at_period_end.assert_not_called()

    @pytest.mark.asyncio
    async def test_cancel_success(self, make_client, adapters, users, make_user, stripe_adapter):
        user = make_user()
        users.get_by_session_token.return_value = user
        stripe_adapter.cancel_at_period_end.return_value = LiveSubscription(
            subscription_id="sub_123",
            status="active",
            current_period_end=user.subscription_end_date,
            cancel_at_period_end=True,
        )

        async with make_client(adapters) as client:
            resp = await client.post("/api/billing/cancel", headers=SESSION_COOKIE)
            body = await resp.json()

        assert resp.status == 200
        assert body["success"] is True
        assert body["subscription"]["cancelAtPeriodEnd"] is True
        assert body["subscription"]["status"] == "cancelled"
        assert body["effectiveDate"] == body["subscription"]["currentPeriodEnd"]

    @pytest.mark.asyncio
    async def test_lemonsqueezy_cancel_uses_ends_at(self, make_client, users, make_user):
        users.get_by_session_token.return_value = make_user(
            stripe_customer_id=None,
            stripe_subscription_id=None,
            lemonsqueezy_customer_id="77",
            lemonsqueezy_subscription_id="88",
        )
        adapter = LemonSqueezyAdapter("ls_key", "12345")
        document = {
            "data": {
                "type": "subscriptions",
                "id": "88",
                "attributes": {
                    "status": "active",
                    "cancelled": True,
                    "renews_at": "2025-02-01T00:00:00Z",
                    "ends_at": "2025-02-15T00:00:00Z",
                },
            }
        }

        with patch.object(LemonSqueezyAdapter, "_request", AsyncMock(return_value=document)) as request:
            async with make_client({PaymentProvider.LEMONSQUEEZY: adapter}) as client:
                resp = await client.post("/api/billing/cancel", headers=SESSION_COOKIE)
                body = await resp.json()

        assert resp.status == 200
        assert request.await_args.args == ("DELETE", "subscriptions/88")
        assert body["subscription"]["status"] == "cancelled"
        assert body["effectiveDate"].startswith("2025-02-15T00:00:00")
        users.update_subscription.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_unconfigured_provider_503(self, make_client, users, make_user):
        users.get_by_session_token.return_value = make_user()

        async with make_client({}) as client:
            resp = await client.post("/api/billing/cancel", headers=SESSION_COOKIE)
            body = await resp.json()

        assert resp.status == 503
        assert body["code"] == "STRIPE_UNAVAILABLE"

    @pytest.mark.asyncio
    async def test_unexpected_error_500(self, make_client, adapters, users, make_user, stripe_adapter):
        users.get_by_session_token.return_value = make_user()
        stripe_adapter.cancel_at_period_end.side_effect = RuntimeError("unexpected")

        async with make_client(adapters) as client:
            resp = await client.post("/api/billing/cancel", headers=SESSION_COOKIE)
            body = await resp.json()

        assert resp.status == 500
        assert body["code"] == "CANCEL_ERROR"


class TestPortalRoute:
    @pytest.mark.asyncio
    async def test_stripe_portal_url(self, make_client, adapters, users, make_user, stripe_adapter):
        users.get_by_session_token.return_value = make_user()
        stripe_adapter.get_portal_url.return_value = "https://billing.stripe.com/session/abc"

        async with make_client(adapters) as client:
            resp = await client.post("/api/billing/portal", headers=SESSION_COOKIE)
            body = await resp.json()

        assert resp.status == 200
        assert body == {"url": "https://billing.stripe.com/session/abc", "provider": "stripe"}
        _, return_url = stripe_adapter.get_portal_url.await_args.args
        assert return_url == "https://app.example.com/account"

    @pytest.mark.asyncio
    async def test_lemonsqueezy_unreadable_portal_falls_back(self, make_client, users, make_user):
        users.get_by_session_token.return_value = make_user(
            stripe_customer_id=None,
            stripe_subscription_id=None,
            lemonsqueezy_customer_id="77",
            lemonsqueezy_subscription_id="88",
        )
        adapter = LemonSqueezyAdapter("ls_key", "12345")

        with patch.object(
            LemonSqueezyAdapter,
            "_request",
            AsyncMock(side_effect=ProviderError("lemonsqueezy", "HTTP 500", code="http_500")),
        ):
            async with make_client({PaymentProvider.LEMONSQUEEZY: adapter}) as client:
                resp = await client.post("/api/billing/portal", headers=SESSION_COOKIE)
                body = await resp.json()

        assert resp.status == 200
        assert body == {"url": "https://app.lemonsqueezy.com/my-orders", "provider": "lemonsqueezy"}

    @pytest.mark.asyncio
    async def test_no_subscription(self, make_client, adapters, users, make_user):
        users.get_by_session_token.return_value = make_user(
            subscription_tier="free", stripe_customer_id=None, stripe_subscription_id=None
        )

        async with make_client(adapters) as client:
            resp = await client.post("/api/billing/portal", headers=SESSION_COOKIE)
            body = await resp.json()

        assert resp.status == 400
        assert body["code"] == "NO_SUBSCRIPTION"
