"""Subscription reconciliation between the user record and payment providers."""

import logging
from typing import Optional

from soloai.billing.errors import (
    EligibilityError,
    OperationFailedError,
    ProviderError,
    ProviderUnavailableError,
)
from soloai.billing.types import (
    BillingHistoryPage,
    BillingOverview,
    CancelResult,
    LemonSqueezyAccount,
    PortalSession,
    ProviderAccount,
    StripeAccount,
    SubscriptionData,
    can_cancel_subscription,
    provider_account,
    subscription_from_user,
)
from soloai.config.settings import AppConfig
from soloai.db.models import PaymentProvider, SubscriptionStatus, SubscriptionTier
from soloai.db.users import UserRecord, UserRepository
from soloai.payments.base import LiveSubscription, PaymentProviderAdapter

logger = logging.getLogger(__name__)

# Provider statuses meaning the subscription is running normally
LIVE_ACTIVE_STATUSES = {"active", "trialing", "on_trial"}

CANCELLABLE_STATUSES = {SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIAL}


class SubscriptionReconciler:
    """
    Produces the authoritative view of a user's subscription.

    The stored user record is the baseline; live provider data is layered
    on top whenever the provider answers. Enrichment never fails a request:
    a provider outage only means the response carries stored values.

    Args:
        users: Repository used to persist status changes
        adapters: Configured provider clients, keyed by provider
        config: Application configuration
    """

    def __init__(
        self,
        users: UserRepository,
        adapters: dict[PaymentProvider, PaymentProviderAdapter],
        config: AppConfig,
    ):
        self._users = users
        self._adapters = adapters
        self._config = config

    def _adapter(self, provider: PaymentProvider) -> PaymentProviderAdapter:
        adapter = self._adapters.get(provider)
        if adapter is None:
            raise ProviderUnavailableError(provider.value)
        return adapter

    def clamp_limit(self, limit: Optional[int]) -> int:
        """Clamp a caller-requested page size to [1, billing_history_max_limit]."""
        if limit is None:
            limit = self._config.billing_history_default_limit
        return max(1, min(limit, self._config.billing_history_max_limit))

    def _default_amount(self, tier: SubscriptionTier) -> Optional[int]:
        if tier == SubscriptionTier.PRO:
            return self._config.pro_default_amount
        if tier == SubscriptionTier.ENTERPRISE:
            return self._config.enterprise_default_amount
        return None

    # ------------------------------------------------------------------
    # Read path
    # ------------------------------------------------------------------

    async def get_overview(self, user: UserRecord) -> BillingOverview:
        """
        Build the billing overview for a user.

        Live provider data replaces the stored period end, cancellation flag
        and trial end, and supplies the payment method and next amount.
        Differences found are written back to the user record so it
        converges with the provider.
        """
        subscription = subscription_from_user(user)
        account = provider_account(user)

        payment_method = None
        next_billing_amount = None
        currency = self._config.default_currency

        live = None
        if subscription.tier != SubscriptionTier.FREE:
            live = await self._fetch_live(account)
        if live is not None:
            subscription = await self._merge_live(user, subscription, live)
            payment_method = live.payment_method
            next_billing_amount = live.next_billing_amount
            currency = live.currency or currency

        if not next_billing_amount and subscription.tier != SubscriptionTier.FREE:
            next_billing_amount = self._default_amount(subscription.tier)

        return BillingOverview(
            subscription=subscription,
            payment_method=payment_method,
            next_billing_amount=next_billing_amount,
            currency=currency,
        )

    async def _fetch_live(self, account: Optional[ProviderAccount]) -> Optional[LiveSubscription]:
        if account is None or not account.subscription_id:
            return None

        adapter = self._adapters.get(account.provider)
        if adapter is None:
            logger.info(f"{account.provider.value} not configured, using stored subscription data")
            return None

        try:
            return await adapter.fetch_live_data(account.subscription_id)
        except Exception as e:
            # Adapters should not raise here; a stored-data answer is still correct
            logger.warning(
                f"Live data lookup for {account.provider.value} subscription "
                f"{account.subscription_id} failed: {e}",
                exc_info=True,
            )
            return None

    async def _merge_live(
        self,
        user: UserRecord,
        subscription: SubscriptionData,
        live: LiveSubscription,
    ) -> SubscriptionData:
        status = subscription.status
        if live.cancel_at_period_end and status in CANCELLABLE_STATUSES:
            status = SubscriptionStatus.CANCELLED
        elif (
            not live.cancel_at_period_end
            and status == SubscriptionStatus.CANCELLED
            and live.status in LIVE_ACTIVE_STATUSES
        ):
            status = SubscriptionStatus.ACTIVE

        merged = subscription.merge(
            status=status,
            current_period_end=live.current_period_end or subscription.current_period_end,
            cancel_at_period_end=live.cancel_at_period_end,
            trial_end=live.trial_end,
        )

        changes = {}
        if status != subscription.status:
            changes["subscription_status"] = status
        if live.current_period_end and live.current_period_end != user.subscription_end_date:
            changes["subscription_end_date"] = live.current_period_end

        if changes:
            try:
                await self._users.update_subscription(user.id, **changes)
            except Exception as e:
                logger.warning(f"Could not persist live subscription state for {user.id}: {e}")

        return merged

    async def billing_history(
        self,
        user: UserRecord,
        limit: Optional[int] = None,
        starting_after: Optional[str] = None,
    ) -> BillingHistoryPage:
        """
        Read one page of the user's invoices.

        Free users and users without a provider get an empty page, as does
        any provider failure.
        """
        limit = self.clamp_limit(limit)
        subscription = subscription_from_user(user)
        account = provider_account(user)

        if subscription.tier == SubscriptionTier.FREE or account is None:
            return BillingHistoryPage.empty()

        if isinstance(account, StripeAccount) and not account.customer_id:
            return BillingHistoryPage.empty()

        adapter = self._adapters.get(account.provider)
        if adapter is None:
            logger.info(f"{account.provider.value} not configured, returning empty history")
            return BillingHistoryPage.empty()

        try:
            return await adapter.list_invoices(account, limit, starting_after)
        except ProviderError as e:
            logger.warning(f"Error fetching {account.provider.value} invoices for {user.id}: {e}")
            return BillingHistoryPage.empty()

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def _check_cancellable(self, subscription: SubscriptionData) -> None:
        if can_cancel_subscription(subscription):
            return
        if subscription.tier == SubscriptionTier.FREE:
            details = "You are on the free plan"
        elif subscription.cancel_at_period_end:
            details = "Subscription is already scheduled for cancellation"
        else:
            details = "Subscription is not in a cancellable state"
        raise EligibilityError("CANCEL_NOT_ALLOWED", "Cannot cancel subscription", details)

    async def cancel(self, user: UserRecord) -> CancelResult:
        """
        Schedule the user's subscription to end at the current period end.

        The provider is called first, then the stored status is set to
        cancelled. There is no compensation if the second step fails; the
        next overview read picks up the provider's state.

        Raises:
            EligibilityError: CANCEL_NOT_ALLOWED, NO_SUBSCRIPTION or
                SUBSCRIPTION_NOT_FOUND
            ProviderUnavailableError: Provider not configured
            OperationFailedError: CANCEL_ERROR
        """
        subscription = subscription_from_user(user)
        self._check_cancellable(subscription)

        account = provider_account(user)
        if account is None or not account.subscription_id:
            raise EligibilityError("NO_SUBSCRIPTION", "No valid subscription to cancel")

        adapter = self._adapter(account.provider)

        try:
            live = await adapter.cancel_at_period_end(account.subscription_id)
        except ProviderError as e:
            if e.resource_missing:
                raise EligibilityError(
                    "SUBSCRIPTION_NOT_FOUND",
                    "Subscription not found",
                    "The subscription may have already been cancelled or deleted.",
                ) from e
            logger.error(f"Provider cancel failed for user {user.id}: {e}")
            raise OperationFailedError("CANCEL_ERROR", "Failed to cancel subscription", str(e)) from e

        try:
            await self._users.update_subscription(
                user.id, subscription_status=SubscriptionStatus.CANCELLED
            )
        except Exception as e:
            logger.exception(
                f"{account.provider.value} subscription {account.subscription_id} cancelled "
                f"but user {user.id} was not updated"
            )
            raise OperationFailedError("CANCEL_ERROR", "Failed to cancel subscription", str(e)) from e

        cancelled = subscription.merge(
            status=SubscriptionStatus.CANCELLED,
            cancel_at_period_end=True,
            current_period_end=live.current_period_end or subscription.current_period_end,
        )
        logger.info(
            f"Cancelled {account.provider.value} subscription {account.subscription_id} "
            f"for user {user.id}"
        )
        return CancelResult(subscription=cancelled, effective_date=cancelled.current_period_end)

    async def reactivate(self, user: UserRecord) -> SubscriptionData:
        """
        Undo a scheduled cancellation.

        Raises:
            EligibilityError: REACTIVATE_NOT_ALLOWED, NO_SUBSCRIPTION or
                SUBSCRIPTION_NOT_FOUND
            ProviderUnavailableError: Provider not configured
            OperationFailedError: REACTIVATE_ERROR
        """
        subscription = subscription_from_user(user)
        if subscription.tier == SubscriptionTier.FREE or not subscription.cancel_at_period_end:
            raise EligibilityError(
                "REACTIVATE_NOT_ALLOWED",
                "Cannot reactivate subscription",
                "Subscription is not scheduled for cancellation",
            )

        account = provider_account(user)
        if account is None:
            raise EligibilityError("NO_SUBSCRIPTION", "No valid subscription to reactivate")

        adapter = self._adapter(account.provider)
        try:
            live = await adapter.reactivate(account.subscription_id)
        except ProviderError as e:
            if e.resource_missing:
                raise EligibilityError("SUBSCRIPTION_NOT_FOUND", "Subscription not found") from e
            raise OperationFailedError(
                "REACTIVATE_ERROR", "Failed to reactivate subscription", str(e)
            ) from e

        await self._users.update_subscription(user.id, subscription_status=SubscriptionStatus.ACTIVE)
        logger.info(f"Reactivated subscription for user {user.id}")

        return subscription.merge(
            status=SubscriptionStatus.ACTIVE,
            cancel_at_period_end=False,
            current_period_end=live.current_period_end or subscription.current_period_end,
        )

    async def portal_url(self, user: UserRecord, return_url: str) -> PortalSession:
        """
        Get a customer portal URL for a client-side redirect.

        Raises:
            EligibilityError: NO_SUBSCRIPTION, NO_CUSTOMER_ID,
                NO_SUBSCRIPTION_ID or CUSTOMER_NOT_FOUND
            ProviderUnavailableError: Provider not configured
            OperationFailedError: PORTAL_ERROR
        """
        account = provider_account(user)
        if account is None:
            raise EligibilityError(
                "NO_SUBSCRIPTION",
                "No active subscription found",
                "You need an active paid subscription to access the billing portal",
            )

        adapter = self._adapter(account.provider)

        if isinstance(account, StripeAccount) and not account.customer_id:
            raise EligibilityError(
                "NO_CUSTOMER_ID", "No Stripe customer ID found", "Please subscribe to a plan first"
            )
        if isinstance(account, LemonSqueezyAccount) and not account.subscription_id:
            raise EligibilityError(
                "NO_SUBSCRIPTION_ID",
                "No LemonSqueezy subscription ID found",
                "Please subscribe to a plan first",
            )

        try:
            url = await adapter.get_portal_url(account, return_url)
        except ProviderError as e:
            if e.resource_missing:
                raise EligibilityError(
                    "CUSTOMER_NOT_FOUND",
                    "Customer not found",
                    "Your payment profile may have been deleted. Please contact support.",
                ) from e
            raise OperationFailedError("PORTAL_ERROR", "Failed to generate portal URL", str(e)) from e

        return PortalSession(url=url, provider=account.provider)
