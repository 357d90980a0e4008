"""Lightweight table-name constants and column-value enums."""

from enum import Enum


class Table:
    """Database table names."""

    USERS = "users"
    SESSIONS = "sessions"
    WEBHOOK_EVENTS = "webhook_events"
    SCHEMA_MIGRATIONS = "schema_migrations"


class SubscriptionTier(str, Enum):
    """Subscription tier."""

    FREE = "free"
    PRO = "pro"
    ENTERPRISE = "enterprise"


class SubscriptionStatus(str, Enum):
    """Subscription status."""

    ACTIVE = "active"
    TRIAL = "trial"
    PAST_DUE = "past_due"
    CANCELLED = "cancelled"
    SUSPENDED = "suspended"


class PaymentProvider(str, Enum):
    """Payment provider owning a subscription."""

    STRIPE = "stripe"
    LEMONSQUEEZY = "lemonsqueezy"


class WebhookProcessingStatus(str, Enum):
    """Outcome recorded for a received webhook event."""

    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
