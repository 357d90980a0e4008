"""User, session and webhook-event persistence."""

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

import asyncpg

from soloai.db.models import Table, WebhookProcessingStatus

logger = logging.getLogger(__name__)


@dataclass
class UserRecord:
    """Canonical user row with the subscription columns."""

    id: str
    email: str
    name: str | None = None
    subscription_tier: str | None = None
    subscription_status: str | None = None
    subscription_end_date: datetime | None = None  # UTC
    stripe_customer_id: str | None = None
    stripe_subscription_id: str | None = None
    lemonsqueezy_customer_id: str | None = None
    lemonsqueezy_subscription_id: str | None = None

    @classmethod
    def from_row(cls, row) -> "UserRecord":
        return cls(
            id=row["id"],
            email=row["email"],
            name=row["name"],
            subscription_tier=row["subscription_tier"],
            subscription_status=row["subscription_status"],
            subscription_end_date=row["subscription_end_date"],
            stripe_customer_id=row["stripe_customer_id"],
            stripe_subscription_id=row["stripe_subscription_id"],
            lemonsqueezy_customer_id=row["lemonsqueezy_customer_id"],
            lemonsqueezy_subscription_id=row["lemonsqueezy_subscription_id"],
        )


# Columns the billing code is allowed to write
SUBSCRIPTION_COLUMNS = frozenset(
    {
        "subscription_tier",
        "subscription_status",
        "subscription_end_date",
        "stripe_customer_id",
        "stripe_subscription_id",
        "lemonsqueezy_customer_id",
        "lemonsqueezy_subscription_id",
    }
)

_USER_COLUMNS = """
    id, email, name,
    subscription_tier, subscription_status, subscription_end_date,
    stripe_customer_id, stripe_subscription_id,
    lemonsqueezy_customer_id, lemonsqueezy_subscription_id
"""


class UserRepository:
    """Reads and writes user subscription state through an asyncpg pool."""

    def __init__(self, pool: asyncpg.Pool):
        self._pool = pool

    async def _fetch_user(self, where: str, value: Any) -> Optional[UserRecord]:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT {_USER_COLUMNS} FROM {Table.USERS} WHERE {where} = $1 LIMIT 1",
                value,
            )
        return UserRecord.from_row(row) if row else None

    async def get_by_id(self, user_id: str) -> Optional[UserRecord]:
        return await self._fetch_user("id", user_id)

    async def find_by_stripe_customer(self, customer_id: str) -> Optional[UserRecord]:
        return await self._fetch_user("stripe_customer_id", customer_id)

    async def find_by_stripe_subscription(self, subscription_id: str) -> Optional[UserRecord]:
        return await self._fetch_user("stripe_subscription_id", subscription_id)

    async def find_by_lemonsqueezy_customer(self, customer_id: str) -> Optional[UserRecord]:
        return await self._fetch_user("lemonsqueezy_customer_id", customer_id)

    async def find_by_lemonsqueezy_subscription(
        self, subscription_id: str
    ) -> Optional[UserRecord]:
        return await self._fetch_user("lemonsqueezy_subscription_id", subscription_id)

    async def get_by_session_token(self, token: str) -> Optional[UserRecord]:
        """
        Resolve a session token to its user.

        Sessions are written by the external auth service; expired
        sessions resolve to None.

        Args:
            token: Session token (without the cookie signature)

        Returns:
            UserRecord or None
        """
        columns = ", ".join(
            f"u.{c.strip()}" for c in _USER_COLUMNS.split(",")
        )
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                SELECT {columns}
                FROM {Table.SESSIONS} s
                JOIN {Table.USERS} u ON u.id = s.user_id
                WHERE s.token = $1
                  AND s.expires_at > $2
                """,
                token,
                datetime.now(timezone.utc),
            )
        return UserRecord.from_row(row) if row else None

    async def update_subscription(self, user_id: str, **fields: Any) -> None:
        """
        Update subscription columns for a user.

        Args:
            user_id: User identifier
            **fields: Column values; only subscription columns are accepted

        Raises:
            ValueError: On an unknown or empty column set
            asyncpg.PostgresError: On database errors
        """
        if not fields:
            raise ValueError("update_subscription requires at least one field")
        unknown = set(fields) - SUBSCRIPTION_COLUMNS
        if unknown:
            raise ValueError(f"Not subscription columns: {sorted(unknown)}")

        columns = sorted(fields)
        assignments = ", ".join(
            f"{column} = ${i}" for i, column in enumerate(columns, start=2)
        )
        values = [
            fields[c].value if hasattr(fields[c], "value") else fields[c]
            for c in columns
        ]

        async with self._pool.acquire() as conn:
            await conn.execute(
                f"""
                UPDATE {Table.USERS}
                SET {assignments}, updated_at = now()
                WHERE id = $1
                """,
                user_id,
                *values,
            )

        logger.info(f"Updated subscription for user {user_id}: {', '.join(columns)}")

    async def record_webhook_event(
        self,
        provider: str,
        event_id: str,
        event_type: str,
        payload: dict,
    ) -> bool:
        """
        Record a webhook delivery, returning whether it still needs processing.

        Returns:
            False if the event was already processed successfully, True otherwise
        """
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                INSERT INTO {Table.WEBHOOK_EVENTS}
                    (provider, event_id, event_type, processed, processing_status, payload)
                VALUES ($1, $2, $3, FALSE, $4, $5)
                ON CONFLICT (provider, event_id) DO UPDATE SET
                    event_type = EXCLUDED.event_type
                RETURNING processed
                """,
                provider,
                event_id,
                event_type,
                WebhookProcessingStatus.PENDING.value,
                json.dumps(payload, default=str),
            )
        return not (row and row["processed"])

    async def mark_webhook_event(
        self,
        provider: str,
        event_id: str,
        status: WebhookProcessingStatus,
        error_message: str | None = None,
    ) -> None:
        async with self._pool.acquire() as conn:
            await conn.execute(
                f"""
                UPDATE {Table.WEBHOOK_EVENTS}
                SET processed = $3,
                    processing_status = $4,
                    error_message = $5,
                    processed_at = now()
                WHERE provider = $1 AND event_id = $2
                """,
                provider,
                event_id,
                status == WebhookProcessingStatus.SUCCESS,
                status.value,
                error_message,
            )
