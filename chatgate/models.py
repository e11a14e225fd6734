"""Database models for chatgate.

This module defines SQLModel tables for accounts, their chat platform links,
and persisted conversation turns.
"""

import uuid
from datetime import UTC, datetime
from enum import Enum

from sqlalchemy import DateTime, UniqueConstraint
from sqlmodel import Field, SQLModel


def _new_id() -> str:
    return uuid.uuid4().hex


def _utcnow() -> datetime:
    return datetime.now(UTC)


class TurnRole(str, Enum):
    """Role of a persisted conversation turn."""

    USER = "user"
    ASSISTANT = "assistant"


class Account(SQLModel, table=True):
    """One end-user regardless of platform.

    Billing fields live here so a subscription follows the account across
    every platform link it owns.

    Attributes:
        account_id: Opaque unique identifier, generated at first contact
        email: Customer email, set once a checkout completes
        billing_customer_ref: Stripe customer id
        billing_subscription_ref: Stripe subscription id, cleared on deletion
        subscription_status: Last reconciled status ("active", "canceled")
        message_count: Completions consumed; never decremented
        created_at: Account creation timestamp
        updated_at: Last mutation timestamp
    """

    __tablename__ = "accounts"

    account_id: str = Field(default_factory=_new_id, primary_key=True, max_length=32)
    email: str | None = Field(default=None, max_length=320)
    billing_customer_ref: str | None = Field(default=None, max_length=255)
    billing_subscription_ref: str | None = Field(default=None, max_length=255, index=True)
    subscription_status: str | None = Field(default=None, max_length=50)
    message_count: int = Field(default=0)
    created_at: datetime = Field(default_factory=_utcnow, sa_type=DateTime(timezone=True))
    updated_at: datetime = Field(default_factory=_utcnow, sa_type=DateTime(timezone=True))


class PlatformLink(SQLModel, table=True):
    """Binding between one external chat identity and one Account.

    ``(platform_name, platform_identity)`` is unique, which is what makes
    concurrent first contact from the same identity safe.
    """

    __tablename__ = "platform_links"
    __table_args__ = (
        UniqueConstraint("platform_name", "platform_identity", name="uq_platform_identity"),
    )

    link_id: str = Field(default_factory=_new_id, primary_key=True, max_length=32)
    account_id: str = Field(foreign_key="accounts.account_id", index=True, max_length=32)
    platform_name: str = Field(max_length=50)
    platform_identity: str = Field(max_length=255)
    created_at: datetime = Field(default_factory=_utcnow, sa_type=DateTime(timezone=True))


class ConversationTurn(SQLModel, table=True):
    """One persisted half of an exchange.

    ``id`` is autoincrementing and breaks ties between turns that share a
    ``created_at`` value.
    """

    __tablename__ = "conversation_turns"

    id: int | None = Field(default=None, primary_key=True)
    link_id: str = Field(foreign_key="platform_links.link_id", index=True, max_length=32)
    role: str = Field(max_length=20)  # "user" or "assistant"
    content: str
    created_at: datetime = Field(
        default_factory=_utcnow, sa_type=DateTime(timezone=True), index=True
    )
