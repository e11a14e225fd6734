"""
Pytest configuration and shared fixtures.

The account store runs against an in-memory SQLite database; Stripe and the
completion API are replaced by small in-process fakes and the chat transport
by an AsyncMock, so no test touches the network.
"""

import hashlib
import hmac
import itertools
import json
import time
from collections.abc import AsyncGenerator
from typing import Any
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import update

from chatgate.billing import CheckoutSession, StripeBilling
from chatgate.checkout import CheckoutIssuer
from chatgate.conversation import ConversationEngine
from chatgate.database import create_db_and_tables, create_engine, create_session_maker
from chatgate.exceptions import NotFoundError
from chatgate.models import Account
from chatgate.reconciler import SubscriptionReconciler
from chatgate.router import MessageRouter
from chatgate.store import AccountStore
from chatgate.transport import ChatTransport
from chatgate.usage_gate import UsageGate

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"
WEBHOOK_SECRET = "whsec_test_secret"
FREE_LIMIT = 10
PERSONA = "You are a test counselor."
PORTAL_URL = "https://billing.stripe.test/portal"


# ============================================================================
# FAKES
# ============================================================================
class FakeBilling:
    """In-process stand-in for StripeBilling's network calls.

    Attributes:
        statuses: subscription ref -> status string or exception to raise
        sessions: kwargs of every checkout session created
        checkout_error: raised by create_checkout_session when set
        status_calls: subscription refs queried
    """

    def __init__(self) -> None:
        self.statuses: dict[str, Any] = {}
        self.sessions: list[dict[str, str]] = []
        self.checkout_error: Exception | None = None
        self.status_calls: list[str] = []
        self._verifier = StripeBilling("sk_test_fake")

    async def create_checkout_session(
        self, *, price_id: str, account_id: str, success_url: str, cancel_url: str
    ) -> CheckoutSession:
        if self.checkout_error is not None:
            raise self.checkout_error
        self.sessions.append(
            {
                "price_id": price_id,
                "account_id": account_id,
                "success_url": success_url,
                "cancel_url": cancel_url,
            }
        )
        number = len(self.sessions)
        return CheckoutSession(
            id=f"cs_test_{number}", url=f"https://checkout.stripe.test/{price_id}/{number}"
        )

    async def retrieve_subscription_status(self, subscription_ref: str) -> str:
        self.status_calls.append(subscription_ref)
        result = self.statuses.get(
            subscription_ref,
            NotFoundError(resource_type="subscription", resource_id=subscription_ref),
        )
        if isinstance(result, Exception):
            raise result
        return result

    def verify_event(self, raw_payload: bytes, signature: str | None, secret: str):
        return self._verifier.verify_event(raw_payload, signature, secret)


class FakeCompletion:
    """Records prompts and returns a canned reply (or raises ``error``)."""

    def __init__(self, reply: str | None = "Grace is unearned favor. (Ephesians 2:8)") -> None:
        self.reply = reply
        self.error: Exception | None = None
        self.calls: list[list[dict[str, str]]] = []

    async def complete(self, messages: list[dict[str, str]]) -> str | None:
        self.calls.append(messages)
        if self.error is not None:
            raise self.error
        return self.reply


# ============================================================================
# HELPERS
# ============================================================================
def sign_payload(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    """Build a Stripe-Signature header the way Stripe signs deliveries."""
    timestamp = timestamp if timestamp is not None else int(time.time())
    signed = f"{timestamp}.".encode() + payload
    digest = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def stripe_event(event_type: str, data_object: dict[str, Any], event_id: str = "evt_test_1") -> bytes:
    """Serialize a minimal Stripe event payload."""
    return json.dumps(
        {"id": event_id, "object": "event", "type": event_type, "data": {"object": data_object}}
    ).encode()


# ============================================================================
# FIXTURES
# ============================================================================
@pytest.fixture
async def db_engine() -> AsyncGenerator:
    """Create an in-memory database with all tables."""
    engine = create_engine(TEST_DATABASE_URL)
    await create_db_and_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(db_engine):
    return create_session_maker(db_engine)


@pytest.fixture
def store(session_maker) -> AccountStore:
    return AccountStore(session_maker)


@pytest.fixture
def seed_account(store, session_maker):
    """Return a coroutine that creates an identity with preset usage/billing state."""

    async def _seed(
        identity: str = "1001",
        message_count: int = 0,
        subscription_ref: str | None = None,
    ):
        account, link = await store.resolve_or_create_link("telegram", identity)
        async with session_maker() as session:
            await session.execute(
                update(Account)
                .where(Account.account_id == account.account_id)
                .values(message_count=message_count, billing_subscription_ref=subscription_ref)
            )
            await session.commit()
        return await store.get_account(account.account_id), link

    return _seed


@pytest.fixture
def billing() -> FakeBilling:
    return FakeBilling()


@pytest.fixture
def completion() -> FakeCompletion:
    return FakeCompletion()


@pytest.fixture
def transport() -> AsyncMock:
    """Chat transport mock; sends return increasing message refs."""
    refs = itertools.count(501)
    mock = AsyncMock(spec=ChatTransport)
    mock.send_text.side_effect = lambda *args, **kwargs: next(refs)
    mock.send_choice_links.return_value = 900
    return mock


@pytest.fixture
def gate(billing) -> UsageGate:
    return UsageGate(billing, free_limit=FREE_LIMIT)


@pytest.fixture
def checkout(billing) -> CheckoutIssuer:
    return CheckoutIssuer(
        billing,
        monthly_price_id="price_monthly",
        yearly_price_id="price_yearly",
        success_url="https://bot.test/checkout/success",
        cancel_url="https://bot.test/checkout/cancel",
    )


@pytest.fixture
def engine(store, completion) -> ConversationEngine:
    return ConversationEngine(store, completion, PERSONA, history_limit=5)


@pytest.fixture
def router(store, gate, checkout, engine, transport) -> MessageRouter:
    return MessageRouter(
        store=store,
        gate=gate,
        checkout=checkout,
        engine=engine,
        transport=transport,
        free_limit=FREE_LIMIT,
        portal_url=PORTAL_URL,
    )


@pytest.fixture
def reconciler(store, billing) -> SubscriptionReconciler:
    return SubscriptionReconciler(store, billing, WEBHOOK_SECRET)


@pytest.fixture
def sign():
    """Stripe-Signature header builder."""
    return sign_payload


@pytest.fixture
def make_event():
    """Stripe event payload builder."""
    return stripe_event
