"""Message router.

The per-inbound-message orchestrator and the single place that decides what
the user sees:

    Resolving -> Gating -> {Denying | Answering} -> Done

Commands (/start, /subscribe, /account, /clear) short-circuit after
Resolving and never consume the counter. Handling for one identity is
serialized by ``IdentityLocks`` so first-contact creation and the
gate-then-increment sequence cannot interleave; different identities run
concurrently.
"""

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field

from telegram.error import TelegramError

from chatgate.checkout import CheckoutIssuer
from chatgate.conversation import ConversationEngine
from chatgate.exceptions import StoreError, UpstreamError
from chatgate.models import Account, PlatformLink
from chatgate.store import AccountStore
from chatgate.transport import ChatTransport, ChoiceLink, InboundMessage
from chatgate.usage_gate import UsageGate

logger = logging.getLogger(__name__)

COMMANDS = frozenset({"/start", "/subscribe", "/account", "/clear"})

WORKING_TEXT = "🙏 Thinking..."
ERROR_TEXT = "❌ Sorry, I encountered an error. Please try again later."
BILLING_UNAVAILABLE_TEXT = (
    "❌ Sorry, I couldn't check your subscription right now. Please try again later."
)
CHECKOUT_TEXT = (
    "You've used all {limit} free messages. Subscribe to keep the conversation going:"
)
SUBSCRIBE_TEXT = "Choose a plan to subscribe:"
CLEARED_TEXT = "🧹 Your conversation history has been cleared."
NO_PORTAL_TEXT = "Subscription management isn't available right now."


def parse_command(text: str) -> str | None:
    """Return the normalized command token, or None for ordinary text.

    Matching is case-insensitive and ignores a ``@botname`` suffix.
    """
    token = text.strip().split(maxsplit=1)[0] if text.strip() else ""
    token = token.split("@", 1)[0].lower()
    return token if token in COMMANDS else None


@dataclass
class _Slot:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    holders: int = 0


class IdentityLocks:
    """One mutual-exclusion scope per external identity.

    Entries are dropped as soon as no task holds or waits on them, so the
    map only ever contains identities with in-flight messages.
    """

    def __init__(self) -> None:
        self._slots: dict[tuple[str, str], _Slot] = {}

    @asynccontextmanager
    async def hold(self, key: tuple[str, str]) -> AsyncIterator[None]:
        slot = self._slots.get(key)
        if slot is None:
            slot = self._slots[key] = _Slot()
        slot.holders += 1
        try:
            async with slot.lock:
                yield
        finally:
            slot.holders -= 1
            if slot.holders == 0:
                del self._slots[key]

    def __len__(self) -> int:
        return len(self._slots)


class MessageRouter:
    """Routes each inbound message through gating to an answer or a checkout offer.

    Attributes:
        store: Account store
        gate: Usage gate
        checkout: Checkout issuer
        engine: Conversation engine
        transport: Outbound chat transport
        free_limit: Free allowance, quoted in user-facing text
        portal_url: Customer portal link for /account
    """

    def __init__(
        self,
        *,
        store: AccountStore,
        gate: UsageGate,
        checkout: CheckoutIssuer,
        engine: ConversationEngine,
        transport: ChatTransport,
        free_limit: int,
        portal_url: str = "",
    ) -> None:
        self.store = store
        self.gate = gate
        self.checkout = checkout
        self.engine = engine
        self.transport = transport
        self.free_limit = free_limit
        self.portal_url = portal_url
        self.locks = IdentityLocks()

    async def handle(self, message: InboundMessage) -> None:
        """Process one inbound message end to end. Never raises."""
        if not message.text.strip():
            return
        key = (message.platform_name, message.platform_identity)
        try:
            async with self.locks.hold(key):
                await self._handle_locked(message)
        except TelegramError as e:
            logger.error(
                f"Chat transport failure: {e}",
                extra={"platform_identity": message.platform_identity},
            )
        except Exception:
            logger.exception(
                "Unexpected failure handling message",
                extra={"platform_identity": message.platform_identity},
            )

    async def _handle_locked(self, message: InboundMessage) -> None:
        identity = message.platform_identity

        # Resolving
        try:
            account, link = await self.store.resolve_or_create_link(
                message.platform_name, identity
            )
        except StoreError as e:
            logger.error(f"Identity resolution failed: {e}", extra={"platform_identity": identity})
            return

        command = parse_command(message.text)
        if command is not None:
            await self._handle_command(command, message, account, link)
            return

        # Gating
        try:
            usage = await self.store.get_usage(account.account_id)
        except StoreError as e:
            logger.error(f"Usage read failed: {e}", extra={"account_id": account.account_id})
            return
        decision = await self.gate.decide(usage)
        if not decision.allowed:
            logger.info(
                f"Message denied: {decision.reason.value}",
                extra={"account_id": account.account_id},
            )
            if decision.offers_checkout:
                await self._offer_checkout(
                    identity, account, CHECKOUT_TEXT.format(limit=self.free_limit)
                )
            else:
                await self.transport.send_text(identity, BILLING_UNAVAILABLE_TEXT)
            return

        await self._answer(identity, account, link, message.text)

    async def _answer(
        self, identity: str, account: Account, link: PlatformLink, text: str
    ) -> None:
        provisional = await self._send_provisional(identity)
        await self.transport.send_typing(identity)
        try:
            reply = await self.engine.answer(account, link.link_id, text)
        except (UpstreamError, StoreError) as e:
            logger.error(f"Turn failed: {e}", extra={"account_id": account.account_id})
            reply = None
        finally:
            if provisional is not None:
                await self._delete_quietly(identity, provisional)

        if reply is None:
            await self.transport.send_text(identity, ERROR_TEXT)
            return

        try:
            await self.transport.send_text(identity, reply)
        finally:
            # The completion was consumed whether or not delivery succeeded.
            try:
                count = await self.store.increment_usage(account.account_id)
                logger.info(
                    f"Turn answered, message_count={count}",
                    extra={"account_id": account.account_id},
                )
            except StoreError as e:
                logger.error(f"Usage increment failed: {e}", extra={"account_id": account.account_id})

    async def _send_provisional(self, identity: str) -> int | None:
        try:
            return await self.transport.send_text(identity, WORKING_TEXT)
        except TelegramError as e:
            logger.warning(f"Could not send working indicator: {e}")
            return None

    async def _delete_quietly(self, identity: str, message_ref: int) -> None:
        try:
            await self.transport.delete_message(identity, message_ref)
        except TelegramError as e:
            logger.warning(f"Could not delete working indicator: {e}")

    async def _offer_checkout(self, identity: str, account: Account, text: str) -> None:
        try:
            offer = await self.checkout.create_sessions(account.account_id)
        except UpstreamError as e:
            logger.error(f"Checkout issuance failed: {e}", extra={"account_id": account.account_id})
            await self.transport.send_text(identity, ERROR_TEXT)
            return
        await self.transport.send_choice_links(
            identity,
            text,
            [
                ChoiceLink(label="Monthly plan", url=offer.monthly.url),
                ChoiceLink(label="Yearly plan", url=offer.yearly.url),
            ],
        )

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------
    async def _handle_command(
        self, command: str, message: InboundMessage, account: Account, link: PlatformLink
    ) -> None:
        identity = message.platform_identity
        if command == "/start":
            await self.transport.send_text(identity, self._welcome_text(message.display_name))
        elif command == "/subscribe":
            await self._offer_checkout(identity, account, SUBSCRIBE_TEXT)
        elif command == "/account":
            await self.transport.send_text(identity, self._account_text(account))
        elif command == "/clear":
            try:
                removed = await self.store.clear_history(link.link_id)
            except StoreError as e:
                logger.error(f"Clear history failed: {e}", extra={"account_id": account.account_id})
                await self.transport.send_text(identity, ERROR_TEXT)
                return
            logger.info(f"Cleared {removed} turns", extra={"account_id": account.account_id})
            await self.transport.send_text(identity, CLEARED_TEXT)

    def _welcome_text(self, name: str | None) -> str:
        greeting = f"👋 Welcome, {name}!" if name else "👋 Welcome!"
        return (
            f"{greeting}\n\n"
            "I am a Bible-based counseling bot. Ask me a question or share your concern.\n\n"
            f"You have {self.free_limit} free messages. After that you can subscribe "
            "to keep talking.\n\n"
            "Commands:\n"
            "/subscribe - Choose a plan\n"
            "/account - Manage your subscription\n"
            "/clear - Forget our conversation so far"
        )

    def _account_text(self, account: Account) -> str:
        used = min(account.message_count, self.free_limit)
        lines = [f"Free messages used: {used} of {self.free_limit}"]
        if account.billing_subscription_ref:
            lines.append("Subscription: on file")
        else:
            lines.append("Subscription: none (use /subscribe)")
        if self.portal_url:
            lines.append(f"Manage your subscription here: {self.portal_url}")
        else:
            lines.append(NO_PORTAL_TEXT)
        return "\n".join(lines)
