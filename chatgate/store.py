"""Persisted account store.

Durable mapping of platform identity -> account -> subscription and usage
state, plus per-link conversation history. Every method opens its own
session, so each decision re-reads current state instead of trusting a
cached copy that a webhook may have changed.

Any SQLAlchemy failure surfaces as ``StoreError``.
"""

import logging
from dataclasses import dataclass
from datetime import UTC, datetime

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from chatgate.exceptions import StoreError
from chatgate.models import Account, ConversationTurn, PlatformLink, TurnRole

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UsageSnapshot:
    """Usage and billing state read for one gating decision."""

    account_id: str
    message_count: int
    billing_subscription_ref: str | None


class AccountStore:
    """Account, platform link and conversation persistence.

    Attributes:
        session_maker: Async session factory for the backing database
    """

    def __init__(self, session_maker: sessionmaker) -> None:
        self.session_maker = session_maker

    # ------------------------------------------------------------------
    # Identity
    # ------------------------------------------------------------------
    async def resolve_or_create_link(
        self, platform_name: str, platform_identity: str
    ) -> tuple[Account, PlatformLink]:
        """Return the account and link for an identity, creating both on first contact.

        The unique ``(platform_name, platform_identity)`` constraint decides
        races: if a concurrent first contact committed first, the insert
        fails and the winner's rows are returned instead.
        """
        try:
            found = await self._find_link(platform_name, platform_identity)
            if found is not None:
                return found

            account = Account()
            link = PlatformLink(
                account_id=account.account_id,
                platform_name=platform_name,
                platform_identity=platform_identity,
            )
            async with self.session_maker() as session:
                session.add(account)
                await session.flush()
                session.add(link)
                try:
                    await session.commit()
                except IntegrityError:
                    await session.rollback()
                    logger.info(
                        "Concurrent first contact, reusing existing link",
                        extra={"platform_identity": platform_identity},
                    )
                    found = await self._find_link(platform_name, platform_identity)
                    if found is None:
                        raise StoreError("Link vanished after unique conflict") from None
                    return found

            logger.info(
                "Created account for new identity",
                extra={"account_id": account.account_id, "platform_identity": platform_identity},
            )
            return account, link
        except SQLAlchemyError as e:
            raise StoreError(f"resolve_or_create_link failed: {e}") from e

    async def _find_link(
        self, platform_name: str, platform_identity: str
    ) -> tuple[Account, PlatformLink] | None:
        async with self.session_maker() as session:
            result = await session.execute(
                select(PlatformLink, Account)
                .join(Account, Account.account_id == PlatformLink.account_id)
                .where(
                    PlatformLink.platform_name == platform_name,
                    PlatformLink.platform_identity == platform_identity,
                )
            )
            row = result.first()
            if row is None:
                return None
            link, account = row
            return account, link

    async def get_account(self, account_id: str) -> Account | None:
        try:
            async with self.session_maker() as session:
                return await session.get(Account, account_id)
        except SQLAlchemyError as e:
            raise StoreError(f"get_account failed: {e}") from e

    # ------------------------------------------------------------------
    # Usage metering
    # ------------------------------------------------------------------
    async def get_usage(self, account_id: str) -> UsageSnapshot:
        """Read the current usage counter and subscription reference.

        Raises:
            StoreError: If the account does not exist or the read fails
        """
        account = await self.get_account(account_id)
        if account is None:
            raise StoreError(f"Account {account_id} not found")
        return UsageSnapshot(
            account_id=account.account_id,
            message_count=account.message_count,
            billing_subscription_ref=account.billing_subscription_ref,
        )

    async def increment_usage(self, account_id: str) -> int:
        """Atomically add one to the usage counter and return the new value.

        The increment is a single ``UPDATE ... SET message_count = message_count + 1``
        so two writers can never lose an increment.
        """
        try:
            async with self.session_maker() as session:
                result = await session.execute(
                    update(Account)
                    .where(Account.account_id == account_id)
                    .values(
                        message_count=Account.message_count + 1,
                        updated_at=datetime.now(UTC),
                    )
                )
                if result.rowcount == 0:
                    await session.rollback()
                    raise StoreError(f"Account {account_id} not found")
                count = (
                    await session.execute(
                        select(Account.message_count).where(Account.account_id == account_id)
                    )
                ).scalar_one()
                await session.commit()
                return count
        except SQLAlchemyError as e:
            raise StoreError(f"increment_usage failed: {e}") from e

    # ------------------------------------------------------------------
    # Conversation history
    # ------------------------------------------------------------------
    async def record_turn(self, link_id: str, role: TurnRole | str, content: str) -> None:
        try:
            async with self.session_maker() as session:
                session.add(
                    ConversationTurn(link_id=link_id, role=TurnRole(role).value, content=content)
                )
                await session.commit()
        except SQLAlchemyError as e:
            raise StoreError(f"record_turn failed: {e}") from e

    async def recent_history(self, link_id: str, limit: int) -> list[ConversationTurn]:
        """Return the most recent ``limit`` turns for a link, oldest first."""
        try:
            async with self.session_maker() as session:
                result = await session.execute(
                    select(ConversationTurn)
                    .where(ConversationTurn.link_id == link_id)
                    .order_by(ConversationTurn.created_at.desc(), ConversationTurn.id.desc())
                    .limit(limit)
                )
                turns = result.scalars().all()
        except SQLAlchemyError as e:
            raise StoreError(f"recent_history failed: {e}") from e

        # Reverse to get chronological order
        return list(reversed(turns))

    async def clear_history(self, link_id: str) -> int:
        """Delete every turn for one link. Returns the number removed."""
        try:
            async with self.session_maker() as session:
                result = await session.execute(
                    delete(ConversationTurn).where(ConversationTurn.link_id == link_id)
                )
                await session.commit()
                return result.rowcount or 0
        except SQLAlchemyError as e:
            raise StoreError(f"clear_history failed: {e}") from e

    # ------------------------------------------------------------------
    # Billing reconciliation (overwrite semantics, safe to repeat)
    # ------------------------------------------------------------------
    async def apply_checkout(
        self,
        account_id: str,
        email: str | None,
        customer_ref: str | None,
        subscription_ref: str | None,
    ) -> bool:
        """Record a completed checkout on the account.

        Returns:
            bool: False if no such account exists
        """
        try:
            async with self.session_maker() as session:
                result = await session.execute(
                    update(Account)
                    .where(Account.account_id == account_id)
                    .values(
                        email=email,
                        billing_customer_ref=customer_ref,
                        billing_subscription_ref=subscription_ref,
                        subscription_status="active",
                        updated_at=datetime.now(UTC),
                    )
                )
                await session.commit()
                return result.rowcount > 0
        except SQLAlchemyError as e:
            raise StoreError(f"apply_checkout failed: {e}") from e

    async def clear_subscription(self, subscription_ref: str) -> int:
        """Remove a deleted subscription from whichever account holds it.

        Returns:
            int: Number of accounts updated
        """
        try:
            async with self.session_maker() as session:
                result = await session.execute(
                    update(Account)
                    .where(Account.billing_subscription_ref == subscription_ref)
                    .values(
                        billing_subscription_ref=None,
                        subscription_status="canceled",
                        updated_at=datetime.now(UTC),
                    )
                )
                await session.commit()
                return result.rowcount or 0
        except SQLAlchemyError as e:
            raise StoreError(f"clear_subscription failed: {e}") from e

    async def reassert_active(self, subscription_ref: str) -> int:
        """Mark the account holding ``subscription_ref`` as active again."""
        try:
            async with self.session_maker() as session:
                result = await session.execute(
                    update(Account)
                    .where(Account.billing_subscription_ref == subscription_ref)
                    .values(subscription_status="active", updated_at=datetime.now(UTC))
                )
                await session.commit()
                return result.rowcount or 0
        except SQLAlchemyError as e:
            raise StoreError(f"reassert_active failed: {e}") from e
