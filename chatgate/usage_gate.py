"""Usage gate.

Decides per inbound message whether an account may consume a completion.
The free counter is checked first because it is local and cheap; only once
the free allowance is exhausted does the gate pay for a live subscription
status query, so billing truth is never read from a stale local flag.
"""

import logging
from dataclasses import dataclass
from enum import Enum

from chatgate.billing import PAID_STATUSES, StripeBilling
from chatgate.exceptions import NotFoundError, UpstreamError
from chatgate.store import UsageSnapshot

logger = logging.getLogger(__name__)


class DenyReason(str, Enum):
    """Why a message was denied."""

    NO_SUBSCRIPTION = "no_subscription"
    INACTIVE_SUBSCRIPTION = "inactive_subscription"
    SUBSCRIPTION_NOT_FOUND = "subscription_not_found"
    BILLING_UNAVAILABLE = "billing_unavailable"


@dataclass(frozen=True)
class GateDecision:
    """Outcome of a gating decision.

    Attributes:
        allowed: True if a completion may be consumed
        reason: Why the message was denied (None when allowed)
        subscription_status: Live status when it was queried
    """

    allowed: bool
    reason: DenyReason | None = None
    subscription_status: str | None = None

    @property
    def offers_checkout(self) -> bool:
        """Whether the denied user should be shown checkout links."""
        return not self.allowed and self.reason is not DenyReason.BILLING_UNAVAILABLE


ALLOW = GateDecision(allowed=True)


class UsageGate:
    """Free-allowance and subscription gate.

    Attributes:
        billing: Stripe client for live subscription status
        free_limit: Completions allowed without a subscription
    """

    def __init__(self, billing: StripeBilling, free_limit: int = 10) -> None:
        self.billing = billing
        self.free_limit = free_limit

    async def decide(self, usage: UsageSnapshot) -> GateDecision:
        """Return Allow or Deny for one inbound message.

        A failed status query denies (fail-closed) with
        ``BILLING_UNAVAILABLE``; a subscription Stripe no longer knows is
        treated like no subscription at all.
        """
        if usage.message_count < self.free_limit:
            return ALLOW

        subscription_ref = usage.billing_subscription_ref
        if not subscription_ref:
            return GateDecision(allowed=False, reason=DenyReason.NO_SUBSCRIPTION)

        try:
            status = await self.billing.retrieve_subscription_status(subscription_ref)
        except NotFoundError:
            logger.warning(
                f"Subscription {subscription_ref} not found at provider",
                extra={"account_id": usage.account_id},
            )
            return GateDecision(allowed=False, reason=DenyReason.SUBSCRIPTION_NOT_FOUND)
        except UpstreamError as e:
            logger.error(
                f"Subscription status check failed: {e}",
                extra={"account_id": usage.account_id},
            )
            return GateDecision(allowed=False, reason=DenyReason.BILLING_UNAVAILABLE)

        if status in PAID_STATUSES:
            return GateDecision(allowed=True, subscription_status=status)

        return GateDecision(
            allowed=False,
            reason=DenyReason.INACTIVE_SUBSCRIPTION,
            subscription_status=status,
        )
