"""Checkout issuer.

Creates a fresh monthly and yearly checkout session for an account every
time one is needed. Nothing is cached and no local state changes.
"""

import asyncio
import logging
from dataclasses import dataclass

from chatgate.billing import CheckoutSession, StripeBilling

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CheckoutOffer:
    """The two plans offered to a user who has used up the free allowance."""

    monthly: CheckoutSession
    yearly: CheckoutSession


class CheckoutIssuer:
    """Issues subscription checkout sessions tagged with the account id.

    Attributes:
        billing: Stripe client
        monthly_price_id: Price selector for the monthly plan
        yearly_price_id: Price selector for the yearly plan
        success_url: Redirect after a completed checkout
        cancel_url: Redirect after an abandoned checkout
    """

    def __init__(
        self,
        billing: StripeBilling,
        *,
        monthly_price_id: str,
        yearly_price_id: str,
        success_url: str,
        cancel_url: str,
    ) -> None:
        self.billing = billing
        self.monthly_price_id = monthly_price_id
        self.yearly_price_id = yearly_price_id
        self.success_url = success_url
        self.cancel_url = cancel_url

    async def create_sessions(self, account_id: str) -> CheckoutOffer:
        """Create both checkout sessions concurrently.

        Raises:
            PaymentProviderError: If either session could not be created
        """
        monthly, yearly = await asyncio.gather(
            self._create(account_id, self.monthly_price_id),
            self._create(account_id, self.yearly_price_id),
        )
        logger.info("Issued checkout sessions", extra={"account_id": account_id})
        return CheckoutOffer(monthly=monthly, yearly=yearly)

    async def _create(self, account_id: str, price_id: str) -> CheckoutSession:
        return await self.billing.create_checkout_session(
            price_id=price_id,
            account_id=account_id,
            success_url=self.success_url,
            cancel_url=self.cancel_url,
        )
