"""Stripe client for checkout, subscription status and webhook verification.

The Stripe SDK is synchronous, so every call runs in a worker thread under a
bounded timeout. The API key is passed per request instead of being set on
the ``stripe`` module, so several clients (and test fakes) can coexist.

Stripe SDK errors never escape this module: they are mapped onto
``PaymentProviderError``, ``NotFoundError`` and ``VerificationError``.
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any

import stripe

from chatgate.exceptions import NotFoundError, PaymentProviderError, VerificationError

logger = logging.getLogger(__name__)

# Statuses that grant paid access.
PAID_STATUSES = frozenset({"active", "trialing"})

# Maximum age of a webhook signature timestamp, in seconds.
SIGNATURE_TOLERANCE = 300


@dataclass(frozen=True)
class CheckoutSession:
    """A Stripe checkout session the user is redirected to."""

    id: str
    url: str


@dataclass(frozen=True)
class BillingEvent:
    """A verified Stripe webhook event.

    Attributes:
        id: Stripe event id (evt_...)
        type: Event type (e.g., "checkout.session.completed")
        data_object: The event's ``data.object`` payload
    """

    id: str
    type: str
    data_object: dict[str, Any] = field(default_factory=dict)


class StripeBilling:
    """Thin async facade over the Stripe SDK.

    Attributes:
        api_key: Stripe secret key used on every request
        timeout_seconds: Bound applied to each Stripe call
    """

    def __init__(self, api_key: str, timeout_seconds: float = 30.0) -> None:
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds

    async def _call(self, operation: str, func, *args: Any, **kwargs: Any) -> Any:
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(func, *args, api_key=self.api_key, **kwargs),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            logger.warning(f"Stripe {operation} timed out after {self.timeout_seconds}s")
            raise PaymentProviderError(f"{operation} timed out", timed_out=True) from e
        except stripe.InvalidRequestError as e:
            if e.http_status == 404:
                raise NotFoundError(
                    f"{operation}: {e.user_message or e}",
                    resource_type="subscription",
                    resource_id=e.param,
                ) from e
            raise PaymentProviderError(
                f"{operation} rejected: {e.user_message or e}", status_code=e.http_status
            ) from e
        except stripe.StripeError as e:
            raise PaymentProviderError(
                f"{operation} failed: {e.user_message or e}", status_code=e.http_status
            ) from e

    async def create_checkout_session(
        self,
        *,
        price_id: str,
        account_id: str,
        success_url: str,
        cancel_url: str,
    ) -> CheckoutSession:
        """Create a subscription-mode checkout session tagged with ``account_id``.

        The account id rides in the session metadata and in the subscription
        metadata, so later events can be attributed without a customer record.
        """
        session = await self._call(
            "checkout.Session.create",
            stripe.checkout.Session.create,
            mode="subscription",
            line_items=[{"price": price_id, "quantity": 1}],
            success_url=success_url,
            cancel_url=cancel_url,
            client_reference_id=account_id,
            metadata={"account_id": account_id},
            subscription_data={"metadata": {"account_id": account_id}},
        )
        return CheckoutSession(id=session.id, url=session.url)

    async def retrieve_subscription_status(self, subscription_ref: str) -> str:
        """Return the live status of a subscription (active, trialing, past_due, ...).

        Raises:
            NotFoundError: If Stripe no longer knows the subscription
            PaymentProviderError: On any other failure or timeout
        """
        subscription = await self._call(
            "Subscription.retrieve", stripe.Subscription.retrieve, subscription_ref
        )
        return str(subscription.status)

    def verify_event(self, raw_payload: bytes, signature: str | None, secret: str) -> BillingEvent:
        """Verify a webhook signature and parse the event.

        Raises:
            VerificationError: If the signature or payload is invalid
        """
        if not signature:
            raise VerificationError("Missing Stripe-Signature header")
        try:
            payload = raw_payload.decode("utf-8")
        except UnicodeDecodeError as e:
            raise VerificationError(f"Payload is not UTF-8: {e}") from e

        try:
            stripe.WebhookSignature.verify_header(
                payload, signature, secret, tolerance=SIGNATURE_TOLERANCE
            )
        except stripe.SignatureVerificationError as e:
            raise VerificationError(f"Invalid signature: {e}") from e

        try:
            event = json.loads(payload)
        except ValueError as e:
            raise VerificationError(f"Invalid payload: {e}") from e
        if not isinstance(event, dict) or "type" not in event:
            raise VerificationError("Payload is not a Stripe event")

        data = event.get("data")
        data_object = data.get("object") if isinstance(data, dict) else None
        if not isinstance(data_object, dict):
            data_object = {}
        return BillingEvent(id=str(event.get("id", "")), type=str(event["type"]), data_object=data_object)
