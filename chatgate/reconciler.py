"""Subscription reconciler for Stripe webhook events.

Consumes asynchronous payment events and overwrites the account's billing
fields. Every mutation is a keyed overwrite, so redelivered events are
harmless. The discipline is: Ack only after the store mutation succeeded,
Reject with a retryable status otherwise.

Handled events:
    checkout.session.completed     -> apply_checkout (account_id from metadata)
    invoice.paid / invoice.payment_succeeded
                                   -> re-assert active (configurable)
    customer.subscription.deleted  -> clear_subscription (by subscription ref)
    anything else                  -> Ack, no-op
"""

import logging
from dataclasses import dataclass
from typing import Any

from chatgate.billing import BillingEvent, StripeBilling
from chatgate.exceptions import StoreError, VerificationError
from chatgate.store import AccountStore

logger = logging.getLogger(__name__)

CHECKOUT_COMPLETED = "checkout.session.completed"
INVOICE_PAID_EVENTS = frozenset({"invoice.paid", "invoice.payment_succeeded"})
SUBSCRIPTION_DELETED = "customer.subscription.deleted"


@dataclass(frozen=True)
class ReconcileResult:
    """Outcome of one webhook delivery.

    Attributes:
        acknowledged: True to Ack, False to Reject
        status_code: HTTP status for the provider
        action: What was done ("applied_checkout", "ignored", ...)
        event_type: Stripe event type, when the payload was verified
    """

    acknowledged: bool
    status_code: int
    action: str
    event_type: str | None = None


def _ref(value: Any) -> str | None:
    """Stripe fields are either an id string or an expanded object."""
    if value is None:
        return None
    if isinstance(value, dict):
        return value.get("id")
    return str(value)


class SubscriptionReconciler:
    """Applies verified Stripe events to the account store.

    Attributes:
        store: Account store
        billing: Stripe client (signature verification)
        endpoint_secret: Webhook signing secret
        invoice_paid_reasserts_active: Re-mark accounts active on "invoice paid"
    """

    def __init__(
        self,
        store: AccountStore,
        billing: StripeBilling,
        endpoint_secret: str,
        invoice_paid_reasserts_active: bool = True,
    ) -> None:
        self.store = store
        self.billing = billing
        self.endpoint_secret = endpoint_secret
        self.invoice_paid_reasserts_active = invoice_paid_reasserts_active

    async def handle_event(self, raw_payload: bytes, signature: str | None) -> ReconcileResult:
        """Verify and apply one webhook delivery."""
        try:
            event = self.billing.verify_event(raw_payload, signature, self.endpoint_secret)
        except VerificationError as e:
            logger.warning(f"Webhook signature verification failed: {e}")
            return ReconcileResult(acknowledged=False, status_code=400, action="rejected")

        log_extra = {"event_type": event.type, "event_id": event.id}
        try:
            action = await self._dispatch(event)
        except StoreError as e:
            logger.error(f"Store failure while reconciling: {e}", extra=log_extra)
            return ReconcileResult(
                acknowledged=False, status_code=500, action="store_failed", event_type=event.type
            )

        logger.info(f"Webhook reconciled: {action}", extra=log_extra)
        return ReconcileResult(
            acknowledged=True, status_code=200, action=action, event_type=event.type
        )

    async def _dispatch(self, event: BillingEvent) -> str:
        if event.type == CHECKOUT_COMPLETED:
            return await self._checkout_completed(event.data_object)
        if event.type in INVOICE_PAID_EVENTS:
            return await self._invoice_paid(event.data_object)
        if event.type == SUBSCRIPTION_DELETED:
            return await self._subscription_deleted(event.data_object)
        logger.info(f"Unhandled event type {event.type}")
        return "ignored"

    async def _checkout_completed(self, session: dict[str, Any]) -> str:
        metadata = session.get("metadata") or {}
        account_id = metadata.get("account_id") or session.get("client_reference_id")
        if not account_id:
            logger.warning("checkout.session.completed: missing account_id in metadata")
            return "missing_account"

        email = (session.get("customer_details") or {}).get("email") or session.get(
            "customer_email"
        )
        applied = await self.store.apply_checkout(
            account_id,
            email=email,
            customer_ref=_ref(session.get("customer")),
            subscription_ref=_ref(session.get("subscription")),
        )
        if not applied:
            logger.warning(
                "checkout.session.completed for unknown account",
                extra={"account_id": account_id},
            )
            return "unknown_account"
        return "applied_checkout"

    async def _invoice_paid(self, invoice: dict[str, Any]) -> str:
        subscription_ref = _ref(invoice.get("subscription"))
        if subscription_ref is None:
            # Newer API versions nest the subscription under parent.subscription_details
            details = (invoice.get("parent") or {}).get("subscription_details") or {}
            subscription_ref = _ref(details.get("subscription"))
        if not self.invoice_paid_reasserts_active or subscription_ref is None:
            return "noted_invoice"
        updated = await self.store.reassert_active(subscription_ref)
        return "reasserted_active" if updated else "noted_invoice"

    async def _subscription_deleted(self, subscription: dict[str, Any]) -> str:
        subscription_ref = _ref(subscription.get("id"))
        if subscription_ref is None:
            return "ignored"
        cleared = await self.store.clear_subscription(subscription_ref)
        return "cleared_subscription" if cleared else "unknown_subscription"
