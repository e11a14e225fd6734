"""chatgate - billing-gated LLM chat relay.

Relays Telegram messages to a completion API under a fixed persona, meters a
free allowance per account, and upgrades accounts through Stripe Checkout
reconciled by Stripe webhooks.

Use explicit imports: `from chatgate.router import MessageRouter`
"""

__version__ = "0.1.0"
