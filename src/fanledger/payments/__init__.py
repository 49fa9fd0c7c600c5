"""Stripe event reconciliation.

Verifies webhook deliveries, normalizes the event envelope, maps provider
subscription states onto the ledger vocabulary and writes the subscription
ledger and creator payout fields idempotently.
"""

from fanledger.payments.events import EventKind, normalize_event
from fanledger.payments.signature import verify_signature
from fanledger.payments.status import map_status, resolve_billing_state
from fanledger.payments.webhooks import WebhookContext, handle_webhook

__all__ = [
    "EventKind",
    "WebhookContext",
    "handle_webhook",
    "map_status",
    "normalize_event",
    "resolve_billing_state",
    "verify_signature",
]
