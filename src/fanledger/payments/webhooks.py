"""Stripe webhook handler and event processing."""

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable

import asyncpg
from aiohttp import web

from fanledger.config import AppConfig
from fanledger.payments.errors import MalformedEventError, ProviderUnavailable
from fanledger.payments.events import (
    AccountSnapshot,
    Correlation,
    EventKind,
    NormalizedEvent,
    SubscriptionSnapshot,
    invoice_subscription_id,
    normalize_event,
    object_id,
)
from fanledger.payments.ledger import (
    reconcile_account,
    reconcile_cancellation,
    reconcile_subscription,
)
from fanledger.payments.provider import StripeGateway
from fanledger.payments.signature import verify_signature

logger = logging.getLogger(__name__)

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": (
        "authorization, x-client-info, apikey, content-type, stripe-signature"
    ),
    "Access-Control-Allow-Methods": "POST, OPTIONS",
}


@dataclass
class WebhookContext:
    """Dependencies of the webhook handler, built once at startup."""

    config: AppConfig
    pool: asyncpg.Pool
    provider: StripeGateway


def reply(status: int, text: str) -> web.Response:
    """Plain-text response carrying the CORS headers."""
    return web.Response(status=status, text=text, headers=CORS_HEADERS)


async def handle_webhook(
    payload: bytes,
    sig_header: str | None,
    ctx: WebhookContext,
) -> web.Response:
    """Verify, normalize and reconcile one Stripe webhook delivery.

    Args:
        payload: Raw webhook payload bytes
        sig_header: Stripe-Signature header value
        ctx: Handler dependencies

    Returns:
        aiohttp.web.Response: 200 when reconciled or intentionally ignored,
        400 on a bad signature or malformed body, 500 when the outcome could
        not be established (Stripe retries the delivery)
    """
    if not sig_header:
        logger.error("Missing Stripe-Signature header")
        return reply(400, "Missing signature")

    if not verify_signature(
        payload,
        sig_header,
        ctx.config.stripe_webhook_secret.get_secret_value(),
        tolerance=ctx.config.signature_tolerance,
    ):
        logger.error("Invalid webhook signature")
        return reply(400, "Invalid signature")

    try:
        event = normalize_event(payload)
    except MalformedEventError as e:
        logger.error(f"Invalid webhook payload: {e}")
        return reply(400, "Invalid payload")

    logger.info(f"Received webhook {event.event_type} ({event.event_id})")

    try:
        await ROUTES[event.kind](event, ctx)
    except ProviderUnavailable as e:
        logger.error(f"Stripe unavailable while processing {event.event_type}: {e}")
        return reply(500, "Internal error")
    except MalformedEventError as e:
        # A subject without usable ids will never become processable
        logger.warning(f"Skipping {event.event_type} ({event.event_id}): {e}")
    except Exception as e:
        logger.exception(f"Error processing webhook {event.event_type}: {e}")
        # Return 500 so Stripe will retry
        return reply(500, "Internal error")

    return reply(200, "ok")


async def _handle_checkout_completed(event: NormalizedEvent, ctx: WebhookContext) -> None:
    """Handle checkout.session.completed.

    Fetches the subscription the session created. If the subscription lacks
    the fan/creator metadata but the session carries it, the metadata is
    written back to Stripe (best-effort) and used for this reconciliation.
    """
    session = event.subject
    if session.get("mode") != "subscription":
        logger.info(f"Checkout session {object_id(session)} is not a subscription - ignored")
        return

    subscription_id = object_id(session.get("subscription"))
    if not subscription_id:
        logger.warning(f"Checkout session {object_id(session)} has no subscription - skipping")
        return

    snapshot = await ctx.provider.retrieve_subscription(subscription_id)
    correlation = snapshot.correlation

    if correlation is None:
        correlation = event.correlation
        if correlation is not None:
            try:
                await ctx.provider.backfill_metadata(subscription_id, correlation)
            except ProviderUnavailable as e:
                logger.warning(f"Failed to backfill metadata on {subscription_id}: {e}")

    await _reconcile(snapshot, correlation, ctx, allow_resubscribe=True)


async def _handle_subscription_created(event: NormalizedEvent, ctx: WebhookContext) -> None:
    snapshot = SubscriptionSnapshot.from_payload(event.subject)
    await _reconcile(snapshot, snapshot.correlation, ctx, allow_resubscribe=True)


async def _handle_subscription_updated(event: NormalizedEvent, ctx: WebhookContext) -> None:
    snapshot = SubscriptionSnapshot.from_payload(event.subject)
    await _reconcile(snapshot, snapshot.correlation, ctx)


async def _handle_invoice_paid(event: NormalizedEvent, ctx: WebhookContext) -> None:
    """Handle invoice.paid.

    The invoice only signals that something changed; the subscription is
    re-fetched so the ledger stores Stripe's current state.
    """
    subscription_id = invoice_subscription_id(event.subject)
    if not subscription_id:
        logger.info(f"Invoice {object_id(event.subject)} has no subscription - ignored")
        return

    snapshot = await ctx.provider.retrieve_subscription(subscription_id)
    correlation = snapshot.correlation or event.correlation
    await _reconcile(snapshot, correlation, ctx)


async def _handle_subscription_deleted(event: NormalizedEvent, ctx: WebhookContext) -> None:
    snapshot = SubscriptionSnapshot.from_payload(event.subject)
    await reconcile_cancellation(ctx.pool, snapshot)


async def _handle_account_updated(event: NormalizedEvent, ctx: WebhookContext) -> None:
    account = AccountSnapshot.from_payload(event.subject)
    await reconcile_account(ctx.pool, account)


async def _handle_ignored(event: NormalizedEvent, ctx: WebhookContext) -> None:
    logger.info(f"Unhandled event type: {event.event_type}")


async def _reconcile(
    snapshot: SubscriptionSnapshot,
    correlation: Correlation | None,
    ctx: WebhookContext,
    allow_resubscribe: bool = False,
) -> None:
    if correlation is None:
        logger.warning(
            f"Subscription {snapshot.subscription_id} has no fan_id/creator_id "
            f"metadata - skipping"
        )
        return
    await reconcile_subscription(
        ctx.pool,
        snapshot,
        correlation,
        allow_resubscribe=allow_resubscribe,
    )


Handler = Callable[[NormalizedEvent, WebhookContext], Awaitable[None]]

ROUTES: dict[EventKind, Handler] = {
    EventKind.CHECKOUT_COMPLETED: _handle_checkout_completed,
    EventKind.SUBSCRIPTION_CREATED: _handle_subscription_created,
    EventKind.SUBSCRIPTION_UPDATED: _handle_subscription_updated,
    EventKind.INVOICE_PAID: _handle_invoice_paid,
    EventKind.SUBSCRIPTION_DELETED: _handle_subscription_deleted,
    EventKind.ACCOUNT_UPDATED: _handle_account_updated,
    EventKind.IGNORED: _handle_ignored,
}

_unrouted = set(EventKind) - set(ROUTES)
if _unrouted:
    raise RuntimeError(f"No webhook route for {sorted(k.value for k in _unrouted)}")
