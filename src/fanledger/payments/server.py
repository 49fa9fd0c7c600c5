"""Lightweight HTTP server for the Stripe webhook endpoint."""

import asyncio
import logging

from aiohttp import web

from fanledger.config import AppConfig
from fanledger.payments.webhooks import WebhookContext, handle_webhook, reply

logger = logging.getLogger(__name__)

CONTEXT_KEY = web.AppKey("webhook_context", WebhookContext)


async def webhook_endpoint(request: web.Request) -> web.Response:
    """Handle POST on the webhook route.

    Args:
        request: aiohttp request

    Returns:
        aiohttp.web.Response
    """
    # Signature covers the raw bytes, so the body is never parsed here
    payload = await request.read()
    sig_header = request.headers.get("Stripe-Signature")

    return await handle_webhook(payload, sig_header, request.app[CONTEXT_KEY])


async def preflight_endpoint(request: web.Request) -> web.Response:
    """Answer CORS preflight requests."""
    return reply(200, "ok")


def create_app(ctx: WebhookContext) -> web.Application:
    """Create aiohttp application with the webhook route.

    Methods other than POST and OPTIONS get aiohttp's 405 response.

    Args:
        ctx: Handler dependencies

    Returns:
        Configured aiohttp Application
    """
    app = web.Application()
    app[CONTEXT_KEY] = ctx
    app.router.add_post(ctx.config.webhook_path, webhook_endpoint)
    app.router.add_route("OPTIONS", ctx.config.webhook_path, preflight_endpoint)
    return app


async def run_server(
    ctx: WebhookContext,
    shutdown_event: asyncio.Event | None = None,
) -> None:
    """Run webhook server until shutdown signal.

    Args:
        ctx: Handler dependencies
        shutdown_event: Optional event to signal shutdown
    """
    config: AppConfig = ctx.config
    app = create_app(ctx)

    runner = web.AppRunner(app)
    await runner.setup()

    site = web.TCPSite(runner, config.webhook_server_host, config.webhook_server_port)
    await site.start()

    logger.info(
        f"Webhook server listening on {config.webhook_server_host}:"
        f"{config.webhook_server_port}{config.webhook_path}"
    )

    try:
        if shutdown_event:
            await shutdown_event.wait()
        else:
            await asyncio.Event().wait()
    finally:
        logger.info("Shutting down webhook server...")
        await runner.cleanup()
