"""Application entry point: serve the Stripe webhook endpoint."""

import asyncio
import logging
import signal
import sys

from pydantic import ValidationError

from fanledger.config import AppConfig, get_config
from fanledger.db import close_pool, create_pool
from fanledger.payments.provider import StripeGateway
from fanledger.payments.server import run_server
from fanledger.payments.webhooks import WebhookContext

logger = logging.getLogger(__name__)


async def serve(config: AppConfig) -> None:
    """
    Boot sequence: initialize pool → build context → serve until signal → shutdown.

    Raises:
        SystemExit: On database errors during startup
    """
    try:
        pool = await create_pool(config)
    except Exception as e:
        logger.error(f"Database startup failed: {e}")
        raise SystemExit(1) from e

    logger.info(
        f"Database pool initialized: min={config.db_pool_min}, max={config.db_pool_max}"
    )

    shutdown_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, shutdown_event.set)

    ctx = WebhookContext(config=config, pool=pool, provider=StripeGateway(config))
    try:
        await run_server(ctx, shutdown_event=shutdown_event)
    finally:
        await close_pool(pool)
        logger.info("Application shutdown complete")


def main() -> None:
    """Main entry point with logging configuration."""
    try:
        config = get_config()
    except ValidationError as e:
        # Missing or invalid environment is fatal at startup
        logging.basicConfig(level=logging.ERROR)
        logging.error(f"Invalid configuration: {e}")
        sys.exit(1)

    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    logger.info(f"Configuration loaded: env={config.env}")

    try:
        asyncio.run(serve(config))
    except KeyboardInterrupt:
        logging.info("Interrupted by user")
        sys.exit(0)
    except SystemExit:
        raise
    except Exception as e:
        logging.error(f"Unexpected error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
