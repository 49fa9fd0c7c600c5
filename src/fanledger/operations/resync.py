"""Re-sync a subscription or connected account from Stripe.

Runs the same reconciliation the webhook would run, starting from Stripe's
current state instead of an event. Useful after an outage or when a ledger
row looks stale.

Usage:
    python -m fanledger.operations.resync subscription sub_123
    python -m fanledger.operations.resync account acct_123
"""

import argparse
import asyncio
import logging
import sys

import asyncpg

from fanledger.config import get_config
from fanledger.db import close_pool, create_pool
from fanledger.payments.ledger import reconcile_account, reconcile_subscription
from fanledger.payments.provider import StripeGateway

logger = logging.getLogger(__name__)


async def resync_subscription(
    pool: asyncpg.Pool,
    provider: StripeGateway,
    subscription_id: str,
) -> bool:
    """Reconcile one subscription from Stripe's current state.

    Returns:
        True if the ledger row was written or already up to date, False if
        the subscription carries no fan/creator metadata.

    Raises:
        ProviderUnavailable: If Stripe cannot be reached
    """
    snapshot = await provider.retrieve_subscription(subscription_id)
    correlation = snapshot.correlation
    if correlation is None:
        logger.warning(f"Subscription {subscription_id} has no fan_id/creator_id metadata")
        return False

    # A manual resync is an explicit statement of the current subscription
    await reconcile_subscription(pool, snapshot, correlation, allow_resubscribe=True)
    return True


async def resync_account(
    pool: asyncpg.Pool,
    provider: StripeGateway,
    account_id: str,
) -> bool:
    """Reconcile one connected account from Stripe's current state.

    Returns:
        True if a creator profile owns the account, False otherwise.

    Raises:
        ProviderUnavailable: If Stripe cannot be reached
    """
    account = await provider.retrieve_account(account_id)
    return await reconcile_account(pool, account) is not None


async def run_resync(target: str, object_id: str) -> bool:
    """Open the store, run one resync and close the store again."""
    config = get_config()
    pool = await create_pool(config)
    provider = StripeGateway(config)
    try:
        if target == "subscription":
            return await resync_subscription(pool, provider, object_id)
        return await resync_account(pool, provider, object_id)
    finally:
        await close_pool(pool)


def main() -> None:
    """CLI entry point for a manual resync."""
    parser = argparse.ArgumentParser(
        description="Re-sync the ledger from Stripe's current state",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Examples:\n"
            "  python -m fanledger.operations.resync subscription sub_123\n"
            "  python -m fanledger.operations.resync account acct_123"
        ),
    )
    parser.add_argument(
        "target",
        choices=["subscription", "account"],
        help="Kind of Stripe object to re-sync.",
    )
    parser.add_argument(
        "object_id",
        help="Stripe id (sub_... or acct_...).",
    )
    args = parser.parse_args()

    expected_prefix = "sub_" if args.target == "subscription" else "acct_"
    if not args.object_id.startswith(expected_prefix):
        parser.error(f"{args.target} id must start with '{expected_prefix}'")

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        ok = asyncio.run(run_resync(args.target, args.object_id))
    except Exception as e:
        logger.error(f"Resync of {args.object_id} failed: {e}")
        sys.exit(1)

    sys.exit(0 if ok else 1)


if __name__ == "__main__":
    main()
