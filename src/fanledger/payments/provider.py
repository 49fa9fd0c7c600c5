"""Stripe API access with request-scoped timeouts."""

import asyncio
import logging
from typing import Any, Callable

import stripe

from fanledger.config import AppConfig
from fanledger.payments.errors import ProviderUnavailable
from fanledger.payments.events import AccountSnapshot, Correlation, SubscriptionSnapshot

logger = logging.getLogger(__name__)


def as_dict(obj: Any) -> dict[str, Any]:
    """Convert a Stripe object (or plain mapping) to a plain dict."""
    if isinstance(obj, dict) and not isinstance(obj, stripe.StripeObject):
        return obj
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    return dict(obj)


class StripeGateway:
    """Thin async wrapper over the blocking Stripe SDK.

    The API key and version travel with each request rather than being set
    on the ``stripe`` module. Every call runs in a worker thread and is cut
    off after ``provider_timeout_seconds``.
    """

    def __init__(self, config: AppConfig):
        self._api_key = config.stripe_secret_key.get_secret_value()
        self._api_version = config.stripe_api_version
        self._timeout = config.provider_timeout_seconds

    async def _call(self, description: str, fn: Callable[..., Any], *args, **kwargs) -> Any:
        kwargs.setdefault("api_key", self._api_key)
        kwargs.setdefault("stripe_version", self._api_version)
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(fn, *args, **kwargs),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError as e:
            raise ProviderUnavailable(
                f"Stripe {description} timed out after {self._timeout}s"
            ) from e
        except stripe.StripeError as e:
            raise ProviderUnavailable(f"Stripe {description} failed: {e}") from e

    async def retrieve_subscription(self, subscription_id: str) -> SubscriptionSnapshot:
        """Fetch the canonical state of a subscription.

        Raises:
            ProviderUnavailable: On timeout or Stripe API error
        """
        subscription = await self._call(
            f"subscription retrieve {subscription_id}",
            stripe.Subscription.retrieve,
            subscription_id,
        )
        return SubscriptionSnapshot.from_payload(as_dict(subscription))

    async def retrieve_account(self, account_id: str) -> AccountSnapshot:
        """Fetch the canonical state of a connected account.

        Raises:
            ProviderUnavailable: On timeout or Stripe API error
        """
        account = await self._call(
            f"account retrieve {account_id}",
            stripe.Account.retrieve,
            account_id,
        )
        return AccountSnapshot.from_payload(as_dict(account))

    async def backfill_metadata(self, subscription_id: str, correlation: Correlation) -> None:
        """Write correlation metadata onto a subscription.

        Later subscription and invoice events then carry the identifiers
        themselves.

        Raises:
            ProviderUnavailable: On timeout or Stripe API error
        """
        await self._call(
            f"subscription metadata update {subscription_id}",
            stripe.Subscription.modify,
            subscription_id,
            metadata=correlation.as_metadata(),
        )
        logger.info(f"Backfilled metadata on subscription {subscription_id}")
